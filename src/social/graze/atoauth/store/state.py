"""The session state store contract and its in-memory implementation."""

from abc import ABC, abstractmethod
import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, Dict, Optional

from social.graze.atoauth.model.state import SessionStateRecord

logger = logging.getLogger(__name__)

DEFAULT_STATE_LIFETIME = timedelta(minutes=10)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StateConflict(Exception):
    """Raised by `put` when a record already exists for the state value."""


class StateStore(ABC):
    def __init__(
        self,
        lifetime: timedelta = DEFAULT_STATE_LIFETIME,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.lifetime = lifetime
        self._clock = clock

    def now(self) -> datetime:
        return self._clock()

    @abstractmethod
    async def put(self, record: SessionStateRecord) -> None:
        """Store a new record.

        Raises:
            StateConflict: If a live record already uses `record.state`
        """
        pass

    @abstractmethod
    async def take_once(self, state: str) -> Optional[SessionStateRecord]:
        """Atomically remove and return the record for `state`.

        Returns None when the record is absent, already taken or expired.
        """
        pass

    @abstractmethod
    async def sweep(self) -> int:
        """Drop expired records, returning how many were removed."""
        pass


class MemoryStateStore(StateStore):
    """Process-local store. Only suitable for a single worker."""

    def __init__(
        self,
        lifetime: timedelta = DEFAULT_STATE_LIFETIME,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(lifetime, clock)
        self._records: Dict[str, SessionStateRecord] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    def _sweep(self, now: datetime) -> int:
        expired = [
            state
            for state, record in self._records.items()
            if record.is_expired(now, self.lifetime)
        ]
        for state in expired:
            del self._records[state]
        return len(expired)

    async def put(self, record: SessionStateRecord) -> None:
        async with self._lock:
            self._sweep(self.now())
            if record.state in self._records:
                raise StateConflict(record.state)
            self._records[record.state] = record

    async def take_once(self, state: str) -> Optional[SessionStateRecord]:
        async with self._lock:
            record = self._records.pop(state, None)
        if record is None:
            return None
        if record.is_expired(self.now(), self.lifetime):
            logger.info("Discarding expired state record")
            return None
        return record

    async def sweep(self) -> int:
        async with self._lock:
            return self._sweep(self.now())
