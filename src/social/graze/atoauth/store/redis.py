"""Redis-backed session state store.

Records are written with `SET NX EX`, so a state collision is detected
atomically and Redis expires abandoned records on its own. `GETDEL` gives the
single-consumption guarantee across workers.
"""

from datetime import datetime, timedelta
import logging
from typing import Callable, Optional

import redis.asyncio as redis

from social.graze.atoauth.model.state import SessionStateRecord
from social.graze.atoauth.store.state import (
    DEFAULT_STATE_LIFETIME,
    StateConflict,
    StateStore,
    utcnow,
)

logger = logging.getLogger(__name__)

STATE_KEY_PREFIX = "oauth_state:"


class RedisStateStore(StateStore):
    def __init__(
        self,
        redis_client: redis.Redis,
        lifetime: timedelta = DEFAULT_STATE_LIFETIME,
        clock: Callable[[], datetime] = utcnow,
        key_prefix: str = STATE_KEY_PREFIX,
    ) -> None:
        super().__init__(lifetime, clock)
        self._redis = redis_client
        self._key_prefix = key_prefix

    def _key(self, state: str) -> str:
        return f"{self._key_prefix}{state}"

    async def put(self, record: SessionStateRecord) -> None:
        stored = await self._redis.set(
            self._key(record.state),
            record.model_dump_json(),
            nx=True,
            ex=max(1, int(self.lifetime.total_seconds())),
        )
        if not stored:
            raise StateConflict(record.state)

    async def take_once(self, state: str) -> Optional[SessionStateRecord]:
        value = await self._redis.getdel(self._key(state))
        if value is None:
            return None
        record = SessionStateRecord.model_validate_json(value)
        if record.is_expired(self.now(), self.lifetime):
            logger.info("Discarding expired state record")
            return None
        return record

    async def sweep(self) -> int:
        # Redis expires keys itself.
        return 0
