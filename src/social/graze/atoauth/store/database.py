"""SQLAlchemy-backed session state store.

`take_once` issues a single `DELETE ... RETURNING` so that concurrent
callbacks for the same state cannot both observe the row.
"""

from datetime import datetime, timedelta, timezone
import logging
from typing import Callable, Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from social.graze.atoauth.model.oauth import OAuthRequest
from social.graze.atoauth.model.state import SessionStateRecord
from social.graze.atoauth.store.state import (
    DEFAULT_STATE_LIFETIME,
    StateConflict,
    StateStore,
    utcnow,
)

logger = logging.getLogger(__name__)


def _aware(value: datetime) -> datetime:
    # SQLite drops the zone; everything stored here is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class DatabaseStateStore(StateStore):
    def __init__(
        self,
        database_session_maker: async_sessionmaker[AsyncSession],
        lifetime: timedelta = DEFAULT_STATE_LIFETIME,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        super().__init__(lifetime, clock)
        self._database_session_maker = database_session_maker

    async def put(self, record: SessionStateRecord) -> None:
        try:
            async with self._database_session_maker() as database_session:
                async with database_session.begin():
                    await database_session.execute(
                        delete(OAuthRequest).where(
                            OAuthRequest.oauth_state == record.state,
                            OAuthRequest.expires_at <= self.now(),
                        )
                    )
                    database_session.add(
                        OAuthRequest(
                            oauth_state=record.state,
                            issuer=record.issuer,
                            pds=record.pds,
                            did=record.did,
                            handle=record.handle,
                            scope=record.scope,
                            pkce_verifier=record.pkce_verifier,
                            dpop_jwk=record.dpop_jwk,
                            created_at=record.created_at,
                            expires_at=record.created_at + self.lifetime,
                        )
                    )
        except IntegrityError as e:
            raise StateConflict(record.state) from e

    async def take_once(self, state: str) -> Optional[SessionStateRecord]:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(
                    delete(OAuthRequest)
                    .where(OAuthRequest.oauth_state == state)
                    .returning(
                        OAuthRequest.oauth_state,
                        OAuthRequest.issuer,
                        OAuthRequest.pds,
                        OAuthRequest.did,
                        OAuthRequest.handle,
                        OAuthRequest.scope,
                        OAuthRequest.pkce_verifier,
                        OAuthRequest.dpop_jwk,
                        OAuthRequest.created_at,
                    )
                )
                row = result.one_or_none()

        if row is None:
            return None

        record = SessionStateRecord(
            state=row.oauth_state,
            issuer=row.issuer,
            pds=row.pds,
            did=row.did,
            handle=row.handle,
            scope=row.scope,
            pkce_verifier=row.pkce_verifier,
            dpop_jwk=row.dpop_jwk,
            created_at=_aware(row.created_at),
        )
        if record.is_expired(self.now(), self.lifetime):
            logger.info("Discarding expired state record")
            return None
        return record

    async def sweep(self) -> int:
        async with self._database_session_maker() as database_session:
            async with database_session.begin():
                result = await database_session.execute(
                    delete(OAuthRequest).where(OAuthRequest.expires_at <= self.now())
                )
        return result.rowcount or 0
