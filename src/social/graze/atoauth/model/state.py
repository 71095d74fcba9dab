"""Authorization state kept between the redirect and the callback."""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SessionStateRecord(BaseModel):
    """Everything the callback needs to finish one authorization attempt.

    A record is written once by `OAuthClient.authorize` and consumed once by
    `OAuthClient.callback`; consumption deletes it. The PKCE verifier and the
    ephemeral DPoP private key are kept out of `repr` so they never end up in
    logs.
    """

    state: str
    issuer: str
    pds: Optional[str] = None
    did: Optional[str] = None
    handle: Optional[str] = None
    scope: str
    pkce_verifier: str = Field(repr=False)
    dpop_jwk: Dict[str, Any] = Field(repr=False)
    created_at: datetime

    def is_expired(self, now: datetime, lifetime: timedelta) -> bool:
        return self.created_at + lifetime <= now
