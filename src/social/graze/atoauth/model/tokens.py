"""Token set returned by a completed authorization code exchange."""

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


class TokenSet(BaseModel):
    """DPoP-bound tokens for the account `sub` on the PDS `aud`.

    `dpop_jwk` is the private key the tokens are bound to; callers must keep
    it with the tokens and use it to sign DPoP proofs for resource requests.
    Persisting the token set is the caller's job.
    """

    iss: str
    sub: str
    aud: str
    scope: str
    access_token: str = Field(repr=False)
    refresh_token: Optional[str] = Field(default=None, repr=False)
    token_type: Literal["DPoP"] = "DPoP"
    expires_at: datetime
    dpop_jwk: Dict[str, Any] = Field(repr=False)

    def public_dict(self) -> Dict[str, Any]:
        """The token set without the DPoP private key."""
        return self.model_dump(mode="json", exclude={"dpop_jwk"})
