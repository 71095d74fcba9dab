"""
OAuth client error taxonomy.

Every failure surfaced by the engine is an `OAuthClientError` subclass so that
callers can pick user-facing messaging from the kind alone. Network failures
carry `timed_out` so a timeout can be told apart from a refused connection.

`IssuerMismatch` and `InvalidOrExpiredState` are flagged `security_sensitive`:
they may indicate an attack and must not be turned into an automatic retry.
"""

from typing import Any, Dict, Optional


class OAuthClientError(Exception):
    """Base class for all engine errors."""

    error: str = "oauth_client_error"
    security_sensitive: bool = False

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.timed_out = timed_out

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error, "error_description": self.message}


class InvalidIdentifier(OAuthClientError):
    error = "invalid_identifier"


class ResolutionFailure(OAuthClientError):
    error = "resolution_failure"


class NoServiceEndpoint(OAuthClientError):
    error = "no_service_endpoint"


class DiscoveryFailure(OAuthClientError):
    error = "discovery_failure"


class IssuerMismatch(OAuthClientError):
    error = "issuer_mismatch"
    security_sensitive = True


class UnsupportedServer(OAuthClientError):
    error = "unsupported_server"


class NoSigningKey(OAuthClientError):
    error = "no_signing_key"


class InvalidOrExpiredState(OAuthClientError):
    error = "invalid_or_expired_state"
    security_sensitive = True


class InvalidTokenResponse(OAuthClientError):
    error = "invalid_token_response"


class StateStoreFailure(OAuthClientError):
    """The state store could not take a new record."""

    error = "state_store_failure"


class _ServerError(OAuthClientError):
    """An error carrying the remote `error` / `error_description` pair."""

    def __init__(
        self,
        message: str,
        *,
        server_error: Optional[str] = None,
        server_error_description: Optional[str] = None,
        status: Optional[int] = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message, timed_out=timed_out)
        self.server_error = server_error
        self.server_error_description = server_error_description
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.server_error is not None:
            result["server_error"] = self.server_error
        if self.server_error_description is not None:
            result["server_error_description"] = self.server_error_description
        return result


class RequestRejected(_ServerError):
    error = "request_rejected"


class AuthorizationDenied(_ServerError):
    error = "authorization_denied"


class TokenExchangeFailure(_ServerError):
    error = "token_exchange_failure"
