"""
AT Protocol OAuth Client Implementation

This module implements the OAuth 2.0 authorization code flow as profiled by the AT
Protocol, where the authorization server is discovered per user from a handle or DID.

The implementation follows these OAuth 2.0 standards and specifications:
- OAuth 2.0 Authorization Code Grant (RFC 6749)
- Proof Key for Code Exchange (PKCE) (RFC 7636)
- OAuth 2.0 Demonstrating Proof of Possession (DPoP) (RFC 9449)
- OAuth 2.0 JWT Client Authentication (RFC 7523)
- OAuth 2.0 Pushed Authorization Requests (PAR) (RFC 9126)

The flow is implemented in two stages:
1. `OAuthClient.authorize`: Resolve the user identity, discover the authorization
   server, prepare PKCE and an ephemeral DPoP key, push the request when the server
   requires it, store the state record, and return the URL to redirect the user to
2. `OAuthClient.callback`: Consume the state record, exchange the authorization code
   for DPoP-bound tokens, validate the token response and return a `TokenSet`

The client also publishes its identity: `client_metadata()` is served at the
client_id URL and `jwks()` at the jwks_uri.
"""

import asyncio
import base64
from datetime import datetime, timezone, timedelta
import hashlib
import logging
import secrets
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlparse, urlencode, parse_qsl, urlunparse

from aiohttp import ClientError, ClientSession
from jwcrypto import jwk
from pydantic import BaseModel

from social.graze.atoauth.atproto.chain import (
    ChainAttemptsExceeded,
    ChainMiddlewareClient,
    DpopNonceStore,
    GenerateClaimAssertionMiddleware,
    GenerateDpopMiddleware,
)
from social.graze.atoauth.atproto.errors import (
    AuthorizationDenied,
    InvalidOrExpiredState,
    InvalidTokenResponse,
    IssuerMismatch,
    NoSigningKey,
    RequestRejected,
    StateStoreFailure,
    TokenExchangeFailure,
    UnsupportedServer,
)
from social.graze.atoauth.atproto.keys import KeyManager
from social.graze.atoauth.atproto.pds import ServerMetadataDiscoverer, check_issuer
from social.graze.atoauth.model.metadata import (
    ATProtocolOAuthClientMetadata,
    AuthorizationServerMetadata,
)
from social.graze.atoauth.model.state import SessionStateRecord
from social.graze.atoauth.model.tokens import TokenSet
from social.graze.atoauth.resolve.handle import (
    IdentityResolver,
    ResolvedSubject,
    SubjectType,
    document_pds,
    is_valid_did,
    parse_input,
)
from social.graze.atoauth.store.state import StateConflict, StateStore

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/callback"
CLIENT_METADATA_PATH = "/client-metadata.json"
JWKS_PATH = "/.well-known/jwks.json"

STATE_ATTEMPTS = 3


def create_pkce_challenge(pkce_verifier: str) -> str:
    """Derive the S256 code challenge for a PKCE verifier."""
    hashed = hashlib.sha256(pkce_verifier.encode("ascii")).digest()
    encoded = base64.urlsafe_b64encode(hashed)
    return encoded.decode("ascii").rstrip("=")


def generate_pkce_verifier() -> Tuple[str, str]:
    """
    Generate PKCE (Proof Key for Code Exchange) verifier and challenge.

    Returns:
        Tuple[str, str]: A tuple containing (pkce_verifier, pkce_challenge)
        - pkce_verifier: The secret verifier that will be sent in the token request
        - pkce_challenge: The challenge derived from the verifier, sent in the authorization request

    Security considerations:
        - The verifier uses 80 bytes of entropy, well over the 43 character minimum
          of RFC 7636 section 4.1
        - The challenge uses SHA-256 for the code challenge method
    """
    pkce_token = secrets.token_urlsafe(80)
    return (pkce_token, create_pkce_challenge(pkce_token))


def generate_state() -> str:
    return secrets.token_urlsafe(32)


def with_query(url: str, params: Mapping[str, str]) -> str:
    parsed = urlparse(url)
    query = dict(parse_qsl(parsed.query))
    query.update(params)
    return urlunparse(parsed._replace(query=urlencode(query)))


class OAuthClientConfig(BaseModel):
    """Static identity of this client.

    Every published URL is derived from `url_base`.
    """

    url_base: str
    scopes: List[str] = ["atproto"]
    client_name: Optional[str] = None
    client_assertion_lifetime: int = 60

    @property
    def base(self) -> str:
        return self.url_base.rstrip("/")

    @property
    def client_id(self) -> str:
        return f"{self.base}{CLIENT_METADATA_PATH}"

    @property
    def redirect_uri(self) -> str:
        return f"{self.base}{CALLBACK_PATH}"

    @property
    def jwks_uri(self) -> str:
        return f"{self.base}{JWKS_PATH}"


class OAuthClient:
    """AT Protocol OAuth client engine.

    One instance serves every flow in the process. The only mutable state is the
    state store, the metadata and identity caches, and the DPoP nonces last seen
    per server.

    Raises:
        NoSigningKey: At construction, when the key manager holds no key
    """

    def __init__(
        self,
        config: OAuthClientConfig,
        key_manager: KeyManager,
        identity_resolver: IdentityResolver,
        discoverer: ServerMetadataDiscoverer,
        state_store: StateStore,
        http_session: ClientSession,
    ) -> None:
        if len(key_manager) == 0:
            raise NoSigningKey("An OAuth client needs at least one signing key")

        self.config = config
        self.key_manager = key_manager
        self.identity_resolver = identity_resolver
        self.discoverer = discoverer
        self.state_store = state_store
        self.http_session = http_session
        self.nonces = DpopNonceStore()

    def client_metadata(self) -> Dict[str, Any]:
        metadata = ATProtocolOAuthClientMetadata(
            client_id=self.config.client_id,
            client_uri=self.config.base,
            redirect_uris=[self.config.redirect_uri],
            scope=" ".join(self.config.scopes),
            jwks_uri=self.config.jwks_uri,
            client_name=self.config.client_name,
        )
        return metadata.model_dump(exclude_none=True)

    def jwks(self) -> Dict[str, Any]:
        return self.key_manager.public_jwks()

    def _scope(self, scopes: Optional[Sequence[str]]) -> str:
        requested = ["atproto"]
        for scope in [*self.config.scopes, *(scopes or [])]:
            if scope not in requested:
                requested.append(scope)
        return " ".join(requested)

    def _chain_client(
        self, dpop_key: jwk.JWK, metadata: AuthorizationServerMetadata
    ) -> ChainMiddlewareClient:
        return ChainMiddlewareClient(
            client_session=self.http_session,
            middleware=[
                GenerateDpopMiddleware(self.key_manager, dpop_key, self.nonces),
                GenerateClaimAssertionMiddleware(
                    self.key_manager,
                    self.config.client_id,
                    metadata.issuer,
                    expires_in=self.config.client_assertion_lifetime,
                ),
            ],
            attempt_max=2,
        )

    async def authorize(
        self, identifier: str, scopes: Optional[Sequence[str]] = None
    ) -> str:
        """
        Start an authorization attempt for `identifier`.

        `identifier` is a handle, a DID, or the URL of a PDS / authorization
        server (the user then picks the account at the server).

        Returns:
            str: URL to redirect the user to

        Raises:
            InvalidIdentifier, ResolutionFailure, NoServiceEndpoint,
            DiscoveryFailure, IssuerMismatch, UnsupportedServer, RequestRejected
        """
        parsed_subject = parse_input(identifier)

        resolved: Optional[ResolvedSubject] = None
        if parsed_subject.subject_type == SubjectType.service:
            metadata = await self.discoverer.discover_service(parsed_subject.subject)
        else:
            resolved = await self.identity_resolver.resolve(identifier)
            metadata = await self.discoverer.discover(resolved.pds)

        scope = self._scope(scopes)
        (pkce_verifier, code_challenge) = generate_pkce_verifier()
        dpop_key = self.key_manager.generate_dpop_key()

        record = await self._reserve_state(
            metadata, resolved, scope, pkce_verifier, dpop_key
        )

        params = {
            "response_type": "code",
            "client_id": self.config.client_id,
            "redirect_uri": self.config.redirect_uri,
            "scope": scope,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "state": record.state,
        }
        if resolved is not None:
            params["login_hint"] = resolved.handle or resolved.did

        logger.info(
            "Starting authorization for %s with %s",
            resolved.did if resolved is not None else parsed_subject.subject,
            metadata.issuer,
        )

        if not metadata.require_pushed_authorization_requests:
            return with_query(metadata.authorization_endpoint, params)

        try:
            request_uri = await self._push_authorization_request(metadata, dpop_key, params)
        except Exception:
            await self.state_store.take_once(record.state)
            raise

        return with_query(
            metadata.authorization_endpoint,
            {"client_id": self.config.client_id, "request_uri": request_uri},
        )

    async def _reserve_state(
        self,
        metadata: AuthorizationServerMetadata,
        resolved: Optional[ResolvedSubject],
        scope: str,
        pkce_verifier: str,
        dpop_key: jwk.JWK,
    ) -> SessionStateRecord:
        for _ in range(STATE_ATTEMPTS):
            record = SessionStateRecord(
                state=generate_state(),
                issuer=metadata.issuer,
                pds=resolved.pds if resolved is not None else None,
                did=resolved.did if resolved is not None else None,
                handle=resolved.handle if resolved is not None else None,
                scope=scope,
                pkce_verifier=pkce_verifier,
                dpop_jwk=dpop_key.export(private_key=True, as_dict=True),
                created_at=self.state_store.now(),
            )
            try:
                await self.state_store.put(record)
                return record
            except StateConflict:
                logger.warning("State value collision, regenerating")
        raise StateStoreFailure(
            f"Unable to allocate a unique state value in {STATE_ATTEMPTS} attempts"
        )

    async def _push_authorization_request(
        self,
        metadata: AuthorizationServerMetadata,
        dpop_key: jwk.JWK,
        params: Dict[str, str],
    ) -> str:
        par_url = metadata.pushed_authorization_request_endpoint
        if par_url is None:
            raise UnsupportedServer(
                f"Authorization server {metadata.issuer} requires PAR but names no PAR endpoint"
            )

        chain_client = self._chain_client(dpop_key, metadata)
        try:
            async with chain_client.post(par_url, data=params) as (
                client_response,
                chain_response,
            ):
                pass
        except ChainAttemptsExceeded as e:
            raise RequestRejected(
                "Pushed authorization request kept demanding a new DPoP nonce",
                server_error="use_dpop_nonce",
                status=e.chain_response.status,
            ) from e
        except asyncio.TimeoutError as e:
            raise RequestRejected(
                "Pushed authorization request timed out", timed_out=True
            ) from e
        except ClientError as e:
            raise RequestRejected(f"Pushed authorization request failed: {e}") from e
        except ValueError as e:
            raise RequestRejected(
                f"Pushed authorization response is not valid JSON: {e}"
            ) from e

        if chain_response.status not in (200, 201):
            raise RequestRejected(
                f"Pushed authorization request rejected with {chain_response.status}",
                server_error=chain_response.body_get("error"),
                server_error_description=chain_response.body_get("error_description"),
                status=chain_response.status,
            )

        request_uri = chain_response.body_get("request_uri")
        if not isinstance(request_uri, str) or not request_uri:
            raise RequestRejected(
                "Pushed authorization response carried no request_uri",
                status=chain_response.status,
            )
        return request_uri

    async def callback(self, params: Mapping[str, str]) -> TokenSet:
        """
        Complete an authorization attempt from the callback query parameters.

        The callback must carry `state` and either `code` or `error`. A callback
        missing both `code` and `error` is malformed rather than a redirect from
        the authorization server; it is rejected as
        `AuthorizationDenied(invalid_request)` without touching the state
        record. Otherwise the state record is consumed before anything else is
        checked, so a callback can never be replayed, even one reporting an
        error.

        Returns:
            TokenSet: DPoP-bound tokens for the authorized account

        Raises:
            InvalidOrExpiredState, AuthorizationDenied, IssuerMismatch,
            DiscoveryFailure, UnsupportedServer, TokenExchangeFailure,
            InvalidTokenResponse
        """
        state = params.get("state", None)
        if not state:
            raise InvalidOrExpiredState("Callback carried no state")

        error = params.get("error", None)
        code = params.get("code", None)
        if not error and not code:
            raise AuthorizationDenied(
                "Callback carried neither a code nor an error",
                server_error="invalid_request",
            )

        record = await self.state_store.take_once(state)
        if record is None:
            logger.warning("Callback with unknown or expired state")
            raise InvalidOrExpiredState("Unknown or expired state")

        if error:
            raise AuthorizationDenied(
                f"Authorization denied: {error}",
                server_error=error,
                server_error_description=params.get("error_description", None),
            )

        metadata = await self.discoverer.get_authorization_server_metadata(record.issuer)

        issuer = params.get("iss", None)
        if issuer is not None:
            if issuer != record.issuer:
                self.discoverer.invalidate(record.issuer)
                raise IssuerMismatch(
                    f"Callback issuer {issuer} does not match {record.issuer}"
                )
        elif metadata.authorization_response_iss_parameter_supported:
            raise IssuerMismatch("Callback carried no issuer")

        dpop_key = jwk.JWK(**record.dpop_jwk)
        token_response = await self._exchange_code(metadata, record, dpop_key, code)
        return await self._token_set(metadata, record, token_response)

    async def _exchange_code(
        self,
        metadata: AuthorizationServerMetadata,
        record: SessionStateRecord,
        dpop_key: jwk.JWK,
        code: str,
    ) -> Dict[str, Any]:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "code_verifier": record.pkce_verifier,
            "redirect_uri": self.config.redirect_uri,
            "client_id": self.config.client_id,
        }

        chain_client = self._chain_client(dpop_key, metadata)
        try:
            async with chain_client.post(metadata.token_endpoint, data=data) as (
                client_response,
                chain_response,
            ):
                pass
        except ChainAttemptsExceeded as e:
            raise TokenExchangeFailure(
                "Token endpoint demanded a new DPoP nonce twice",
                server_error="use_dpop_nonce",
                status=e.chain_response.status,
            ) from e
        except asyncio.TimeoutError as e:
            raise TokenExchangeFailure("Token request timed out", timed_out=True) from e
        except ClientError as e:
            raise TokenExchangeFailure(f"Token request failed: {e}") from e
        except ValueError as e:
            raise InvalidTokenResponse(f"Token response is not valid JSON: {e}") from e

        if chain_response.status != 200:
            raise TokenExchangeFailure(
                f"Token endpoint returned {chain_response.status}",
                server_error=chain_response.body_get("error"),
                server_error_description=chain_response.body_get("error_description"),
                status=chain_response.status,
            )

        if not isinstance(chain_response.body, dict):
            raise InvalidTokenResponse("Token response is not a JSON object")
        return chain_response.body

    async def _token_set(
        self,
        metadata: AuthorizationServerMetadata,
        record: SessionStateRecord,
        token_response: Dict[str, Any],
    ) -> TokenSet:
        check_issuer(metadata, record.issuer)

        token_type = token_response.get("token_type", None)
        if not isinstance(token_type, str) or token_type.lower() != "dpop":
            raise InvalidTokenResponse(f"Token type {token_type!r} is not DPoP")

        access_token = token_response.get("access_token", None)
        if not isinstance(access_token, str) or not access_token:
            raise InvalidTokenResponse("No access token")

        refresh_token = token_response.get("refresh_token", None)
        if refresh_token is not None and not isinstance(refresh_token, str):
            raise InvalidTokenResponse("Malformed refresh token")

        expires_in = token_response.get("expires_in", None)
        if isinstance(expires_in, bool) or not isinstance(expires_in, int) or expires_in <= 0:
            raise InvalidTokenResponse(f"Invalid expires_in {expires_in!r}")

        scope = token_response.get("scope", None)
        if not isinstance(scope, str) or "atproto" not in scope.split():
            raise InvalidTokenResponse(f"Granted scope {scope!r} lacks atproto")

        sub = token_response.get("sub", None)
        if not isinstance(sub, str) or not is_valid_did(sub):
            raise InvalidTokenResponse(f"Invalid subject {sub!r}")

        if record.did is not None:
            if sub != record.did:
                raise InvalidTokenResponse(
                    f"Tokens were issued for {sub}, not {record.did}"
                )
            pds = record.pds
        else:
            pds = await self._verify_subject_issuer(sub, record.issuer)

        if pds is None:
            raise InvalidTokenResponse(f"No PDS is known for {sub}")

        now = datetime.now(timezone.utc)

        logger.info("Authorization complete for %s with %s", sub, record.issuer)

        return TokenSet(
            iss=record.issuer,
            sub=sub,
            aud=pds,
            scope=scope,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now + timedelta(seconds=expires_in),
            dpop_jwk=record.dpop_jwk,
        )

    async def _verify_subject_issuer(self, sub: str, issuer: str) -> str:
        """Confirm that the account `sub` is served by the authorization server `issuer`.

        Needed when the flow started from a server URL rather than an account.
        """
        document = await self.identity_resolver.resolve_did_document(sub)
        pds = document_pds(document)
        metadata = await self.discoverer.discover(pds)
        if metadata.issuer != issuer:
            raise IssuerMismatch(
                f"Account {sub} is served by {metadata.issuer}, not {issuer}"
            )
        return pds
