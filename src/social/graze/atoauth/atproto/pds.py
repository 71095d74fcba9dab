"""
Authorization server discovery for AT Protocol PDS instances.

A PDS names its authorization server in its protected resource metadata
(RFC 9728); the authorization server describes itself in its own metadata
document (RFC 8414). The declared issuer must equal the origin the document was
fetched from, and the server must support everything this client relies on:
PKCE S256, DPoP with ES256, and `private_key_jwt` client authentication.
"""

import asyncio
import logging
from typing import Any, Dict
from urllib.parse import urlsplit

from aiohttp import ClientError, ClientSession
from pydantic import ValidationError

from social.graze.atoauth.atproto.errors import (
    DiscoveryFailure,
    IssuerMismatch,
    UnsupportedServer,
)
from social.graze.atoauth.atproto.jwt import SIGNING_ALG
from social.graze.atoauth.model.metadata import (
    AuthorizationServerMetadata,
    ProtectedResourceMetadata,
)
from social.graze.atoauth.resolve.cache import CachedResolver

logger = logging.getLogger(__name__)

DEFAULT_METADATA_TTL = 10 * 60
DEFAULT_METADATA_CAPACITY = 1000


def origin_of(url: str) -> str:
    """Reduce a URL to its scheme://host[:port] origin."""
    parts = urlsplit(url)
    if not parts.scheme or not parts.netloc:
        raise DiscoveryFailure(f"Not an absolute URL: {url}")
    return f"{parts.scheme}://{parts.netloc}"


async def _get_json(session: ClientSession, url: str) -> Dict[str, Any]:
    try:
        async with session.get(url, headers={"Accept": "application/json"}) as resp:
            if resp.status != 200:
                raise DiscoveryFailure(f"{url} returned {resp.status}")
            body = await resp.json(content_type=None)
    except asyncio.TimeoutError as e:
        raise DiscoveryFailure(f"{url} timed out", timed_out=True) from e
    except (ClientError, ValueError) as e:
        raise DiscoveryFailure(f"Unable to fetch {url}: {e}") from e

    if not isinstance(body, dict):
        raise DiscoveryFailure(f"{url} did not return a JSON object")
    return body


async def oauth_protected_resource(
    session: ClientSession, pds: str
) -> ProtectedResourceMetadata:
    url = f"{origin_of(pds)}/.well-known/oauth-protected-resource"
    body = await _get_json(session, url)
    try:
        metadata = ProtectedResourceMetadata.model_validate(body)
    except ValidationError as e:
        raise DiscoveryFailure(f"Malformed protected resource metadata at {url}") from e

    if origin_of(metadata.resource) != origin_of(pds):
        raise DiscoveryFailure(
            f"Protected resource metadata at {url} describes {metadata.resource}"
        )
    return metadata


async def oauth_authorization_server(
    session: ClientSession, authorization_server: str
) -> AuthorizationServerMetadata:
    url = f"{origin_of(authorization_server)}/.well-known/oauth-authorization-server"
    body = await _get_json(session, url)
    try:
        return AuthorizationServerMetadata.model_validate(body)
    except ValidationError as e:
        raise DiscoveryFailure(f"Malformed authorization server metadata at {url}") from e


def check_issuer(metadata: AuthorizationServerMetadata, expected_issuer: str) -> None:
    if metadata.issuer != expected_issuer:
        raise IssuerMismatch(
            f"Authorization server {expected_issuer} declares issuer {metadata.issuer}"
        )


def check_capabilities(metadata: AuthorizationServerMetadata) -> None:
    """Raise UnsupportedServer unless the server supports this client's profile."""
    missing = []
    if "code" not in metadata.response_types_supported:
        missing.append("response type code")
    if metadata.grant_types_supported and "authorization_code" not in metadata.grant_types_supported:
        missing.append("authorization_code grant")
    if "S256" not in metadata.code_challenge_methods_supported:
        missing.append("PKCE S256")
    if SIGNING_ALG not in metadata.dpop_signing_alg_values_supported:
        missing.append(f"DPoP {SIGNING_ALG}")
    if "private_key_jwt" not in metadata.token_endpoint_auth_methods_supported:
        missing.append("private_key_jwt")
    if SIGNING_ALG not in metadata.token_endpoint_auth_signing_alg_values_supported:
        missing.append(f"{SIGNING_ALG} client assertions")
    if metadata.scopes_supported and "atproto" not in metadata.scopes_supported:
        missing.append("atproto scope")
    if (
        metadata.require_pushed_authorization_requests
        and metadata.pushed_authorization_request_endpoint is None
    ):
        missing.append("pushed authorization request endpoint")

    if missing:
        raise UnsupportedServer(
            f"Authorization server {metadata.issuer} lacks {', '.join(missing)}"
        )


class ServerMetadataDiscoverer:
    """Discovers and caches authorization server metadata.

    Results are cached per authorization server origin (and the PDS to
    authorization server mapping per PDS origin). A racing double fetch just
    overwrites the entry with an equivalent value.
    """

    def __init__(
        self,
        session: ClientSession,
        time_to_live: float = DEFAULT_METADATA_TTL,
        max_capacity: int = DEFAULT_METADATA_CAPACITY,
    ) -> None:
        self._session = session
        self._authorization_servers: CachedResolver[str, AuthorizationServerMetadata] = (
            CachedResolver(self._fetch_authorization_server, time_to_live, max_capacity)
        )
        self._protected_resources: CachedResolver[str, ProtectedResourceMetadata] = (
            CachedResolver(self._fetch_protected_resource, time_to_live, max_capacity)
        )

    async def _fetch_protected_resource(self, pds: str) -> ProtectedResourceMetadata:
        return await oauth_protected_resource(self._session, pds)

    async def _fetch_authorization_server(self, issuer: str) -> AuthorizationServerMetadata:
        metadata = await oauth_authorization_server(self._session, issuer)
        check_issuer(metadata, issuer)
        check_capabilities(metadata)
        logger.debug("Discovered authorization server %s", issuer)
        return metadata

    def invalidate(self, issuer: str) -> None:
        self._authorization_servers.invalidate(origin_of(issuer))

    async def get_authorization_server_metadata(
        self, issuer: str
    ) -> AuthorizationServerMetadata:
        """Metadata for a known issuer, validated against that issuer.

        Raises:
            DiscoveryFailure, IssuerMismatch, UnsupportedServer
        """
        origin = origin_of(issuer)
        if origin != issuer.rstrip("/"):
            raise IssuerMismatch(f"Issuer {issuer} is not an origin")
        try:
            return await self._authorization_servers.resolve(origin)
        except IssuerMismatch:
            self.invalidate(origin)
            raise

    async def discover(self, pds: str) -> AuthorizationServerMetadata:
        """Discover the authorization server protecting `pds`."""
        protected_resource = await self._protected_resources.resolve(origin_of(pds))

        authorization_server = next(iter(protected_resource.authorization_servers), None)
        if authorization_server is None:
            raise DiscoveryFailure(f"{pds} names no authorization server")

        return await self.get_authorization_server_metadata(authorization_server)

    async def discover_service(self, url: str) -> AuthorizationServerMetadata:
        """Discover the authorization server for a service URL.

        The URL may be a PDS (or entryway) or the authorization server itself.
        """
        try:
            return await self.discover(url)
        except DiscoveryFailure as e:
            if e.timed_out:
                raise
            logger.debug("%s is not a protected resource, trying it as an authorization server", url)
        return await self.get_authorization_server_metadata(origin_of(url))
