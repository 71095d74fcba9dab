"""
Configuration Module for the ATOAuth Service

Settings are loaded from environment variables through pydantic-settings, with
defaults suitable for local development. Shared resources (the HTTP session, the
OAuth client engine, the optional Redis client and database engine) are handed to
request handlers through typed AppKeys.

Key configuration areas include:
- Client identity (`URL_BASE`, `CLIENT_NAME`, `SCOPES`)
- Signing keys (`PRIVATE_KEYS`)
- Identity resolution (`PLC_DIRECTORY_URL`, `DOH_SERVICE_URL`)
- Session state storage (`REDIS_DSN` or `PG_DSN`, memory when neither is set)
"""

import asyncio
import logging
import os
from typing import Annotated, Final, List, Optional

from aiohttp import ClientSession, web
from jwcrypto import jwk
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode
from redis import asyncio as redis
from sqlalchemy.ext.asyncio import AsyncEngine

from social.graze.atoauth.atproto.keys import KeyManager, default_kid, prepare_signing_key
from social.graze.atoauth.atproto.oauth import OAuthClient, OAuthClientConfig
from social.graze.atoauth.resolve.handle import DEFAULT_PLC_DIRECTORY_URL
from social.graze.atoauth.store.state import StateStore

logger = logging.getLogger(__name__)

PEM_MARKER = "-----BEGIN"


def load_private_key(index: int, value: str) -> jwk.JWK:
    """Load a PKCS#8 PEM private key given inline or as a file path."""
    value = value.strip()
    if not value.startswith(PEM_MARKER):
        with open(value, "rb") as fd:
            data = fd.read()
    else:
        data = value.replace("\\n", "\n").encode("utf-8")
    return prepare_signing_key(jwk.JWK.from_pem(data), default_kid(index))


class Settings(BaseSettings):
    """
    Application settings for the ATOAuth service.

    Every field maps to the upper-cased environment variable of the same name.
    """

    debug: bool = False
    """
    Enable debug logging of outgoing HTTP requests.
    Set with DEBUG=true environment variable.
    """

    http_port: int = Field(alias="port", default=8080)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    url_base: str = "http://127.0.0.1:8080"
    """
    Public base URL of the service. The client_id, redirect URI and JWKS URI
    are derived from it.
    Set with URL_BASE environment variable.
    """

    client_name: Optional[str] = None
    """Human-readable client name published in the client metadata."""

    scopes: Annotated[List[str], NoDecode] = ["atproto"]
    """
    Scopes requested by default, as a space or comma separated list.
    Set with SCOPES environment variable.
    """

    private_keys: Annotated[List[jwk.JWK], NoDecode] = list()
    """
    PKCS#8 PEM encoded ES256 private keys, comma separated. Each entry is either
    the PEM text (newlines may be written as \\n) or a path to a PEM file. The
    first key signs; all keys are published, as key-00, key-01, ...
    Set with PRIVATE_KEYS environment variable.
    """

    plc_directory_url: str = DEFAULT_PLC_DIRECTORY_URL
    """
    PLC directory used to resolve did:plc DIDs.
    Set with PLC_DIRECTORY_URL environment variable.
    """

    doh_service_url: Optional[str] = None
    """
    DNS-over-HTTPS service used for handle TXT lookups. The system resolver is
    used when unset.
    Set with DOH_SERVICE_URL environment variable.
    """

    state_ttl: int = 600
    """Seconds an authorization attempt may take before its state expires."""

    metadata_ttl: int = 600
    """Seconds authorization server metadata is cached."""

    http_timeout: float = 10.0
    """Total timeout in seconds for each outgoing HTTP request."""

    redis_dsn: Optional[str] = Field(
        None, validation_alias=AliasChoices("redis_dsn", "redis_url")
    )
    """
    Redis connection string for the session state store.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    pg_dsn: Optional[str] = Field(
        None, validation_alias=AliasChoices("pg_dsn", "database_url")
    )
    """
    SQLAlchemy async connection string for the session state store, used when
    no Redis DSN is set.
    Set with PG_DSN or DATABASE_URL environment variables.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    @field_validator("scopes", mode="before")
    @classmethod
    def decode_scopes(cls, v) -> List[str]:
        if isinstance(v, str):
            return [scope for scope in v.replace(",", " ").split() if scope]
        return v

    @field_validator("private_keys", mode="before")
    @classmethod
    def decode_private_keys(cls, v) -> List[jwk.JWK]:
        """
        Validate and load the private_keys setting.

        Accepts a list of JWK objects (for programmatic configuration) or a comma
        separated string of PEM texts and PEM file paths.

        Raises:
            ValueError: If a key cannot be loaded or is not a P-256 private key
        """
        if isinstance(v, str):
            entries = [entry for entry in v.split(",") if entry.strip()]
            return [load_private_key(index, entry) for index, entry in enumerate(entries)]
        if isinstance(v, list):
            return [
                load_private_key(index, entry) if isinstance(entry, str) else entry
                for index, entry in enumerate(v)
            ]
        raise ValueError("private_keys must be a list of keys or PEM entries")

    def oauth_client_config(self) -> OAuthClientConfig:
        return OAuthClientConfig(
            url_base=self.url_base, scopes=self.scopes, client_name=self.client_name
        )

    def key_manager(self) -> KeyManager:
        return KeyManager(self.private_keys)


def templates_path() -> str:
    return os.path.join(os.path.dirname(__file__), "templates")


SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

OAuthClientAppKey: Final = web.AppKey("oauth_client", OAuthClient)
"""AppKey for accessing the OAuth client engine"""

StateStoreAppKey: Final = web.AppKey("state_store", StateStore)
"""AppKey for accessing the session state store"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client, when Redis backs the state store"""

DatabaseAppKey: Final = web.AppKey("database", AsyncEngine)
"""AppKey for accessing the SQLAlchemy engine, when a database backs the state store"""

SweepStateTaskAppKey: Final = web.AppKey("sweep_state_task", asyncio.Task[None])
"""AppKey for the background task that drops expired state records"""
