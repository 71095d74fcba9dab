"""
Tests for the web application: settings, error mapping and the HTTP endpoints.

The application is built by `start_web_server` with settings that point every
remote lookup at the fake authorization server, so a sign-in runs end to end
through the real handlers.
"""

from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from aiohttp.test_utils import TestClient, TestServer

from social.graze.atoauth.app.config import (
    OAuthClientAppKey,
    Settings,
    StateStoreAppKey,
    SweepStateTaskAppKey,
    load_private_key,
)
from social.graze.atoauth.app.handlers.oauth import DEFAULT_SIGNIN_INPUT, error_status
from social.graze.atoauth.app.server import start_web_server
from social.graze.atoauth.atproto.errors import (
    AuthorizationDenied,
    DiscoveryFailure,
    InvalidIdentifier,
    InvalidOrExpiredState,
    IssuerMismatch,
    NoSigningKey,
    RequestRejected,
    ResolutionFailure,
    StateStoreFailure,
    TokenExchangeFailure,
    UnsupportedServer,
)
from social.graze.atoauth.atproto.keys import KeyManager
from social.graze.atoauth.store.state import MemoryStateStore

from tests.test_helpers import (
    TEST_CLIENT_ID,
    TEST_DID,
    TEST_HANDLE,
    TEST_URL_BASE,
    generate_signing_key,
)


def private_key_pem(key) -> str:
    return key.export_to_pem(private_key=True, password=None).decode("utf-8")


def create_settings(fake_server, keys) -> Settings:
    return Settings(
        url_base=TEST_URL_BASE,
        client_name="Test Client",
        private_keys=keys,
        plc_directory_url=fake_server.url("/plc"),
        doh_service_url=fake_server.url("/dns-query"),
        http_timeout=5.0,
        redis_dsn=None,
        pg_dsn=None,
        sentry_dsn=None,
    )


@pytest_asyncio.fixture
async def app_client(fake_server):
    keys = [generate_signing_key()]
    fake_server.client_jwks = KeyManager(keys).public_jwks()

    app = await start_web_server(create_settings(fake_server, keys))
    client = TestClient(TestServer(app))
    await client.start_server()
    yield client
    await client.close()


class TestSettings:
    """Test suite for Settings parsing."""

    def test_scopes_from_string(self):
        settings = Settings(scopes="atproto transition:generic,transition:chat.bsky")
        assert settings.scopes == ["atproto", "transition:generic", "transition:chat.bsky"]

    def test_private_keys_inline(self):
        first, second = generate_signing_key(), generate_signing_key()
        value = ",".join(
            private_key_pem(key).replace("\n", "\\n") for key in (first, second)
        )

        settings = Settings(private_keys=value)

        assert [key["kid"] for key in settings.private_keys] == ["key-00", "key-01"]
        assert settings.private_keys[0].thumbprint() == first.thumbprint()
        assert settings.key_manager().kids == ["key-00", "key-01"]

    def test_private_key_from_file(self, tmp_path):
        key = generate_signing_key()
        path = tmp_path / "signing.pem"
        path.write_text(private_key_pem(key))

        loaded = load_private_key(3, str(path))

        assert loaded["kid"] == "key-03"
        assert loaded.thumbprint() == key.thumbprint()

    def test_rsa_key_is_rejected(self):
        from jwcrypto import jwk

        rsa_key = jwk.JWK.generate(kty="RSA", size=2048)
        with pytest.raises(ValueError):
            Settings(private_keys=private_key_pem(rsa_key).replace("\n", "\\n"))

    def test_oauth_client_config(self):
        settings = Settings(url_base="https://client.example/", client_name="Example")

        config = settings.oauth_client_config()

        assert config.client_id == TEST_CLIENT_ID
        assert config.client_name == "Example"

    def test_empty_key_manager(self):
        assert len(Settings().key_manager()) == 0


class TestErrorStatus:
    """Test suite for mapping engine errors to HTTP statuses."""

    @pytest.mark.parametrize(
        "error, status",
        [
            (InvalidIdentifier("x"), 400),
            (InvalidOrExpiredState("x"), 400),
            (IssuerMismatch("x"), 400),
            (AuthorizationDenied("x", server_error="access_denied"), 403),
            (ResolutionFailure("x"), 502),
            (DiscoveryFailure("x"), 502),
            (UnsupportedServer("x"), 502),
            (RequestRejected("x"), 502),
            (TokenExchangeFailure("x"), 502),
            (NoSigningKey("x"), 500),
            (StateStoreFailure("x"), 500),
        ],
    )
    def test_error_status(self, error, status):
        assert error_status(error) == status


class TestHandlers:
    """Test suite for the HTTP endpoints."""

    async def test_startup_wires_engine(self, app_client):
        assert isinstance(app_client.app[StateStoreAppKey], MemoryStateStore)
        assert not app_client.app[SweepStateTaskAppKey].done()

    async def test_index(self, app_client):
        resp = await app_client.get("/")

        assert resp.status == 200
        body = await resp.text()
        assert "Sign in to Test Client" in body
        assert 'action="/signin"' in body

    async def test_client_metadata(self, app_client):
        resp = await app_client.get("/client-metadata.json")

        assert resp.status == 200
        metadata = await resp.json()
        assert metadata["client_id"] == TEST_CLIENT_ID
        assert metadata["redirect_uris"] == [f"{TEST_URL_BASE}/callback"]
        assert metadata["dpop_bound_access_tokens"] is True

    async def test_jwks(self, app_client):
        resp = await app_client.get("/.well-known/jwks.json")

        assert resp.status == 200
        jwks = await resp.json()
        assert [key["kid"] for key in jwks["keys"]] == ["key-00"]
        assert "d" not in jwks["keys"][0]

    async def test_sign_in_round_trip(self, app_client, fake_server):
        resp = await app_client.get(
            "/signin", params={"input": TEST_HANDLE}, allow_redirects=False
        )

        assert resp.status == 302
        location = resp.headers["Location"]
        assert location.startswith(fake_server.url("/oauth/authorize"))

        params = fake_server.issue_code(location)
        resp = await app_client.get("/callback", params=params)

        assert resp.status == 200
        token_set = await resp.json()
        assert token_set["sub"] == TEST_DID
        assert token_set["aud"] == fake_server.base_url
        assert token_set["token_type"] == "DPoP"
        assert "dpop_jwk" not in token_set

    async def test_sign_in_default_input(self, app_client):
        oauth_client = app_client.app[OAuthClientAppKey]
        authorize = AsyncMock(return_value="https://as.example.com/oauth/authorize?x=1")

        with patch.object(oauth_client, "authorize", authorize):
            resp = await app_client.get("/signin", allow_redirects=False)

        assert resp.status == 302
        authorize.assert_awaited_once_with(DEFAULT_SIGNIN_INPUT)

    async def test_sign_in_invalid_identifier(self, app_client):
        resp = await app_client.get("/signin", params={"input": "not a handle"})

        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_identifier"

    async def test_sign_in_unresolvable(self, app_client):
        resp = await app_client.get(
            "/signin", params={"input": "did:plc:zzzzzzzzzzzzzzzzzzzzzzzz"}
        )

        assert resp.status == 502
        assert (await resp.json())["error"] == "resolution_failure"

    async def test_callback_unknown_state(self, app_client, fake_server):
        resp = await app_client.get("/callback", params={"code": "abc", "state": "unknown"})

        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_or_expired_state"
        assert fake_server.token_requests == 0

    async def test_callback_access_denied(self, app_client, fake_server):
        resp = await app_client.get(
            "/signin", params={"input": TEST_HANDLE}, allow_redirects=False
        )
        params = fake_server.issue_code(resp.headers["Location"])

        resp = await app_client.get(
            "/callback", params={"state": params["state"], "error": "access_denied"}
        )

        assert resp.status == 403
        body = await resp.json()
        assert body["error"] == "authorization_denied"
        assert body["server_error"] == "access_denied"

    async def test_callback_malformed_token_response(self, app_client, fake_server):
        fake_server.metadata_overrides = {"token_endpoint": fake_server.url("/oauth/malformed")}
        resp = await app_client.get(
            "/signin", params={"input": TEST_HANDLE}, allow_redirects=False
        )
        params = fake_server.issue_code(resp.headers["Location"])

        resp = await app_client.get("/callback", params=params)

        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid_token_response"
