"""
End-to-end tests for the OAuth client engine.

Each test drives `OAuthClient.authorize` and `OAuthClient.callback` against the
in-process fake server: handle resolution over DoH, DID resolution through the
fake PLC directory, discovery, PAR and the token endpoint are all real HTTP.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qsl, urlparse

import pytest
from jwcrypto import jwk

from social.graze.atoauth.atproto.errors import (
    AuthorizationDenied,
    InvalidIdentifier,
    InvalidOrExpiredState,
    InvalidTokenResponse,
    IssuerMismatch,
    NoSigningKey,
    RequestRejected,
    ResolutionFailure,
    StateStoreFailure,
    TokenExchangeFailure,
    UnsupportedServer,
)
from social.graze.atoauth.atproto.keys import KeyManager
from social.graze.atoauth.atproto.oauth import (
    OAuthClient,
    OAuthClientConfig,
    create_pkce_challenge,
    generate_pkce_verifier,
)
from social.graze.atoauth.atproto.pds import ServerMetadataDiscoverer
from social.graze.atoauth.model.state import SessionStateRecord
from social.graze.atoauth.store.state import MemoryStateStore, StateConflict

from tests.test_helpers import (
    TEST_CLIENT_ID,
    TEST_DID,
    TEST_HANDLE,
    build_oauth_client,
    generate_signing_key,
    pkce_challenge,
)


def query_of(url: str):
    return dict(parse_qsl(urlparse(url).query))


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class TestPkce:
    """Test suite for PKCE helpers."""

    def test_verifier_and_challenge(self):
        verifier, challenge = generate_pkce_verifier()

        assert 43 <= len(verifier) <= 128
        assert challenge == create_pkce_challenge(verifier)
        assert challenge == pkce_challenge(verifier)
        assert "=" not in challenge

    def test_verifiers_are_unique(self):
        assert generate_pkce_verifier()[0] != generate_pkce_verifier()[0]


class TestClientIdentity:
    """Test suite for client metadata and JWKS publication."""

    async def test_client_metadata(self, oauth_client):
        metadata = oauth_client.client_metadata()

        assert metadata["client_id"] == TEST_CLIENT_ID
        assert metadata["client_uri"] == "https://client.example"
        assert metadata["redirect_uris"] == ["https://client.example/callback"]
        assert metadata["jwks_uri"] == "https://client.example/.well-known/jwks.json"
        assert metadata["token_endpoint_auth_method"] == "private_key_jwt"
        assert metadata["token_endpoint_auth_signing_alg"] == "ES256"
        assert metadata["dpop_bound_access_tokens"] is True
        assert metadata["grant_types"] == ["authorization_code"]
        assert metadata["response_types"] == ["code"]
        assert metadata["application_type"] == "web"
        assert "atproto" in metadata["scope"].split()
        assert metadata["client_name"] == "Test Client"

    async def test_client_metadata_without_name(self, oauth_client):
        oauth_client.config = OAuthClientConfig(url_base="https://client.example/")
        metadata = oauth_client.client_metadata()
        assert "client_name" not in metadata
        assert metadata["client_id"] == TEST_CLIENT_ID

    async def test_jwks(self, oauth_client, key_manager):
        jwks = oauth_client.jwks()

        assert [key["kid"] for key in jwks["keys"]] == key_manager.kids
        assert all("d" not in key for key in jwks["keys"])

    async def test_no_signing_key(self, fake_server, http_session):
        with pytest.raises(NoSigningKey):
            build_oauth_client(fake_server, http_session, KeyManager())


class TestAuthorize:
    """Test suite for OAuthClient.authorize."""

    async def test_authorize_handle_with_par(self, oauth_client, fake_server, state_store):
        url = await oauth_client.authorize(TEST_HANDLE)

        assert url.startswith(fake_server.url("/oauth/authorize?"))
        query = query_of(url)
        assert query["client_id"] == TEST_CLIENT_ID
        pushed = fake_server.pushed[query["request_uri"]]
        assert pushed["login_hint"] == TEST_HANDLE
        assert pushed["response_type"] == "code"
        assert pushed["code_challenge_method"] == "S256"
        assert pushed["redirect_uri"] == "https://client.example/callback"
        assert pushed["scope"] == "atproto"

        assert len(state_store) == 1
        record = await state_store.take_once(pushed["state"])
        assert record is not None
        assert record.did == TEST_DID
        assert record.handle == TEST_HANDLE
        assert record.pds == fake_server.base_url
        assert record.issuer == fake_server.base_url
        assert pkce_challenge(record.pkce_verifier) == pushed["code_challenge"]
        assert jwk.JWK(**record.dpop_jwk).thumbprint() == pushed["jkt"]

    async def test_authorize_without_par(self, oauth_client, fake_server, state_store):
        fake_server.require_par = False

        url = await oauth_client.authorize(TEST_DID, scopes=["transition:generic"])

        query = query_of(url)
        assert fake_server.par_requests == 0
        assert query["client_id"] == TEST_CLIENT_ID
        assert query["code_challenge_method"] == "S256"
        assert query["scope"] == "atproto transition:generic"
        assert query["login_hint"] == TEST_HANDLE
        assert await state_store.take_once(query["state"]) is not None

    async def test_state_values_are_unique(self, oauth_client, fake_server):
        fake_server.require_par = False

        states = set()
        for _ in range(5):
            states.add(query_of(await oauth_client.authorize(TEST_HANDLE))["state"])

        assert len(states) == 5
        assert all(len(state) >= 43 for state in states)

    async def test_state_collision_is_retried(self, fake_server, http_session, key_manager):
        class CollidingStore(MemoryStateStore):
            collisions = 1

            async def put(self, record):
                if self.collisions > 0:
                    self.collisions -= 1
                    raise StateConflict(record.state)
                await super().put(record)

        store = CollidingStore()
        oauth_client = build_oauth_client(fake_server, http_session, key_manager, store)

        await oauth_client.authorize(TEST_HANDLE)

        assert len(store) == 1

    async def test_par_nonce_retry(self, oauth_client, fake_server):
        fake_server.par_nonce_challenges = 1

        url = await oauth_client.authorize(TEST_HANDLE)

        assert "request_uri" in query_of(url)
        assert fake_server.par_requests == 2
        assert fake_server.par_proofs[1]["claims"]["nonce"] == fake_server.nonce

    async def test_par_rejection_discards_state(self, oauth_client, fake_server, state_store):
        fake_server.client_jwks = KeyManager([generate_signing_key()]).public_jwks()

        with pytest.raises(RequestRejected) as exc_info:
            await oauth_client.authorize(TEST_HANDLE)

        assert exc_info.value.server_error == "invalid_client"
        assert len(state_store) == 0

    async def test_malformed_par_response(self, oauth_client, fake_server, state_store):
        fake_server.metadata_overrides = {
            "pushed_authorization_request_endpoint": fake_server.url("/oauth/malformed")
        }

        with pytest.raises(RequestRejected):
            await oauth_client.authorize(TEST_HANDLE)

        assert len(state_store) == 0

    async def test_par_required_without_endpoint(self, oauth_client, fake_server, key_manager):
        metadata = await oauth_client.discoverer.discover(fake_server.base_url)
        metadata = metadata.model_copy(update={"pushed_authorization_request_endpoint": None})

        with pytest.raises(UnsupportedServer):
            await oauth_client._push_authorization_request(
                metadata, key_manager.generate_dpop_key(), {"state": "state-1"}
            )

    async def test_state_store_exhausted(self, fake_server, http_session, key_manager):
        class FullStore(MemoryStateStore):
            async def put(self, record):
                raise StateConflict(record.state)

        oauth_client = build_oauth_client(fake_server, http_session, key_manager, FullStore())

        with pytest.raises(StateStoreFailure):
            await oauth_client.authorize(TEST_HANDLE)
        assert fake_server.par_requests == 0

    async def test_invalid_identifier(self, oauth_client, fake_server):
        with pytest.raises(InvalidIdentifier):
            await oauth_client.authorize("not a handle")
        assert fake_server.par_requests == 0

    async def test_unknown_did(self, oauth_client):
        with pytest.raises(ResolutionFailure):
            await oauth_client.authorize("did:plc:zzzzzzzzzzzzzzzzzzzzzzzz")

    async def test_handle_not_confirmed(self, oauth_client, fake_server):
        fake_server.document_handle = "someone.else"

        with pytest.raises(ResolutionFailure):
            await oauth_client.authorize(TEST_HANDLE)


class TestCallback:
    """Test suite for OAuthClient.callback."""

    async def test_round_trip(self, oauth_client, fake_server, state_store):
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)

        token_set = await oauth_client.callback(params)

        assert token_set.sub == TEST_DID
        assert token_set.iss == fake_server.base_url
        assert token_set.aud == fake_server.base_url
        assert token_set.token_type == "DPoP"
        assert token_set.scope == "atproto"
        assert token_set.access_token
        assert token_set.refresh_token
        assert token_set.expires_at > datetime.now(timezone.utc) + timedelta(minutes=59)
        assert len(state_store) == 0

        token_proof = fake_server.token_proofs[-1]
        assert token_proof["jkt"] == fake_server.par_proofs[-1]["jkt"]
        assert token_proof["jkt"] == jwk.JWK(**token_set.dpop_jwk).thumbprint()
        assert token_proof["claims"]["htu"] == fake_server.url("/oauth/token")
        assert "dpop_jwk" not in token_set.public_dict()
        assert "access_token" not in repr(token_set)

    async def test_round_trip_without_par(self, oauth_client, fake_server):
        fake_server.require_par = False
        url = await oauth_client.authorize(TEST_HANDLE)

        token_set = await oauth_client.callback(fake_server.issue_code(url))

        assert token_set.sub == TEST_DID

    async def test_round_trip_from_service_url(self, oauth_client, fake_server):
        url = await oauth_client.authorize(fake_server.base_url)
        pushed = fake_server.pushed[query_of(url)["request_uri"]]
        assert "login_hint" not in pushed

        token_set = await oauth_client.callback(fake_server.issue_code(url))

        assert token_set.sub == TEST_DID
        assert token_set.aud == fake_server.base_url

    async def test_client_assertions_are_unique(self, oauth_client, fake_server):
        url = await oauth_client.authorize(TEST_HANDLE)
        await oauth_client.callback(fake_server.issue_code(url))

        assert len(fake_server.assertion_jtis) == 2
        assert len(set(fake_server.assertion_jtis)) == 2

    async def test_replay_is_rejected(self, oauth_client, fake_server):
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)
        await oauth_client.callback(params)

        with pytest.raises(InvalidOrExpiredState):
            await oauth_client.callback(params)
        assert fake_server.token_requests == 1

    async def test_concurrent_callbacks_single_winner(self, oauth_client, fake_server):
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)

        results = await asyncio.gather(
            *[oauth_client.callback(params) for _ in range(5)], return_exceptions=True
        )

        successes = [result for result in results if not isinstance(result, Exception)]
        failures = [result for result in results if isinstance(result, Exception)]
        assert len(successes) == 1
        assert all(isinstance(failure, InvalidOrExpiredState) for failure in failures)
        assert fake_server.token_requests == 1

    async def test_unknown_state_never_reaches_token_endpoint(self, oauth_client, fake_server):
        with pytest.raises(InvalidOrExpiredState):
            await oauth_client.callback({"code": "abc", "state": "never-issued"})
        assert fake_server.token_requests == 0

    async def test_missing_state(self, oauth_client):
        with pytest.raises(InvalidOrExpiredState):
            await oauth_client.callback({"code": "abc"})

    async def test_expired_state(self, fake_server, http_session, key_manager):
        clock = FakeClock()
        store = MemoryStateStore(clock=clock)
        oauth_client = build_oauth_client(fake_server, http_session, key_manager, store)
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)

        clock.now += timedelta(minutes=11)

        with pytest.raises(InvalidOrExpiredState):
            await oauth_client.callback(params)
        assert fake_server.token_requests == 0

    async def test_access_denied_consumes_state(self, oauth_client, fake_server):
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)

        with pytest.raises(AuthorizationDenied) as exc_info:
            await oauth_client.callback(
                {"error": "access_denied", "error_description": "User declined", "state": params["state"]}
            )
        assert exc_info.value.server_error == "access_denied"
        assert exc_info.value.server_error_description == "User declined"

        with pytest.raises(InvalidOrExpiredState):
            await oauth_client.callback(params)
        assert fake_server.token_requests == 0

    async def test_neither_code_nor_error(self, oauth_client, fake_server):
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)

        with pytest.raises(AuthorizationDenied) as exc_info:
            await oauth_client.callback({"state": params["state"]})
        assert exc_info.value.server_error == "invalid_request"

        token_set = await oauth_client.callback(params)
        assert token_set.sub == TEST_DID

    async def test_malformed_token_response(self, oauth_client, fake_server):
        fake_server.metadata_overrides = {"token_endpoint": fake_server.url("/oauth/malformed")}
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)

        with pytest.raises(InvalidTokenResponse):
            await oauth_client.callback(params)

    async def test_client_assertion_lifetime(self, oauth_client, fake_server):
        oauth_client.config = OAuthClientConfig(
            url_base="https://client.example", client_assertion_lifetime=30
        )
        url = await oauth_client.authorize(TEST_HANDLE)
        await oauth_client.callback(fake_server.issue_code(url))

        assert len(fake_server.assertion_claims) == 2
        for claims in fake_server.assertion_claims:
            assert claims["exp"] - claims["iat"] == 30

    async def test_token_set_requires_known_pds(self, oauth_client, fake_server, key_manager):
        metadata = await oauth_client.discoverer.discover(fake_server.base_url)
        record = SessionStateRecord(
            state="state-1",
            issuer=fake_server.base_url,
            did=TEST_DID,
            scope="atproto",
            pkce_verifier="verifier",
            dpop_jwk=key_manager.generate_dpop_key().export(private_key=True, as_dict=True),
            created_at=datetime.now(timezone.utc),
        )
        token_response = {
            "access_token": "access",
            "token_type": "DPoP",
            "expires_in": 3600,
            "scope": "atproto",
            "sub": TEST_DID,
        }

        with pytest.raises(InvalidTokenResponse):
            await oauth_client._token_set(metadata, record, token_response)

    async def test_pkce_mismatch(self, oauth_client, fake_server):
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)
        fake_server.codes[params["code"]]["code_challenge"] = pkce_challenge("wrong-verifier")

        with pytest.raises(TokenExchangeFailure) as exc_info:
            await oauth_client.callback(params)
        assert exc_info.value.server_error == "invalid_grant"
        assert exc_info.value.status == 400

    async def test_single_nonce_retry_succeeds(self, oauth_client, fake_server):
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)
        fake_server.token_nonce_challenges = 1

        token_set = await oauth_client.callback(params)

        assert token_set.sub == TEST_DID
        assert fake_server.token_requests == 2
        assert fake_server.token_proofs[1]["claims"]["nonce"] == fake_server.nonce
        assert fake_server.token_proofs[0]["jkt"] == fake_server.token_proofs[1]["jkt"]

    async def test_second_nonce_challenge_fails(self, oauth_client, fake_server):
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)
        fake_server.token_nonce_challenges = 2

        with pytest.raises(TokenExchangeFailure) as exc_info:
            await oauth_client.callback(params)
        assert exc_info.value.server_error == "use_dpop_nonce"
        assert fake_server.token_requests == 2

    async def test_token_endpoint_error(self, oauth_client, fake_server):
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)
        fake_server.token_status = 503

        with pytest.raises(TokenExchangeFailure) as exc_info:
            await oauth_client.callback(params)
        assert exc_info.value.status == 503

    async def test_callback_issuer_mismatch(self, oauth_client, fake_server):
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)

        with pytest.raises(IssuerMismatch):
            await oauth_client.callback({**params, "iss": "https://evil.example.com"})
        assert fake_server.token_requests == 0

    async def test_callback_missing_issuer(self, oauth_client, fake_server):
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)
        del params["iss"]

        with pytest.raises(IssuerMismatch):
            await oauth_client.callback(params)

    async def test_callback_without_issuer_support(self, oauth_client, fake_server):
        fake_server.metadata_overrides = {"authorization_response_iss_parameter_supported": False}
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)
        del params["iss"]

        token_set = await oauth_client.callback(params)

        assert token_set.sub == TEST_DID

    @pytest.mark.parametrize(
        "overrides",
        [
            {"sub": "did:plc:zzzzzzzzzzzzzzzzzzzzzzzz"},
            {"sub": "not-a-did"},
            {"token_type": "Bearer"},
            {"scope": "transition:generic"},
            {"access_token": None},
            {"expires_in": None},
            {"expires_in": -5},
        ],
    )
    async def test_invalid_token_response(self, oauth_client, fake_server, overrides):
        url = await oauth_client.authorize(TEST_HANDLE)
        params = fake_server.issue_code(url)
        fake_server.token_response_overrides = overrides

        with pytest.raises(InvalidTokenResponse):
            await oauth_client.callback(params)

    async def test_service_flow_rejects_account_on_other_server(
        self, oauth_client, fake_server, http_session
    ):
        url = await oauth_client.authorize(fake_server.base_url)
        params = fake_server.issue_code(url)

        other_discoverer = ServerMetadataDiscoverer(http_session)
        other_discoverer.discover = _discover_elsewhere(other_discoverer.discover)
        oauth_client.discoverer = other_discoverer

        with pytest.raises(IssuerMismatch):
            await oauth_client.callback(params)


def _discover_elsewhere(discover):
    async def wrapper(pds):
        metadata = await discover(pds)
        return metadata.model_copy(update={"issuer": "https://elsewhere.example.com"})

    return wrapper


class TestOAuthClientConstruction:
    """Test suite for OAuthClient construction."""

    async def test_explicit_construction(self, fake_server, http_session):
        key_manager = KeyManager([generate_signing_key()])
        config = OAuthClientConfig(url_base="https://client.example", scopes=["atproto"])

        oauth_client = OAuthClient(
            config=config,
            key_manager=key_manager,
            identity_resolver=build_oauth_client(fake_server, http_session, key_manager).identity_resolver,
            discoverer=ServerMetadataDiscoverer(http_session),
            state_store=MemoryStateStore(),
            http_session=http_session,
        )

        assert oauth_client.config.redirect_uri == "https://client.example/callback"
        assert oauth_client.config.jwks_uri == "https://client.example/.well-known/jwks.json"
