"""
Shared test configuration and fixtures for ATOAuth tests.

Provides the in-process fake authorization server, a shared HTTP session,
signing keys, and the state store backends (memory, fakeredis and SQLite).
"""

import pytest
import pytest_asyncio
import aiohttp
import fakeredis.aioredis
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from social.graze.atoauth.atproto.keys import KeyManager
from social.graze.atoauth.model.base import Base
from social.graze.atoauth.store.state import MemoryStateStore

from tests.test_helpers import (
    FakeAuthorizationServer,
    build_oauth_client,
    generate_signing_key,
)


@pytest_asyncio.fixture
async def fake_server():
    """Start a fake DoH / PLC / PDS / authorization server for one test."""
    server = FakeAuthorizationServer()
    await server.start()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def http_session():
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=5)) as session:
        yield session


@pytest.fixture
def key_manager():
    return KeyManager([generate_signing_key()])


@pytest.fixture
def state_store():
    return MemoryStateStore()


@pytest_asyncio.fixture
async def oauth_client(fake_server, http_session, key_manager, state_store):
    """An OAuthClient wired to the fake server."""
    return build_oauth_client(fake_server, http_session, key_manager, state_store)


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def database_session_maker(tmp_path):
    """SQLite-backed session maker with the state table created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
