import asyncio
import contextlib
import logging
from datetime import timedelta
from typing import Optional

import aiohttp
from aiohttp import web
import aiohttp_jinja2
import jinja2
import redis.asyncio as redis
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
)
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from social.graze.atoauth.app.config import (
    DatabaseAppKey,
    OAuthClientAppKey,
    RedisClientAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    StateStoreAppKey,
    SweepStateTaskAppKey,
    templates_path,
)
from social.graze.atoauth.app.handlers.oauth import (
    handle_callback,
    handle_client_metadata,
    handle_index,
    handle_jwks,
    handle_signin,
)
from social.graze.atoauth.app.tasks import sweep_state_task
from social.graze.atoauth.atproto.oauth import (
    CALLBACK_PATH,
    CLIENT_METADATA_PATH,
    JWKS_PATH,
    OAuthClient,
)
from social.graze.atoauth.atproto.pds import ServerMetadataDiscoverer
from social.graze.atoauth.model.base import Base
from social.graze.atoauth.resolve.dns import (
    AiodnsTxtResolver,
    DnsTxtResolver,
    DohDnsTxtResolver,
)
from social.graze.atoauth.resolve.handle import IdentityResolver
from social.graze.atoauth.store.database import DatabaseStateStore
from social.graze.atoauth.store.redis import RedisStateStore
from social.graze.atoauth.store.state import MemoryStateStore, StateStore

logger = logging.getLogger(__name__)


async def create_state_store(app: web.Application, settings: Settings) -> StateStore:
    lifetime = timedelta(seconds=settings.state_ttl)

    if settings.redis_dsn:
        redis_client = redis.Redis.from_url(settings.redis_dsn)
        app[RedisClientAppKey] = redis_client
        logger.info("Using Redis state store")
        return RedisStateStore(redis_client, lifetime)

    if settings.pg_dsn:
        engine = create_async_engine(settings.pg_dsn)
        app[DatabaseAppKey] = engine
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        database_session = async_sessionmaker(
            engine, class_=AsyncSession, expire_on_commit=False
        )
        logger.info("Using database state store")
        return DatabaseStateStore(database_session, lifetime)

    logger.warning("Using in-memory state store; state is not shared between workers")
    return MemoryStateStore(lifetime)


def create_txt_resolver(settings: Settings, http_session: aiohttp.ClientSession) -> DnsTxtResolver:
    if settings.doh_service_url:
        return DohDnsTxtResolver(http_session, settings.doh_service_url)
    return AiodnsTxtResolver()


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logging.info(
                "Ending request: %s %s %s", params.method, params.url, params.response.status
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    http_session = aiohttp.ClientSession(
        timeout=aiohttp.ClientTimeout(total=settings.http_timeout),
        trace_configs=[trace_config],
    )
    app[SessionAppKey] = http_session

    state_store = await create_state_store(app, settings)
    app[StateStoreAppKey] = state_store

    app[OAuthClientAppKey] = OAuthClient(
        config=settings.oauth_client_config(),
        key_manager=settings.key_manager(),
        identity_resolver=IdentityResolver(
            http_session,
            create_txt_resolver(settings, http_session),
            settings.plc_directory_url,
        ),
        discoverer=ServerMetadataDiscoverer(http_session, settings.metadata_ttl),
        state_store=state_store,
        http_session=http_session,
    )

    logger.info("Startup complete")

    app[SweepStateTaskAppKey] = asyncio.create_task(sweep_state_task(app))

    yield

    logger.info("Shutting down background tasks")

    app[SweepStateTaskAppKey].cancel()

    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await app[SweepStateTaskAppKey]

    if DatabaseAppKey in app:
        await app[DatabaseAppKey].dispose()
    if RedisClientAppKey in app:
        await app[RedisClientAppKey].aclose()
    await app[SessionAppKey].close()


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(middlewares=[sentry_middleware])

    app[SettingsAppKey] = settings

    app.add_routes(
        [
            web.get("/", handle_index),
            web.get("/signin", handle_signin),
            web.get(CALLBACK_PATH, handle_callback),
            web.get(CLIENT_METADATA_PATH, handle_client_metadata),
            web.get(JWKS_PATH, handle_jwks),
        ]
    )

    _ = aiohttp_jinja2.setup(
        app,
        enable_async=True,
        loader=jinja2.FileSystemLoader(templates_path()),
    )

    app.cleanup_ctx.append(background_tasks)

    return app
