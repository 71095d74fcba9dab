"""
AT Protocol OAuth Handlers

This module implements the web request handlers that expose the OAuth client engine.

The handlers in this module provide the following endpoints:
- GET / - Sign-in form for entering a handle, DID or server URL
- GET /signin?input=... - Start an authorization attempt and redirect to the authorization server
- GET /callback - OAuth callback from the authorization server
- GET /client-metadata.json - OAuth client metadata, served at the client_id URL
- GET /.well-known/jwks.json - JWKS endpoint for client assertion verification

Engine errors are returned as JSON `{"error": ..., "error_description": ...}`
documents with a status chosen by `error_status`.
"""

import logging
from typing import Type

from aiohttp import web
import aiohttp_jinja2
import sentry_sdk

from social.graze.atoauth.app.config import OAuthClientAppKey, SettingsAppKey
from social.graze.atoauth.atproto.errors import (
    AuthorizationDenied,
    DiscoveryFailure,
    NoSigningKey,
    OAuthClientError,
    RequestRejected,
    ResolutionFailure,
    StateStoreFailure,
    TokenExchangeFailure,
    UnsupportedServer,
)

logger = logging.getLogger(__name__)

DEFAULT_SIGNIN_INPUT = "https://bsky.social"

_UPSTREAM_ERRORS: tuple[Type[OAuthClientError], ...] = (
    ResolutionFailure,
    DiscoveryFailure,
    UnsupportedServer,
    RequestRejected,
    TokenExchangeFailure,
)


def error_status(error: OAuthClientError) -> int:
    """
    Map an engine error to an HTTP status.

    - 403 when the user or the server refused authorization
    - 502 when a remote server failed or behaved unexpectedly
    - 500 when the client is misconfigured or its state store fails
    - 400 for everything attributable to the request itself
    """
    if isinstance(error, AuthorizationDenied):
        return 403
    if isinstance(error, (NoSigningKey, StateStoreFailure)):
        return 500
    if isinstance(error, _UPSTREAM_ERRORS):
        return 502
    return 400


def error_response(error: OAuthClientError) -> web.Response:
    return web.json_response(error.to_dict(), status=error_status(error))


async def handle_index(request: web.Request):
    settings = request.app[SettingsAppKey]
    return await aiohttp_jinja2.render_template_async(
        "index.html",
        request,
        context={
            "client_name": settings.client_name,
            "default_input": DEFAULT_SIGNIN_INPUT,
        },
    )


async def handle_signin(request: web.Request):
    """
    Start an authorization attempt.

    Request Parameters:
        input: Handle, DID or server URL; defaults to https://bsky.social

    Raises:
        HTTPFound: To redirect to the authorization server
    """
    oauth_client = request.app[OAuthClientAppKey]
    subject = request.query.get("input", "").strip() or DEFAULT_SIGNIN_INPUT

    try:
        redirect_destination = await oauth_client.authorize(subject)
    except OAuthClientError as e:
        logger.warning("Sign-in for %s failed: %s", subject, e.error)
        if error_status(e) >= 500:
            sentry_sdk.capture_exception(e)
        return error_response(e)

    raise web.HTTPFound(redirect_destination)


async def handle_callback(request: web.Request):
    """
    Complete an authorization attempt.

    Returns the resulting token set as JSON. The DPoP private key is never part
    of the response.
    """
    oauth_client = request.app[OAuthClientAppKey]

    try:
        token_set = await oauth_client.callback(request.query)
    except OAuthClientError as e:
        if e.security_sensitive:
            logger.warning("Rejected callback: %s", e.error)
        else:
            logger.info("Callback failed: %s", e.error)
        if error_status(e) >= 500:
            sentry_sdk.capture_exception(e)
        return error_response(e)

    return web.json_response(token_set.public_dict())


async def handle_client_metadata(request: web.Request):
    oauth_client = request.app[OAuthClientAppKey]
    return web.json_response(oauth_client.client_metadata())


async def handle_jwks(request: web.Request):
    """
    Handle JWKS (JSON Web Key Set) endpoint request.

    Authorization servers fetch this document to verify client assertions. It
    holds the public half of every configured key.
    """
    oauth_client = request.app[OAuthClientAppKey]
    return web.json_response(oauth_client.jwks())
