"""
ATOAuth Application Layer

This package exposes the OAuth client engine over HTTP using the aiohttp framework.

Key Components:
- cli.py: Entry point for running the application
- server.py: Web server configuration, startup and middleware setup
- config.py: Configuration management using Pydantic settings
- handlers/: Request handlers
- tasks.py: Background sweeping of expired state
- util/: Key generation utilities

It provides the following endpoints:
- Sign-in (/ and /signin) and the OAuth callback (/callback)
- Client metadata (/client-metadata.json) and JWKS (/.well-known/jwks.json)
"""
