"""
ATOAuth - AT Protocol OAuth client

This package implements the client side of AT Protocol OAuth: a web application
signs users in with their handle, DID or server URL, and receives DPoP-bound
tokens for the user's Personal Data Server.

Key Components:
- atproto: The OAuth client engine, request signing and server discovery
- resolve: Identity resolution for AT Protocol DIDs and handles
- store: Single-use storage for in-flight authorization state
- model: Discovery documents, state records and token sets
- app: aiohttp web application exposing the engine
"""
