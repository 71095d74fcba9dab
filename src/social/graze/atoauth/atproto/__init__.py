"""
AT Protocol OAuth

This package implements the OAuth client engine and everything it needs to talk
to AT Protocol authorization servers.

Key Components:
- oauth.py: OAuthClient, with authorize (redirect) and callback (code exchange)
- pds.py: Authorization server discovery from a PDS, with issuer checks
- chain.py: Middleware chain for signed requests (client assertion, DPoP)
- keys.py: Client signing keys and the published JWKS
- jwt.py: DPoP proof and client assertion JWT construction
- errors.py: The error kinds raised by the engine

Key Features:
- PKCE S256 on every request
- DPoP-bound tokens with a single automatic `use_dpop_nonce` retry
- `private_key_jwt` client authentication with ES256
- Pushed authorization requests when the server requires them
"""
