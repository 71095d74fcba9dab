"""
JWT and DPoP utilities for AT Protocol authentication.

Provides helper functions for creating DPoP (Demonstrating Proof of Possession) JWTs
as specified in RFC 9449, and client assertion JWTs for `private_key_jwt` client
authentication (RFC 7523).
"""

import base64
import hashlib
import secrets
from datetime import datetime, timezone
from typing import Dict, Any, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit
from jwcrypto import jwt, jwk
from ulid import ULID

SIGNING_ALG = "ES256"

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"


def generate_dpop_key() -> Tuple[jwk.JWK, Dict[str, Any]]:
    """Generate a new DPoP key pair for token binding.

    Creates an ECDSA P-256 key pair suitable for DPoP JWT signing with a unique
    key identifier for tracking and validation.

    Returns:
        Tuple[jwk.JWK, Dict[str, Any]]: A tuple containing:
            - dpop_key: The complete JWK including private key for signing
            - public_key_dict: The public key portion as a dictionary for JWT headers
    """
    dpop_key = jwk.JWK.generate(kty="EC", crv="P-256", kid=str(ULID()), alg=SIGNING_ALG)
    public_key_dict = dpop_key.export_public(as_dict=True)
    return dpop_key, public_key_dict


def normalize_htu(http_uri: str) -> str:
    """Strip the query and fragment from a DPoP target URI (RFC 9449 section 4.2)."""
    parts = urlsplit(http_uri)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def access_token_hash(access_token: str) -> str:
    """Compute the `ath` claim: base64url SHA-256 of the access token, unpadded."""
    digest = hashlib.sha256(access_token.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def create_dpop_header(public_key_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Create DPoP JWT header with embedded public key.

    Args:
        public_key_dict: Public key dictionary from generate_dpop_key()

    Returns:
        Dict[str, Any]: DPoP JWT header ready for use with jwcrypto
    """
    return {
        "alg": SIGNING_ALG,
        "jwk": public_key_dict,
        "typ": "dpop+jwt",
    }


def create_dpop_claims(
    http_method: str,
    http_uri: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> Dict[str, Any]:
    """Create DPoP JWT claims for request binding.

    Constructs the claims section of a DPoP JWT, binding the token to a specific
    HTTP request method and URI to prevent token misuse.

    Args:
        http_method: HTTP method (e.g., "POST", "GET")
        http_uri: Target HTTP URI for the request
        issued_at: Token issuance time (defaults to current UTC time)
        expires_in_seconds: Token validity period in seconds (default: 30)
        nonce: Optional server-provided nonce
        access_token: Optional access token, bound through the `ath` claim

    Returns:
        Dict[str, Any]: DPoP JWT claims ready for use with jwcrypto
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    claims = {
        "jti": secrets.token_urlsafe(32),
        "htm": http_method.upper(),
        "htu": normalize_htu(http_uri),
        "iat": int(issued_at.timestamp()),
        "exp": int(issued_at.timestamp()) + expires_in_seconds,
    }

    if nonce is not None:
        claims["nonce"] = nonce

    if access_token is not None:
        claims["ath"] = access_token_hash(access_token)

    return claims


def create_dpop_jwt(
    dpop_key: jwk.JWK,
    http_method: str,
    http_uri: str,
    public_key_dict: Optional[Dict[str, Any]] = None,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 30,
    nonce: Optional[str] = None,
    access_token: Optional[str] = None,
) -> str:
    """Create a complete DPoP JWT for request authentication.

    Generates a signed DPoP JWT that proves possession of a private key and binds
    the JWT to a specific HTTP request.

    Usage:
        ```python
        dpop_key, public_key = generate_dpop_key()
        dpop_token = create_dpop_jwt(
            dpop_key,
            "POST",
            "https://bsky.social/oauth/token"
        )
        headers["DPoP"] = dpop_token
        ```
    """
    if public_key_dict is None:
        public_key_dict = dpop_key.export_public(as_dict=True)

    header = create_dpop_header(public_key_dict)
    claims = create_dpop_claims(
        http_method, http_uri, issued_at, expires_in_seconds, nonce, access_token
    )

    dpop_jwt = jwt.JWT(header=header, claims=claims)
    dpop_jwt.make_signed_token(dpop_key)

    return dpop_jwt.serialize()


def create_client_assertion_header(kid: str) -> Dict[str, Any]:
    return {"alg": SIGNING_ALG, "kid": kid}


def create_client_assertion_claims(
    client_id: str,
    audience: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 60,
) -> Dict[str, Any]:
    """Create client assertion claims for `private_key_jwt` authentication.

    The client is both issuer and subject; the audience is the authorization
    server issuer. A fresh `jti` is generated per assertion.
    """
    if issued_at is None:
        issued_at = datetime.now(timezone.utc)

    return {
        "iss": client_id,
        "sub": client_id,
        "aud": audience,
        "jti": str(ULID()),
        "iat": int(issued_at.timestamp()),
        "exp": int(issued_at.timestamp()) + expires_in_seconds,
    }


def create_client_assertion_jwt(
    signing_key: jwk.JWK,
    kid: str,
    client_id: str,
    audience: str,
    issued_at: Optional[datetime] = None,
    expires_in_seconds: int = 60,
) -> str:
    """Create a signed client assertion JWT."""
    assertion = jwt.JWT(
        header=create_client_assertion_header(kid),
        claims=create_client_assertion_claims(
            client_id, audience, issued_at, expires_in_seconds
        ),
    )
    assertion.make_signed_token(signing_key)
    return assertion.serialize()
