"""
Client signing keys.

The `KeyManager` owns the private keys used for `private_key_jwt` client
authentication. The first configured key is the active key; every configured
key is published in the JWKS so that assertions signed with an older key remain
verifiable while a rotation rolls out.

Private key material never leaves this module: only `public_jwks()` is ever
serialized.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Union

from jwcrypto import jwk

from social.graze.atoauth.atproto.errors import NoSigningKey
from social.graze.atoauth.atproto.jwt import (
    SIGNING_ALG,
    create_client_assertion_jwt,
    create_dpop_jwt,
    generate_dpop_key,
)

logger = logging.getLogger(__name__)


def default_kid(index: int) -> str:
    return f"key-{index:02d}"


def prepare_signing_key(key: jwk.JWK, kid: str) -> jwk.JWK:
    """Validate a configured key and stamp it with `kid`, `alg` and `use`.

    Raises:
        ValueError: If the key is not a P-256 private key
    """
    if not key.has_private:
        raise ValueError(f"Signing key {kid} has no private component")

    params = key.export(private_key=True, as_dict=True)
    if params.get("kty") != "EC" or params.get("crv") != "P-256":
        raise ValueError(f"Signing key {kid} must be an EC P-256 key for {SIGNING_ALG}")

    params.update({"kid": kid, "alg": SIGNING_ALG, "use": "sig"})
    return jwk.JWK(**params)


class KeyManager:
    def __init__(self, keys: Optional[Sequence[jwk.JWK]] = None) -> None:
        self._keys: List[jwk.JWK] = []
        seen = set()
        for index, key in enumerate(keys or []):
            kid = key.get("kid") or default_kid(index)
            if kid in seen:
                raise ValueError(f"Duplicate signing key id {kid}")
            seen.add(kid)
            self._keys.append(prepare_signing_key(key, kid))

        if len(self._keys) == 0:
            logger.warning("No signing keys configured")

    @classmethod
    def from_pem(cls, pems: Sequence[Union[str, bytes]]) -> "KeyManager":
        """Load PKCS#8 PEM private keys, naming them key-00, key-01, ..."""
        keys = []
        for index, pem in enumerate(pems):
            data = pem.encode("utf-8") if isinstance(pem, str) else pem
            key = jwk.JWK.from_pem(data)
            keys.append(prepare_signing_key(key, default_kid(index)))
        return cls(keys)

    def __len__(self) -> int:
        return len(self._keys)

    @property
    def kids(self) -> List[str]:
        return [key["kid"] for key in self._keys]

    def active_key(self) -> jwk.JWK:
        if len(self._keys) == 0:
            raise NoSigningKey("No signing key is configured")
        return self._keys[0]

    def public_jwks(self) -> Dict[str, Any]:
        keys = []
        for key in self._keys:
            public = key.export_public(as_dict=True)
            public.update({"kid": key["kid"], "alg": SIGNING_ALG, "use": "sig"})
            keys.append(public)
        return {"keys": keys}

    def sign_client_assertion(
        self, client_id: str, audience: str, expires_in: int = 60
    ) -> str:
        """Sign a client assertion for the token or PAR endpoint of `audience`.

        Raises:
            NoSigningKey: If no key is configured
        """
        key = self.active_key()
        return create_client_assertion_jwt(
            key, key["kid"], client_id, audience, expires_in_seconds=expires_in
        )

    def generate_dpop_key(self) -> jwk.JWK:
        dpop_key, _ = generate_dpop_key()
        return dpop_key

    def sign_dpop_proof(
        self,
        dpop_key: jwk.JWK,
        http_method: str,
        http_url: str,
        nonce: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> str:
        """Sign a DPoP proof for one request with the flow's ephemeral key."""
        return create_dpop_jwt(
            dpop_key, http_method, http_url, nonce=nonce, access_token=access_token
        )
