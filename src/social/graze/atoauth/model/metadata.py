"""OAuth metadata documents exchanged with AT Protocol servers.

Discovery documents are parsed into pydantic models that ignore unknown
members, so servers may advertise more than this client understands.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ProtectedResourceMetadata(BaseModel):
    """RFC 9728 document served by a PDS at /.well-known/oauth-protected-resource."""

    model_config = ConfigDict(extra="ignore")

    resource: str
    authorization_servers: List[str] = Field(default_factory=list)


class AuthorizationServerMetadata(BaseModel):
    """RFC 8414 document served at /.well-known/oauth-authorization-server."""

    model_config = ConfigDict(extra="ignore")

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    pushed_authorization_request_endpoint: Optional[str] = None
    require_pushed_authorization_requests: bool = False
    response_types_supported: List[str] = Field(default_factory=list)
    grant_types_supported: List[str] = Field(default_factory=list)
    code_challenge_methods_supported: List[str] = Field(default_factory=list)
    dpop_signing_alg_values_supported: List[str] = Field(default_factory=list)
    token_endpoint_auth_methods_supported: List[str] = Field(default_factory=list)
    token_endpoint_auth_signing_alg_values_supported: List[str] = Field(default_factory=list)
    scopes_supported: List[str] = Field(default_factory=list)
    authorization_response_iss_parameter_supported: bool = False
    client_id_metadata_document_supported: bool = False


class ATProtocolOAuthClientMetadata(BaseModel):
    """
    OAuth 2.0 Client Metadata for AT Protocol integration.

    Served at the client_id URL and fetched by authorization servers to
    validate requests from this client.
    """

    client_id: str
    """Client identifier URI"""

    client_uri: str
    """URI of the client's homepage"""

    redirect_uris: List[str]
    """List of allowed redirect URIs for this client"""

    token_endpoint_auth_method: str = "private_key_jwt"
    """Authentication method for the token endpoint"""

    grant_types: List[str] = Field(default_factory=lambda: ["authorization_code"])
    """OAuth grant types supported by this client"""

    scope: str = "atproto"
    """OAuth scopes requested by this client"""

    jwks_uri: str
    """URI of the client's JWKS (JSON Web Key Set)"""

    token_endpoint_auth_signing_alg: str = "ES256"
    """Algorithm used for signing token endpoint authentication assertions"""

    response_types: List[str] = Field(default_factory=lambda: ["code"])
    """OAuth response types supported by this client"""

    application_type: str = "web"
    """Type of application (web, native)"""

    dpop_bound_access_tokens: bool = True
    """Whether access tokens are bound to DPoP proofs"""

    client_name: Optional[str] = None
    """Human-readable name of the client application"""
