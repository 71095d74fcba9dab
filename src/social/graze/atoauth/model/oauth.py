"""OAuth data models for the SQLAlchemy state store.

Provides the table holding in-flight authorization requests between the
redirect and the callback.
"""
from typing import Any, Optional
from datetime import datetime
from sqlalchemy import JSON, String, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from social.graze.atoauth.model.base import Base, str512


class OAuthRequest(Base):
    """OAuth authorization request state with PKCE and DPoP parameters.

    Stores temporary authorization state during OAuth flow including
    PKCE verifier, DPoP key, and request metadata.
    """
    __tablename__ = "oauth_requests"

    oauth_state: Mapped[str] = mapped_column(String(64), primary_key=True)
    issuer: Mapped[str512]
    pds: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    did: Mapped[Optional[str]] = mapped_column(String(2048), nullable=True)
    handle: Mapped[Optional[str]] = mapped_column(String(253), nullable=True)
    scope: Mapped[str512]
    pkce_verifier: Mapped[str] = mapped_column(String(128), nullable=False)
    dpop_jwk: Mapped[Any] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
