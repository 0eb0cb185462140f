"""
Integration model for connected OAuth providers.

We store OAuth tokens ourselves, encrypted at rest by the token vault.
One row per (organization, provider); reconnecting updates the row in place.

Status lifecycle:
- 'pending': created but never completed a token exchange
- 'active': tokens valid (as of the last refresh or connection test)
- 'error': refresh token rejected or revoked - requires reconnect
- 'disconnected': soft-disconnected by an admin, tokens cleared
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from config import to_iso8601, utc_now
from models.database import Base, JSONType

INTEGRATION_STATUSES: tuple[str, ...] = ("pending", "active", "error", "disconnected")


class Integration(Base):
    """OAuth connection between an organization and a provider."""

    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", name="uq_integration_org_provider"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    # Connector slug: 'hubspot', ...
    provider: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    status_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Ciphertext produced by services.token_vault - never serialize these
    access_token_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refresh_token_encrypted: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    scopes: Mapped[Optional[list[str]]] = mapped_column(JSONType, nullable=True)

    last_successful_connection_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Provider account (e.g. HubSpot portal id / domain)
    external_account_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_account_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Additional provider-specific data
    config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    # Profile that completed the OAuth flow
    connected_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=utc_now, nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=True
    )

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def record_error(self, message: str) -> None:
        self.last_error = message
        self.last_error_at = utc_now()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses. Token fields are never included."""
        return {
            "id": str(self.id),
            "organization_id": str(self.organization_id),
            "provider": self.provider,
            "status": self.status,
            "status_message": self.status_message,
            "token_expires_at": to_iso8601(self.token_expires_at),
            "scopes": self.scopes or [],
            "last_successful_connection_at": to_iso8601(self.last_successful_connection_at),
            "last_error": self.last_error,
            "last_error_at": to_iso8601(self.last_error_at),
            "external_account_id": self.external_account_id,
            "external_account_name": self.external_account_name,
            "created_at": to_iso8601(self.created_at),
            "updated_at": to_iso8601(self.updated_at),
        }
