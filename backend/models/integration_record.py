"""Normalized landing row for one externally sourced object."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from config import to_iso8601, utc_now
from models.database import Base, JSONType


class IntegrationRecord(Base):
    __tablename__ = "integration_records"
    __table_args__ = (
        # Natural key for idempotent upserts
        UniqueConstraint(
            "organization_id", "object_type", "external_id",
            name="uq_integration_record_org_type_external",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    data_source_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("data_sources.id", ondelete="SET NULL"), nullable=True, index=True
    )

    object_type: Mapped[str] = mapped_column(String(100), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)

    # Provider payload, replaced wholesale on every sync
    properties: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    external_created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    external_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "organization_id": str(self.organization_id),
            "data_source_id": str(self.data_source_id) if self.data_source_id else None,
            "object_type": self.object_type,
            "external_id": self.external_id,
            "properties": self.properties or {},
            "external_created_at": to_iso8601(self.external_created_at),
            "external_updated_at": to_iso8601(self.external_updated_at),
            "synced_at": to_iso8601(self.synced_at),
        }
