"""
Data source model: what to sync, from which integration, and how often.

query_config shape:
    {
        "object_type": "deals",                      # provider object type (defaults to entity_type)
        "properties": ["dealname", "amount"],        # properties to request (optional)
        "filters": [                                 # provider search filters, ANDed (optional)
            {"propertyName": "dealstage", "operator": "EQ", "value": "closedwon"},
        ],
        "associations": ["companies", "contacts"],   # object types to resolve associations to
    }
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from config import to_iso8601, utc_now
from models.database import Base, JSONType

SYNC_FREQUENCY_INTERVALS: dict[str, Optional[timedelta]] = {
    "5min": timedelta(minutes=5),
    "15min": timedelta(minutes=15),
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "manual": None,
}


def next_sync_time(frequency: Optional[str], from_time: Optional[datetime] = None) -> Optional[datetime]:
    """Next scheduled sync for a frequency; None for manual (or unknown) schedules."""
    interval = SYNC_FREQUENCY_INTERVALS.get(frequency or "manual")
    if interval is None:
        return None
    return (from_time or utc_now()) + interval


class DataSource(Base):
    """Schedulable binding of one organization, one provider and one entity type."""

    __tablename__ = "data_sources"
    __table_args__ = (
        UniqueConstraint(
            "organization_id", "source_type", "entity_type",
            name="uq_data_source_org_source_entity",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    integration_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("integrations.id", ondelete="CASCADE"), nullable=False
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Provider slug, e.g. 'hubspot'
    source_type: Mapped[str] = mapped_column(String(50), nullable=False)
    # Logical entity: 'owners', 'deals', 'activities', ...
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    query_config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    destination_config: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sync_frequency: Mapped[str] = mapped_column(String(20), default="manual", nullable=False)

    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_sync_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    last_sync_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_sync_records_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    next_scheduled_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime, default=utc_now, nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=True
    )

    @property
    def object_type(self) -> str:
        return (self.query_config or {}).get("object_type") or self.entity_type

    @property
    def requested_properties(self) -> Optional[list[str]]:
        return (self.query_config or {}).get("properties") or None

    @property
    def query_filters(self) -> Optional[list[dict[str, Any]]]:
        return (self.query_config or {}).get("filters") or None

    @property
    def association_targets(self) -> list[str]:
        return list((self.query_config or {}).get("associations") or [])

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "organization_id": str(self.organization_id),
            "integration_id": str(self.integration_id),
            "name": self.name,
            "source_type": self.source_type,
            "entity_type": self.entity_type,
            "query_config": self.query_config or {},
            "destination_config": self.destination_config or {},
            "is_active": self.is_active,
            "sync_frequency": self.sync_frequency,
            "last_sync_at": to_iso8601(self.last_sync_at),
            "last_sync_status": self.last_sync_status,
            "last_sync_error": self.last_sync_error,
            "last_sync_records_count": self.last_sync_records_count,
            "next_scheduled_sync_at": to_iso8601(self.next_scheduled_sync_at),
            "created_at": to_iso8601(self.created_at),
        }
