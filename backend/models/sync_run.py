"""
Sync run audit trail.

One row per execution of the sync orchestrator against a data source.
Rows are written as 'running' and finalized exactly once.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from config import to_iso8601, utc_now
from models.database import Base, JSONType

SYNC_RUN_STATUSES: tuple[str, ...] = ("running", "success", "partial", "failed")


class SyncRun(Base):
    __tablename__ = "sync_runs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    data_source_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("data_sources.id", ondelete="CASCADE"), nullable=False, index=True
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)

    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    records_fetched: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    records_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Per-page failures: [{"page": 3, "stage": "upsert", "error": "..."}]
    error_details: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(JSONType, nullable=True)

    # 'manual' or 'scheduled'
    triggered_by: Mapped[str] = mapped_column(String(20), nullable=False, default="manual")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.id),
            "data_source_id": str(self.data_source_id),
            "started_at": to_iso8601(self.started_at),
            "completed_at": to_iso8601(self.completed_at),
            "duration_ms": self.duration_ms,
            "status": self.status,
            "records_fetched": self.records_fetched,
            "records_processed": self.records_processed,
            "error_message": self.error_message,
            "error_details": self.error_details or [],
            "triggered_by": self.triggered_by,
        }
