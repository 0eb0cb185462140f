"""
Record store: idempotent landing of external records.

Every write is a single ``INSERT ... ON CONFLICT (organization_id,
object_type, external_id) DO UPDATE`` statement per chunk, so concurrent
syncs of overlapping record sets never race on an insert-then-update.
The provider is the source of truth: the property payload is replaced,
never merged.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Optional, Sequence
from uuid import UUID

from sqlalchemy import select

from config import utc_now
from connectors.models import ExternalRecord
from models.database import dialect_insert, get_session
from models.integration_record import IntegrationRecord

logger = logging.getLogger(__name__)

UPSERT_CHUNK_SIZE = 500

CONFLICT_KEYS: list[str] = ["organization_id", "object_type", "external_id"]
UPDATABLE_COLUMNS: list[str] = [
    "data_source_id",
    "properties",
    "external_created_at",
    "external_updated_at",
    "synced_at",
]


class RecordStore:
    """Upsert and read IntegrationRecord rows."""

    async def upsert_batch(
        self,
        organization_id: UUID,
        object_type: str,
        records: Sequence[ExternalRecord],
        data_source_id: Optional[UUID] = None,
    ) -> int:
        """Insert-or-replace records keyed by (organization, object type, external id).

        Returns the number of distinct records written.
        """
        if not records:
            return 0

        now = utc_now()
        # Postgres rejects one statement touching the same conflict key twice; last one wins
        rows_by_id: dict[str, dict[str, Any]] = {}
        for record in records:
            rows_by_id[record.external_id] = {
                "id": uuid.uuid4(),  # kept only when the row is new
                "organization_id": organization_id,
                "object_type": object_type,
                "external_id": record.external_id,
                "data_source_id": data_source_id,
                "properties": record.properties,
                "external_created_at": record.created_at,
                "external_updated_at": record.updated_at,
                "synced_at": now,
            }
        rows = list(rows_by_id.values())

        async with get_session() as session:
            insert = dialect_insert(session)
            table = IntegrationRecord.__table__
            for start in range(0, len(rows), UPSERT_CHUNK_SIZE):
                chunk = rows[start:start + UPSERT_CHUNK_SIZE]
                stmt = insert(table).values(chunk)
                stmt = stmt.on_conflict_do_update(
                    index_elements=CONFLICT_KEYS,
                    set_={col: getattr(stmt.excluded, col) for col in UPDATABLE_COLUMNS},
                )
                await session.execute(stmt)
            await session.commit()

        logger.info(
            "Upserted %d %s records for org %s", len(rows), object_type, organization_id,
            extra={"organization_id": str(organization_id), "object_type": object_type},
        )
        return len(rows)

    async def list_records(
        self,
        organization_id: UUID,
        object_type: str,
        limit: Optional[int] = None,
    ) -> list[IntegrationRecord]:
        async with get_session() as session:
            query = (
                select(IntegrationRecord)
                .where(
                    IntegrationRecord.organization_id == organization_id,
                    IntegrationRecord.object_type == object_type,
                )
                .order_by(IntegrationRecord.external_id)
            )
            if limit is not None:
                query = query.limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all())
