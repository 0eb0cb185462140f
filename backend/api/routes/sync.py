"""
Organization-wide sync endpoints.

Endpoints:
- POST /api/sync - Run entity syncs for the caller's organization
- GET /api/sync - Recent sync runs plus the latest status per entity type
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select

from api.auth_middleware import AuthContext, get_current_auth
from api.dependencies import get_sync_orchestrator
from config import to_iso8601
from models.data_source import DataSource
from models.database import get_session
from models.sync_run import SyncRun
from services.sync_engine import SyncOrchestrator

router = APIRouter()
logger = logging.getLogger(__name__)

MAX_LOG_LIMIT = 100


class SyncRequest(BaseModel):
    sync_type: str = "full"


@router.post("")
async def trigger_sync(
    request: SyncRequest,
    auth: AuthContext = Depends(get_current_auth),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> dict[str, Any]:
    """Run the requested entity syncs inline, one entity type at a time."""
    try:
        results = await orchestrator.run_entity_syncs(
            auth.organization_id, sync_type=request.sync_type, trigger="manual"
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(
        "Sync %s for org %s finished: %s",
        request.sync_type, auth.organization_id,
        {entity: r.status for entity, r in results.items()},
    )
    return {
        "success": all(r.success for r in results.values()),
        "results": {entity: r.to_dict() for entity, r in results.items()},
    }


@router.get("")
async def get_sync_status(
    limit: int = Query(20, ge=1),
    auth: AuthContext = Depends(get_current_auth),
) -> dict[str, Any]:
    limit = min(limit, MAX_LOG_LIMIT)

    async with get_session() as session:
        runs_result = await session.execute(
            select(SyncRun, DataSource.entity_type, DataSource.name)
            .join(DataSource, DataSource.id == SyncRun.data_source_id)
            .where(SyncRun.organization_id == auth.organization_id)
            .order_by(SyncRun.started_at.desc())
            .limit(limit)
        )
        runs = runs_result.all()

        sources_result = await session.execute(
            select(DataSource)
            .where(
                DataSource.organization_id == auth.organization_id,
                DataSource.is_active.is_(True),
            )
            .order_by(DataSource.entity_type, DataSource.source_type)
        )
        data_sources = sources_result.scalars().all()

    logs: list[dict[str, Any]] = []
    for run, entity_type, name in runs:
        entry = run.to_dict()
        entry["entity_type"] = entity_type
        entry["data_source_name"] = name
        logs.append(entry)

    last_sync_by_type: dict[str, dict[str, Any]] = {}
    for data_source in data_sources:
        # First source per entity type wins, matching the sync fan-out order
        if data_source.entity_type in last_sync_by_type:
            continue
        last_sync_by_type[data_source.entity_type] = {
            "dataSourceId": str(data_source.id),
            "name": data_source.name,
            "lastSyncAt": to_iso8601(data_source.last_sync_at),
            "lastSyncStatus": data_source.last_sync_status,
            "lastSyncError": data_source.last_sync_error,
            "recordsFetched": data_source.last_sync_records_count,
            "nextScheduledSyncAt": to_iso8601(data_source.next_scheduled_sync_at),
            "syncFrequency": data_source.sync_frequency,
        }

    return {"logs": logs, "lastSyncByType": last_sync_by_type}
