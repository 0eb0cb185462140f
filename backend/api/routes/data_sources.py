"""
Data source endpoints.

Endpoints:
- GET /api/data-sources - List the organization's data sources
- POST /api/data-sources - Create a data source (admin)
- PATCH /api/data-sources/{id} - Update a data source (admin)
- POST /api/data-sources/{id}/sync - Run one sync inline
- GET /api/data-sources/{id}/debug-associations - Association diagnostics
"""
from __future__ import annotations

import logging
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from api.auth_middleware import AuthContext, get_current_auth, require_admin
from api.dependencies import get_sync_orchestrator, get_token_manager
from connectors.errors import AuthError, ConnectorError
from connectors.registry import build_connector
from models.data_source import SYNC_FREQUENCY_INTERVALS, DataSource, next_sync_time
from models.database import get_session
from models.integration import Integration
from services.sync_engine import DataSourceNotFoundError, SyncOrchestrator
from services.sync_lock import SyncAlreadyRunningError
from services.token_refresh import TokenRefreshManager
from services.token_vault import CryptoError

router = APIRouter()
logger = logging.getLogger(__name__)

DEBUG_SAMPLE_SIZE = 5


class DataSourceCreateRequest(BaseModel):
    source_type: str
    entity_type: str
    name: Optional[str] = None
    query_config: Optional[dict[str, Any]] = None
    destination_config: Optional[dict[str, Any]] = None
    sync_frequency: str = "manual"
    is_active: bool = True


class DataSourceUpdateRequest(BaseModel):
    name: Optional[str] = None
    is_active: Optional[bool] = None
    sync_frequency: Optional[str] = None
    query_config: Optional[dict[str, Any]] = None


def _validate_frequency(frequency: str) -> None:
    if frequency not in SYNC_FREQUENCY_INTERVALS:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid sync_frequency '{frequency}'. Expected one of: {', '.join(SYNC_FREQUENCY_INTERVALS)}",
        )


async def _require_data_source(auth: AuthContext, data_source_id: UUID) -> DataSource:
    async with get_session() as session:
        data_source = await session.get(DataSource, data_source_id)
    if data_source is None or data_source.organization_id != auth.organization_id:
        raise HTTPException(status_code=404, detail="Data source not found")
    return data_source


@router.get("")
async def list_data_sources(
    auth: AuthContext = Depends(get_current_auth),
) -> dict[str, Any]:
    async with get_session() as session:
        result = await session.execute(
            select(DataSource)
            .where(DataSource.organization_id == auth.organization_id)
            .order_by(DataSource.source_type, DataSource.entity_type)
        )
        data_sources = result.scalars().all()
    return {"data_sources": [ds.to_dict() for ds in data_sources]}


@router.post("", status_code=201)
async def create_data_source(
    request: DataSourceCreateRequest,
    auth: AuthContext = Depends(require_admin),
) -> dict[str, Any]:
    _validate_frequency(request.sync_frequency)

    async with get_session() as session:
        result = await session.execute(
            select(Integration).where(
                Integration.organization_id == auth.organization_id,
                Integration.provider == request.source_type,
            )
        )
        integration = result.scalar_one_or_none()
        if integration is None:
            raise HTTPException(
                status_code=400,
                detail=f"Connect {request.source_type} before adding a data source",
            )

        data_source = DataSource(
            organization_id=auth.organization_id,
            integration_id=integration.id,
            name=request.name or f"{request.source_type} {request.entity_type}",
            source_type=request.source_type,
            entity_type=request.entity_type,
            query_config=request.query_config or {},
            destination_config=request.destination_config or {},
            is_active=request.is_active,
            sync_frequency=request.sync_frequency,
            next_scheduled_sync_at=next_sync_time(request.sync_frequency),
            created_by=auth.user_id,
        )
        session.add(data_source)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            raise HTTPException(
                status_code=409,
                detail=f"A {request.source_type} data source for {request.entity_type} already exists",
            )

    logger.info(
        "Created %s/%s data source for org %s",
        request.source_type, request.entity_type, auth.organization_id,
    )
    return data_source.to_dict()


@router.patch("/{data_source_id}")
async def update_data_source(
    data_source_id: UUID,
    request: DataSourceUpdateRequest,
    auth: AuthContext = Depends(require_admin),
) -> dict[str, Any]:
    await _require_data_source(auth, data_source_id)
    if request.sync_frequency is not None:
        _validate_frequency(request.sync_frequency)

    async with get_session() as session:
        data_source = await session.get(DataSource, data_source_id)
        if data_source is None:
            raise HTTPException(status_code=404, detail="Data source not found")
        if request.name is not None:
            data_source.name = request.name
        if request.is_active is not None:
            data_source.is_active = request.is_active
        if request.query_config is not None:
            data_source.query_config = request.query_config
        if request.sync_frequency is not None and request.sync_frequency != data_source.sync_frequency:
            data_source.sync_frequency = request.sync_frequency
            data_source.next_scheduled_sync_at = next_sync_time(request.sync_frequency)
        await session.commit()

    return data_source.to_dict()


@router.post("/{data_source_id}/sync")
async def sync_data_source(
    data_source_id: UUID,
    auth: AuthContext = Depends(get_current_auth),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> dict[str, Any]:
    """Run a sync for one data source and wait for it to finish."""
    await _require_data_source(auth, data_source_id)

    try:
        result = await orchestrator.run_sync(data_source_id, trigger="manual")
    except DataSourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SyncAlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return result.to_dict()


@router.get("/{data_source_id}/debug-associations")
async def debug_associations(
    data_source_id: UUID,
    to_type: str = Query(...),
    auth: AuthContext = Depends(get_current_auth),
    token_manager: TokenRefreshManager = Depends(get_token_manager),
) -> dict[str, Any]:
    """
    Compare the ways the provider reports associations for a few records.

    Shows the declared schema in both directions, the v4 batch result
    against one-by-one lookups for the same sample, and the raw v3 inline
    association shape. Read-only; nothing is stored.
    """
    data_source = await _require_data_source(auth, data_source_id)
    from_type = data_source.object_type

    async with get_session() as session:
        integration = await session.get(Integration, data_source.integration_id)
    if integration is None:
        raise HTTPException(status_code=404, detail="Integration not found")

    try:
        connector = build_connector(integration, token_manager)
        forward_schema = await connector.get_association_schema(from_type, to_type)
        reverse_schema = await connector.get_association_schema(to_type, from_type)

        page = await connector.list_objects(from_type)
        sample_ids = [r.external_id for r in page.records[:DEBUG_SAMPLE_SIZE]]
        batch = await connector.batch_fetch_associations(from_type, sample_ids, to_type) if sample_ids else {}
        single = {i: await connector.fetch_associations(from_type, i, to_type) for i in sample_ids}

        inline: Optional[list[dict[str, Any]]] = None
        inline_lookup = getattr(connector, "list_objects_with_inline_associations", None)
        if inline_lookup is not None:
            raw = await inline_lookup(from_type, [to_type], limit=DEBUG_SAMPLE_SIZE)
            inline = [{"id": r.get("id"), "associations": r.get("associations")} for r in raw]
    except (AuthError, CryptoError) as e:
        raise HTTPException(status_code=400, detail=f"Authentication failed: {e}")
    except ConnectorError as e:
        raise HTTPException(status_code=502, detail=e.message)

    mismatched = sorted(i for i in sample_ids if sorted(batch.get(i, [])) != sorted(single[i]))
    return {
        "from_type": from_type,
        "to_type": to_type,
        "schema": {
            "forward": [d.model_dump() for d in forward_schema],
            "reverse": [d.model_dump() for d in reverse_schema],
        },
        "sample_ids": sample_ids,
        "v4_batch": batch,
        "v4_single": single,
        "batch_matches_single": not mismatched,
        "mismatched_ids": mismatched,
        "v3_inline": inline,
    }
