"""
Integration management endpoints.

Endpoints:
- GET /api/integrations - List the organization's integrations
- POST /api/integrations/{provider}/test - Test the stored credentials
- DELETE /api/integrations/{provider} - Disconnect (soft; ?hard=true deletes)
- GET /api/integrations/{provider}/properties - Provider property schema
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select

from api.auth_middleware import AuthContext, get_current_auth, require_admin
from api.dependencies import get_token_manager
from config import utc_now
from connectors.errors import AuthError, ConnectorError
from connectors.models import group_properties
from connectors.registry import build_connector
from models.database import get_session
from models.integration import Integration
from services.token_refresh import TokenRefreshManager
from services.token_vault import CryptoError

router = APIRouter()
logger = logging.getLogger(__name__)


async def _require_integration(auth: AuthContext, provider: str) -> Integration:
    async with get_session() as session:
        result = await session.execute(
            select(Integration).where(
                Integration.organization_id == auth.organization_id,
                Integration.provider == provider,
            )
        )
        integration = result.scalar_one_or_none()
    if integration is None:
        raise HTTPException(status_code=404, detail=f"No {provider} integration found")
    return integration


@router.get("")
async def list_integrations(
    auth: AuthContext = Depends(get_current_auth),
) -> dict[str, Any]:
    async with get_session() as session:
        result = await session.execute(
            select(Integration)
            .where(Integration.organization_id == auth.organization_id)
            .order_by(Integration.provider)
        )
        integrations = result.scalars().all()
    return {"integrations": [i.to_dict() for i in integrations]}


@router.post("/{provider}/test")
async def test_integration(
    provider: str,
    auth: AuthContext = Depends(get_current_auth),
    token_manager: TokenRefreshManager = Depends(get_token_manager),
) -> dict[str, Any]:
    """Make a lightweight authenticated call and record the outcome on the integration."""
    integration = await _require_integration(auth, provider)

    try:
        connector = build_connector(integration, token_manager)
        result = await connector.test_connection()
        success, error, details = result.success, result.error, result.details
    except (ConnectorError, CryptoError) as e:
        success, error, details = False, str(e), None

    async with get_session() as session:
        row = await session.get(Integration, integration.id)
        if row is not None:
            if success:
                row.last_successful_connection_at = utc_now()
            else:
                row.record_error(error or "Connection test failed")
            await session.commit()

    logger.info("Connection test for %s in org %s: success=%s", provider, auth.organization_id, success)
    response: dict[str, Any] = {"success": success}
    if error:
        response["error"] = error
    if details:
        response["details"] = details
    return response


@router.delete("/{provider}")
async def disconnect_integration(
    provider: str,
    hard: bool = Query(False),
    auth: AuthContext = Depends(require_admin),
) -> dict[str, Any]:
    """Soft disconnect clears tokens and keeps the row (and its data sources); hard deletes it."""
    integration = await _require_integration(auth, provider)

    async with get_session() as session:
        row = await session.get(Integration, integration.id)
        if row is None:
            raise HTTPException(status_code=404, detail=f"No {provider} integration found")
        if hard:
            await session.delete(row)
        else:
            row.status = "disconnected"
            row.status_message = None
            row.access_token_encrypted = None
            row.refresh_token_encrypted = None
            row.token_expires_at = None
        await session.commit()

    logger.info(
        "%s %s integration for org %s",
        "Deleted" if hard else "Disconnected", provider, auth.organization_id,
    )
    return {"success": True, "provider": provider, "deleted": hard}


@router.get("/{provider}/properties")
async def get_properties(
    provider: str,
    object_type: str = Query("deals"),
    auth: AuthContext = Depends(get_current_auth),
    token_manager: TokenRefreshManager = Depends(get_token_manager),
) -> dict[str, Any]:
    """Property definitions for one provider object type, grouped by property group."""
    integration = await _require_integration(auth, provider)

    try:
        connector = build_connector(integration, token_manager)
        definitions = await connector.get_object_properties(object_type)
    except (AuthError, CryptoError) as e:
        raise HTTPException(status_code=400, detail=f"Authentication failed: {e}")
    except ConnectorError as e:
        raise HTTPException(status_code=502, detail=e.message)

    grouped = group_properties(definitions)
    return {
        "object_type": object_type,
        "total": len(definitions),
        "groups": {
            group: [d.model_dump() for d in items] for group, items in grouped.items()
        },
    }
