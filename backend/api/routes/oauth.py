"""
OAuth connection endpoints.

Endpoints:
- GET /api/oauth/{provider}/connect - Redirect the admin to the provider's consent screen
- GET /api/oauth/{provider}/callback - Provider redirect target; always redirects to the frontend
- POST /api/oauth/{provider}/refresh - Force a token refresh
"""
from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import RedirectResponse
from sqlalchemy import select

from api.auth_middleware import AuthContext, require_admin
from api.dependencies import get_oauth_flow, get_token_manager
from config import settings
from connectors.oauth import get_oauth_config
from models.database import get_session
from models.integration import Integration
from services.oauth_flow import OAuthFlowController, OAuthFlowError, default_redirect_uri
from services.token_refresh import REFRESH_FAILED_MESSAGE, TokenRefreshManager
from services.token_vault import CryptoError

router = APIRouter()
logger = logging.getLogger(__name__)


def _frontend_redirect(params: dict[str, str]) -> RedirectResponse:
    base = f"{settings.FRONTEND_URL.rstrip('/')}/settings/integrations"
    return RedirectResponse(url=f"{base}?{urlencode(params)}", status_code=302)


async def _get_integration(organization_id: Any, provider: str) -> Optional[Integration]:
    async with get_session() as session:
        result = await session.execute(
            select(Integration).where(
                Integration.organization_id == organization_id,
                Integration.provider == provider,
            )
        )
        return result.scalar_one_or_none()


@router.get("/{provider}/connect")
async def connect(
    provider: str,
    reconnect: bool = Query(False),
    auth: AuthContext = Depends(require_admin),
    flow: OAuthFlowController = Depends(get_oauth_flow),
) -> RedirectResponse:
    """Start the authorization-code flow for the caller's organization."""
    if get_oauth_config(provider) is None:
        raise HTTPException(status_code=400, detail=f"OAuth is not configured for provider: {provider}")

    existing = await _get_integration(auth.organization_id, provider)
    if existing is not None and existing.is_active and not reconnect:
        raise HTTPException(
            status_code=403,
            detail=f"{provider} is already connected. Pass reconnect=true to re-authorize.",
        )

    try:
        authorization_url = await flow.begin_authorization(
            organization_id=auth.organization_id,
            profile_id=auth.user_id,
            provider=provider,
            redirect_uri=default_redirect_uri(provider),
            existing_integration_id=existing.id if existing is not None else None,
        )
    except OAuthFlowError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return RedirectResponse(url=authorization_url, status_code=302)


@router.get("/{provider}/callback")
async def callback(
    provider: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    error_description: Optional[str] = None,
    flow: OAuthFlowController = Depends(get_oauth_flow),
) -> RedirectResponse:
    """
    Provider redirect target.

    Unauthenticated (the browser arrives from the provider); the state token
    ties the callback to the admin who started the flow. Every outcome is a
    redirect to the frontend settings page, never a JSON body.
    """
    if error:
        logger.info("%s OAuth denied by provider: %s", provider, error)
        return _frontend_redirect({"error": error_description or error})
    if not code or not state:
        return _frontend_redirect({"error": "Missing authorization code or state"})

    try:
        integration = await flow.complete_authorization(provider, code, state)
    except OAuthFlowError as e:
        logger.warning("%s OAuth callback rejected: %s", provider, e)
        return _frontend_redirect({"error": str(e)})
    except CryptoError as e:
        logger.error("%s OAuth callback could not encrypt tokens: %s", provider, e)
        return _frontend_redirect({"error": "Token storage is not configured"})
    except Exception as e:
        logger.error("%s OAuth callback failed: %s", provider, e, exc_info=True)
        return _frontend_redirect({"error": "Unexpected error while completing the connection"})

    logger.info("%s connected for org %s", provider, integration.organization_id)
    return _frontend_redirect({"success": provider})


@router.post("/{provider}/refresh")
async def refresh(
    provider: str,
    auth: AuthContext = Depends(require_admin),
    token_manager: TokenRefreshManager = Depends(get_token_manager),
) -> dict[str, Any]:
    """Force a refresh of the organization's tokens for a provider."""
    integration = await _get_integration(auth.organization_id, provider)
    if integration is None:
        raise HTTPException(status_code=404, detail=f"No {provider} integration found")

    if not await token_manager.refresh(integration.id):
        integration = await _get_integration(auth.organization_id, provider)
        detail = (integration.last_error if integration else None) or REFRESH_FAILED_MESSAGE
        raise HTTPException(status_code=500, detail=detail)

    integration = await _get_integration(auth.organization_id, provider)
    return {"success": True, "integration": integration.to_dict() if integration else None}
