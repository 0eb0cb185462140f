"""
OAuth flow controller: the three-legged authorization-code handshake.

    started --callback--> code_received --exchange--> exchanged --persist--> completed
       +--------------> expired / rejected

A state token is single-use. It is deleted in the same transaction that
reads it, before the code exchange, so a replayed or concurrent duplicate
callback can never complete twice.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from datetime import timedelta
from typing import Any, Optional
from uuid import UUID

import httpx
from sqlalchemy import delete, select

from config import settings, utc_now
from connectors.errors import ConnectorError
from connectors.oauth import OAuthTokenClient, build_authorization_url, get_oauth_config
from connectors.registry import get_connector_class
from models.database import dialect_insert, get_session
from models.integration import Integration
from models.oauth_state import OAuthState
from services.token_vault import TokenVault

logger = logging.getLogger(__name__)

STATE_BYTES = 32


class OAuthFlowError(Exception):
    """Base class for OAuth protocol violations; never silently proceed."""


class ProviderNotConfigured(OAuthFlowError):
    """Provider unknown, or no client credentials configured for it."""


class InvalidState(OAuthFlowError):
    """State token unknown or already consumed."""


class ExpiredState(OAuthFlowError):
    """State token older than its TTL."""


class ProviderMismatch(OAuthFlowError):
    """Callback arrived on a different provider than the one that started the flow."""


class OAuthExchangeError(OAuthFlowError):
    """Provider refused or failed the code-for-token exchange."""


def default_redirect_uri(provider: str) -> str:
    return f"{settings.BACKEND_PUBLIC_URL.rstrip('/')}/api/oauth/{provider}/callback"


class OAuthFlowController:
    def __init__(
        self,
        vault: TokenVault,
        token_client: Optional[OAuthTokenClient] = None,
        state_ttl: Optional[timedelta] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._vault = vault
        self._token_client = token_client or OAuthTokenClient(http_client)
        self._http_client = http_client
        self._state_ttl = state_ttl or timedelta(minutes=settings.OAUTH_STATE_TTL_MINUTES)

    async def begin_authorization(
        self,
        organization_id: UUID,
        profile_id: UUID,
        provider: str,
        redirect_uri: str,
        existing_integration_id: Optional[UUID] = None,
    ) -> str:
        """Persist a fresh state token and return the provider authorization URL."""
        config = get_oauth_config(provider)
        if config is None:
            raise ProviderNotConfigured(f"OAuth is not configured for provider: {provider}")

        state = secrets.token_hex(STATE_BYTES)
        metadata: dict[str, Any] = {}
        if existing_integration_id is not None:
            metadata["existing_integration_id"] = str(existing_integration_id)

        async with get_session() as session:
            session.add(
                OAuthState(
                    state=state,
                    profile_id=profile_id,
                    organization_id=organization_id,
                    provider=provider,
                    redirect_uri=redirect_uri,
                    expires_at=utc_now() + self._state_ttl,
                    state_metadata=metadata,
                )
            )
            await session.commit()

        logger.info(
            "Started %s OAuth for org %s", provider, organization_id,
            extra={"organization_id": str(organization_id), "provider": provider},
        )
        return build_authorization_url(config, state, redirect_uri)

    async def _consume_state(self, provider: str, state: str) -> OAuthState:
        """Delete and return the state row, validating it."""
        async with get_session() as session:
            result = await session.execute(
                select(OAuthState).where(OAuthState.state == state).with_for_update()
            )
            oauth_state = result.scalar_one_or_none()
            if oauth_state is None:
                raise InvalidState("Invalid or already used OAuth state")

            await session.delete(oauth_state)
            await session.commit()

        if oauth_state.is_expired():
            raise ExpiredState("OAuth state expired; please start the connection again")
        if oauth_state.provider != provider:
            raise ProviderMismatch(
                f"OAuth state was issued for {oauth_state.provider}, not {provider}"
            )
        return oauth_state

    async def complete_authorization(self, provider: str, code: str, state: str) -> Integration:
        """Validate the state, exchange the code and upsert the Integration."""
        oauth_state = await self._consume_state(provider, state)

        config = get_oauth_config(provider)
        if config is None:
            raise ProviderNotConfigured(f"OAuth is not configured for provider: {provider}")

        try:
            tokens = await self._token_client.exchange_code(config, code, oauth_state.redirect_uri)
        except ConnectorError as exc:
            logger.warning("%s token exchange failed: %s", provider, exc.message)
            raise OAuthExchangeError(exc.message) from exc

        external_id: Optional[str] = None
        external_name: Optional[str] = None
        try:
            external_id, external_name = await get_connector_class(provider).fetch_account_identity(
                tokens.access_token, http_client=self._http_client
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.info("Could not resolve %s account identity: %s", provider, exc)

        now = utc_now()
        access_encrypted = self._vault.encrypt(tokens.access_token)
        refresh_encrypted = self._vault.encrypt(tokens.refresh_token) if tokens.refresh_token else None

        # Columns written on both insert and reconnect
        values: dict[str, Any] = {
            "access_token_encrypted": access_encrypted,
            "token_expires_at": tokens.expires_at(now),
            "status": "active",
            "status_message": None,
            "last_error": None,
            "last_error_at": None,
            "last_successful_connection_at": now,
            "connected_by": oauth_state.profile_id,
            "updated_at": now,
        }
        # Keep previous values when the provider didn't return new ones
        if refresh_encrypted is not None:
            values["refresh_token_encrypted"] = refresh_encrypted
        if tokens.scopes:
            values["scopes"] = tokens.scopes
        if external_id:
            values["external_account_id"] = external_id
        if external_name:
            values["external_account_name"] = external_name

        async with get_session() as session:
            insert = dialect_insert(session)
            stmt = insert(Integration.__table__).values(
                id=uuid.uuid4(),
                organization_id=oauth_state.organization_id,
                provider=provider,
                created_at=now,
                **values,
            )
            # Two tabs finishing the same org's OAuth land on one row
            stmt = stmt.on_conflict_do_update(
                index_elements=["organization_id", "provider"],
                set_=values,
            )
            await session.execute(stmt)
            await session.commit()

            result = await session.execute(
                select(Integration).where(
                    Integration.organization_id == oauth_state.organization_id,
                    Integration.provider == provider,
                )
            )
            integration = result.scalar_one()

        logger.info(
            "Completed %s OAuth for org %s", provider, oauth_state.organization_id,
            extra={
                "organization_id": str(oauth_state.organization_id),
                "provider": provider,
                "integration_id": str(integration.id),
            },
        )
        return integration

    async def purge_expired_states(self) -> int:
        """Garbage-collect state rows whose TTL has passed."""
        async with get_session() as session:
            result = await session.execute(
                delete(OAuthState).where(OAuthState.expires_at < utc_now())
            )
            await session.commit()
        purged = result.rowcount or 0
        if purged:
            logger.info("Purged %d expired OAuth states", purged)
        return purged
