"""
Token refresh manager.

Hands out valid access tokens for integrations, refreshing them shortly
before they expire (proactive) or when the provider rejects them
(reactive, via :meth:`TokenRefreshManager.refresh`).

Concurrency:
- Within a process, a refresh for one integration is single-flight: the
  in-flight refresh is a shared task that concurrent callers await instead
  of spending the (possibly single-use) refresh token twice.
- Proactive refreshes re-check expiry after taking a per-integration lock,
  so two callers that both saw an expiring token trigger one refresh.
- Across processes, the Integration row is locked with SELECT ... FOR
  UPDATE for the whole read-modify-write of tokens, expiry and status.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select

from config import settings, utc_now
from connectors.base import AccessToken
from connectors.errors import AuthError, ConnectorError, RateLimited, TransientError
from connectors.oauth import OAuthTokenClient, get_oauth_config
from connectors.retry import RetryPolicy
from models.database import get_session
from models.integration import Integration
from services.token_vault import CryptoError, TokenVault

logger = logging.getLogger(__name__)

REFRESH_FAILED_MESSAGE = "Token refresh failed"


class TokenRefreshManager:
    """Issues valid access tokens and refreshes them, one refresh at a time per integration."""

    def __init__(
        self,
        vault: TokenVault,
        token_client: Optional[OAuthTokenClient] = None,
        refresh_margin: Optional[timedelta] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._vault = vault
        self._token_client = token_client or OAuthTokenClient()
        self._margin = refresh_margin or timedelta(minutes=settings.TOKEN_REFRESH_MARGIN_MINUTES)
        self._retry = retry_policy or RetryPolicy.from_settings()
        self._locks: dict[UUID, asyncio.Lock] = {}
        self._inflight: dict[UUID, asyncio.Task[bool]] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def needs_refresh(self, expires_at: Optional[datetime], now: Optional[datetime] = None) -> bool:
        if expires_at is None:
            return False
        return expires_at <= (now or utc_now()) + self._margin

    async def get_valid_access_token(self, integration_id: UUID) -> str:
        return (await self.get_valid_token(integration_id)).token

    async def get_valid_token(self, integration_id: UUID) -> AccessToken:
        """
        Decrypted access token that is not within the refresh margin of expiry.

        Raises:
            AuthError: integration missing, not active, or its token is
                expired and could not be refreshed
            CryptoError: stored ciphertext cannot be decrypted
        """
        integration = await self._load(integration_id)
        self._ensure_usable(integration, integration_id)

        if self.needs_refresh(integration.token_expires_at):
            lock = self._locks.setdefault(integration_id, asyncio.Lock())
            async with lock:
                integration = await self._load(integration_id)
                self._ensure_usable(integration, integration_id)
                if self.needs_refresh(integration.token_expires_at):
                    refreshed = await self.refresh(integration_id, only_if_expiring=True)
                    integration = await self._load(integration_id)
                    if not refreshed:
                        expires_at = integration.token_expires_at if integration else None
                        if integration is None or integration.status != "active" or (
                            expires_at is not None and expires_at <= utc_now()
                        ):
                            raise AuthError(
                                f"Access token for integration {integration_id} is expired and could not be refreshed"
                            )
                        logger.warning(
                            "Token refresh failed for integration %s; using existing token until %s",
                            integration_id, expires_at,
                        )
                    self._ensure_usable(integration, integration_id)

        if integration is None or not integration.access_token_encrypted:
            raise AuthError(f"Integration {integration_id} has no usable access token")
        return AccessToken(
            token=self._vault.decrypt(integration.access_token_encrypted),
            expires_at=integration.token_expires_at,
        )

    async def refresh(self, integration_id: UUID, only_if_expiring: bool = False) -> bool:
        """
        Refresh the integration's tokens. Returns True on success.

        Concurrent callers for the same integration share a single provider
        call.
        """
        task = self._inflight.get(integration_id)
        if task is None:
            task = asyncio.ensure_future(self._refresh(integration_id, only_if_expiring))
            self._inflight[integration_id] = task
            task.add_done_callback(lambda _t: self._inflight.pop(integration_id, None))
        return await asyncio.shield(task)

    async def refresh_expiring(self, within: timedelta = timedelta(hours=1)) -> dict[str, int]:
        """Refresh every active integration whose token expires within ``within``."""
        cutoff = utc_now() + within
        async with get_session() as session:
            result = await session.execute(
                select(Integration.id).where(
                    Integration.status == "active",
                    Integration.refresh_token_encrypted.is_not(None),
                    Integration.token_expires_at.is_not(None),
                    Integration.token_expires_at <= cutoff,
                )
            )
            integration_ids: list[UUID] = list(result.scalars().all())

        stats: dict[str, int] = {"checked": len(integration_ids), "refreshed": 0, "failed": 0}
        for integration_id in integration_ids:
            if await self.refresh(integration_id):
                stats["refreshed"] += 1
            else:
                stats["failed"] += 1

        logger.info("Expiring token sweep: %s", stats)
        return stats

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _load(self, integration_id: UUID) -> Optional[Integration]:
        async with get_session() as session:
            return await session.get(Integration, integration_id)

    @staticmethod
    def _ensure_usable(integration: Optional[Integration], integration_id: UUID) -> None:
        if integration is None:
            raise AuthError(f"Integration {integration_id} not found")
        if integration.status != "active":
            raise AuthError(
                f"{integration.provider} integration is {integration.status}"
                + (f": {integration.last_error}" if integration.last_error else "")
            )
        if not integration.access_token_encrypted:
            raise AuthError(f"{integration.provider} integration has no access token")

    async def _refresh(self, integration_id: UUID, only_if_expiring: bool) -> bool:
        async with get_session() as session:
            result = await session.execute(
                select(Integration).where(Integration.id == integration_id).with_for_update()
            )
            integration = result.scalar_one_or_none()
            if integration is None:
                logger.warning("Refresh requested for missing integration %s", integration_id)
                return False

            # Another process may have refreshed while we waited on the row lock
            if only_if_expiring and not self.needs_refresh(integration.token_expires_at):
                return True

            config = get_oauth_config(integration.provider)
            if config is None or not config.supports_refresh:
                logger.warning(
                    "Provider %s is not configured for token refresh", integration.provider
                )
                return False

            # Disconnected by an admin; only a reconnect brings it back
            if integration.status == "disconnected":
                logger.info(
                    "Skipping refresh for disconnected %s integration %s",
                    integration.provider, integration_id,
                )
                return False

            if not integration.refresh_token_encrypted:
                self._mark_failed(integration, "No refresh token available", revoked=True)
                await session.commit()
                return False

            try:
                refresh_token = self._vault.decrypt(integration.refresh_token_encrypted)
                tokens = await self._retry.run(
                    lambda: self._token_client.refresh(config, refresh_token),
                    f"{integration.provider} token refresh",
                )
                access_encrypted = self._vault.encrypt(tokens.access_token)
                refresh_encrypted = (
                    self._vault.encrypt(tokens.refresh_token) if tokens.refresh_token else None
                )
            except (TransientError, RateLimited) as exc:
                # Backpressure or an outage says nothing about the grant itself
                self._mark_failed(integration, exc.message, revoked=False)
                await session.commit()
                logger.warning(
                    "Token refresh for %s integration %s failed transiently: %s",
                    integration.provider, integration_id, exc.message,
                )
                return False
            except (ConnectorError, CryptoError) as exc:
                self._mark_failed(integration, str(exc), revoked=True)
                await session.commit()
                logger.error(
                    "Token refresh for %s integration %s rejected: %s",
                    integration.provider, integration_id, exc,
                )
                return False

            now = utc_now()
            integration.access_token_encrypted = access_encrypted
            # Providers that don't rotate refresh tokens omit it from the response
            if refresh_encrypted is not None:
                integration.refresh_token_encrypted = refresh_encrypted
            integration.token_expires_at = tokens.expires_at(now)
            if tokens.scopes:
                integration.scopes = tokens.scopes
            integration.status = "active"
            integration.status_message = None
            integration.last_error = None
            integration.last_error_at = None
            integration.last_successful_connection_at = now
            await session.commit()

        logger.info(
            "Refreshed %s token for integration %s",
            integration.provider, integration_id,
            extra=self._log_context(integration),
        )
        return True

    @staticmethod
    def _mark_failed(integration: Integration, message: str, revoked: bool) -> None:
        integration.record_error(message)
        if revoked:
            # A dead refresh token must not be retried silently; reconnect required
            integration.status = "error"
            integration.status_message = REFRESH_FAILED_MESSAGE

    @staticmethod
    def _log_context(integration: Integration) -> dict[str, Any]:
        return {
            "integration_id": str(integration.id),
            "organization_id": str(integration.organization_id),
            "provider": integration.provider,
        }
