"""
Base connector class that all provider connectors inherit from.

A connector instance is bound to exactly one Integration. It never stores
credentials itself: access tokens come from an injected token provider
(the TokenRefreshManager in production), which hands out decrypted,
non-expired tokens and performs refreshes.

All HTTP goes through :meth:`BaseConnector._make_request`, which applies the
shared error taxonomy and retry policy, and recovers from a rejected token
by forcing one refresh and retrying once.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Optional, Protocol
from uuid import UUID

import httpx

from config import settings, utc_now
from connectors.errors import AuthError, classify_response, classify_transport_error
from connectors.models import (
    AssociationTypeDefinition,
    ConnectionTestResult,
    ObjectPage,
    PropertyDefinition,
)
from connectors.registry import ConnectorMeta  # noqa: F401 - re-export for convenience
from connectors.retry import RetryPolicy


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessToken:
    """A decrypted access token and when it stops being valid."""

    token: str
    expires_at: Optional[datetime] = None

    def expires_within(self, margin: timedelta, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utc_now()) + margin


class TokenProvider(Protocol):
    """What a connector needs from the credential layer."""

    async def get_valid_token(self, integration_id: UUID) -> AccessToken:
        ...

    async def refresh(self, integration_id: UUID) -> bool:
        ...


class BaseConnector(ABC):
    """Abstract base class for provider connectors.

    Subclasses set a class-level ``meta`` attribute (:class:`ConnectorMeta`)
    and ``api_base``, and implement the listing, schema and association
    operations below.
    """

    # Override in subclasses - must match our provider names
    source_system: str = "unknown"
    api_base: str = ""

    meta: ConnectorMeta

    def __init__(
        self,
        integration_id: UUID,
        token_provider: TokenProvider,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        """
        Args:
            integration_id: Integration whose credentials this connector uses
            token_provider: Source of valid access tokens (refreshes on demand)
            http_client: Optional shared client; one is created per request otherwise
            retry_policy: Backoff policy; defaults to the configured policy
        """
        self.integration_id = integration_id
        self._tokens = token_provider
        self._http_client = http_client
        self._retry = retry_policy or RetryPolicy.from_settings()
        self._refresh_margin = timedelta(minutes=settings.TOKEN_REFRESH_MARGIN_MINUTES)
        self._token: Optional[AccessToken] = None

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def prepare(self) -> None:
        """Obtain a valid token up front. Raises AuthError if none can be had."""
        self._token = await self._tokens.get_valid_token(self.integration_id)

    async def _access_token(self) -> str:
        if self._token is None or self._token.expires_within(self._refresh_margin):
            self._token = await self._tokens.get_valid_token(self.integration_id)
        return self._token.token

    def _build_headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
        }

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        headers: dict[str, str],
        params: Optional[dict[str, Any]],
        json_data: Optional[dict[str, Any]],
    ) -> httpx.Response:
        timeout: float = settings.HTTP_TIMEOUT_SECONDS
        if self._http_client is not None:
            return await self._http_client.request(
                method, url, headers=headers, params=params, json=json_data, timeout=timeout,
            )
        async with httpx.AsyncClient() as client:
            return await client.request(
                method, url, headers=headers, params=params, json=json_data, timeout=timeout,
            )

    async def _request_once(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        headers = self._build_headers(await self._access_token())
        url = f"{self.api_base}{endpoint}"
        try:
            response = await self._send(method, url, headers, params, json_data)
        except httpx.TransportError as exc:
            raise classify_transport_error(exc, self.meta.name) from exc

        error = classify_response(response, self.meta.name)
        if error is not None:
            raise error
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    async def _make_request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict[str, Any]] = None,
        json_data: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Authenticated request with retry/backoff and one refresh-then-retry on AuthError."""
        description = f"{self.meta.name} {method} {endpoint}"

        async def attempt() -> dict[str, Any]:
            return await self._request_once(method, endpoint, params=params, json_data=json_data)

        try:
            return await self._retry.run(attempt, description)
        except AuthError as exc:
            logger.info(
                "[%s] %s rejected credentials (%s), refreshing token and retrying once",
                self.meta.name, endpoint, exc.status_code,
            )
            if not await self._tokens.refresh(self.integration_id):
                raise
            self._token = None
            return await self._retry.run(attempt, description)

    # ------------------------------------------------------------------
    # Provider operations
    # ------------------------------------------------------------------

    @abstractmethod
    async def list_objects(
        self,
        object_type: str,
        cursor: Optional[str] = None,
        properties: Optional[list[str]] = None,
        filters: Optional[list[dict[str, Any]]] = None,
    ) -> ObjectPage:
        """Fetch one page of objects; ``next_cursor`` is None at the end.

        ``filters`` are provider filter clauses ({propertyName, operator, value}),
        ANDed together.
        """

    @abstractmethod
    async def get_object_properties(self, object_type: str) -> list[PropertyDefinition]:
        """Schema introspection, sorted by group then label."""

    @abstractmethod
    async def get_association_schema(
        self, from_type: str, to_type: str
    ) -> list[AssociationTypeDefinition]:
        """Declared association types; an empty list means no relationship exists."""

    @abstractmethod
    async def fetch_associations(self, from_type: str, from_id: str, to_type: str) -> list[str]:
        """Associated ids for a single record."""

    @abstractmethod
    async def batch_fetch_associations(
        self, from_type: str, from_ids: list[str], to_type: str
    ) -> dict[str, list[str]]:
        """Associated ids for many records; contains a key for every input id."""

    @abstractmethod
    async def test_connection(self) -> ConnectionTestResult:
        """Lightweight authenticated call to prove the credentials work."""

    @abstractmethod
    async def get_account_info(self) -> dict[str, Any]:
        """Provider account details (portal/tenant id, time zone, ...)."""

    @classmethod
    async def fetch_account_identity(
        cls,
        access_token: str,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> tuple[Optional[str], Optional[str]]:
        """(external account id, display name) for a freshly issued token, if the provider exposes it."""
        return None, None
