"""
OAuth 2.0 authorization-code wire protocol.

Provider endpoints and scopes come from the connector's ConnectorMeta;
client credentials come from settings. The token client speaks the
form-encoded token endpoint for both the code exchange and refresh grants.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from config import get_oauth_credentials, settings, utc_now
from connectors.errors import (
    AuthError,
    ConnectorError,
    PermanentError,
    classify_response,
    classify_transport_error,
    extract_error_detail,
)
from connectors.registry import get_connector_meta

logger = logging.getLogger(__name__)

# Token endpoint "error" codes meaning the grant itself is dead
INVALID_GRANT_ERRORS = frozenset({"invalid_grant", "BAD_REFRESH_TOKEN", "BAD_AUTH_CODE", "unauthorized_client"})


@dataclass(frozen=True)
class OAuthProviderConfig:
    provider: str
    client_id: str
    client_secret: str
    authorization_url: str
    token_url: str
    required_scopes: list[str] = field(default_factory=list)
    optional_scopes: list[str] = field(default_factory=list)
    supports_refresh: bool = True


@dataclass(frozen=True)
class TokenResponse:
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    token_type: str = "bearer"

    def expires_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        if self.expires_in is None:
            return None
        return (now or utc_now()) + timedelta(seconds=int(self.expires_in))

    @property
    def scopes(self) -> list[str]:
        return self.scope.split() if self.scope else []


def get_oauth_config(provider: str) -> Optional[OAuthProviderConfig]:
    """OAuth config for a provider; None when unsupported or missing client credentials."""
    meta = get_connector_meta(provider)
    if meta is None or meta.oauth is None:
        return None

    client_id, client_secret = get_oauth_credentials(provider)
    if not client_id or not client_secret:
        return None

    return OAuthProviderConfig(
        provider=provider,
        client_id=client_id,
        client_secret=client_secret,
        authorization_url=meta.oauth.authorization_url,
        token_url=meta.oauth.token_url,
        required_scopes=list(meta.oauth.required_scopes),
        optional_scopes=list(meta.oauth.optional_scopes),
        supports_refresh=meta.oauth.supports_refresh,
    )


def build_authorization_url(config: OAuthProviderConfig, state: str, redirect_uri: str) -> str:
    params: dict[str, str] = {
        "client_id": config.client_id,
        "redirect_uri": redirect_uri,
        "scope": " ".join(config.required_scopes),
        "state": state,
        "response_type": "code",
    }
    if config.optional_scopes:
        params["optional_scope"] = " ".join(config.optional_scopes)
    return f"{config.authorization_url}?{urlencode(params)}"


def _is_grant_rejection(response: httpx.Response) -> bool:
    if response.status_code in (401, 403):
        return True
    if response.status_code != 400:
        return False
    try:
        body: Any = response.json()
    except ValueError:
        return False
    if not isinstance(body, dict):
        return False
    return body.get("error") in INVALID_GRANT_ERRORS or body.get("status") in INVALID_GRANT_ERRORS


class OAuthTokenClient:
    """Talks to provider token endpoints."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None) -> None:
        self._http_client = http_client

    async def _post_form(self, url: str, data: dict[str, str]) -> httpx.Response:
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        timeout: float = settings.HTTP_TIMEOUT_SECONDS
        if self._http_client is not None:
            return await self._http_client.post(url, data=data, headers=headers, timeout=timeout)
        async with httpx.AsyncClient() as client:
            return await client.post(url, data=data, headers=headers, timeout=timeout)

    async def _token_request(self, config: OAuthProviderConfig, data: dict[str, str]) -> TokenResponse:
        provider_name = config.provider
        try:
            response = await self._post_form(config.token_url, data)
        except httpx.TransportError as exc:
            raise classify_transport_error(exc, provider_name) from exc

        if response.status_code >= 400:
            if _is_grant_rejection(response):
                detail = extract_error_detail(response)
                raise AuthError(
                    f"{provider_name} rejected the grant ({response.status_code}): {detail}",
                    status_code=response.status_code,
                )
            error: Optional[ConnectorError] = classify_response(response, provider_name)
            raise error or PermanentError(
                f"{provider_name} token endpoint returned {response.status_code}",
                status_code=response.status_code,
            )

        body: dict[str, Any] = response.json()
        access_token = body.get("access_token")
        if not access_token:
            raise PermanentError(f"{provider_name} token response did not include an access_token")

        return TokenResponse(
            access_token=access_token,
            refresh_token=body.get("refresh_token"),
            expires_in=body.get("expires_in"),
            scope=body.get("scope"),
            token_type=body.get("token_type") or "bearer",
        )

    async def exchange_code(
        self, config: OAuthProviderConfig, code: str, redirect_uri: str
    ) -> TokenResponse:
        return await self._token_request(
            config,
            {
                "grant_type": "authorization_code",
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )

    async def refresh(self, config: OAuthProviderConfig, refresh_token: str) -> TokenResponse:
        return await self._token_request(
            config,
            {
                "grant_type": "refresh_token",
                "client_id": config.client_id,
                "client_secret": config.client_secret,
                "refresh_token": refresh_token,
            },
        )
