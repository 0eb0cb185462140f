import asyncio
from datetime import timedelta
from typing import Optional
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import func, select

from config import utc_now
from connectors.errors import AuthError
from connectors.oauth import OAuthProviderConfig, OAuthTokenClient, TokenResponse
from models.database import get_session
from models.integration import Integration
from models.oauth_state import OAuthState
from services.oauth_flow import (
    ExpiredState,
    InvalidState,
    OAuthExchangeError,
    OAuthFlowController,
    ProviderMismatch,
    ProviderNotConfigured,
)

REDIRECT_URI = "http://backend.test/api/oauth/hubspot/callback"


class FakeTokenClient(OAuthTokenClient):
    def __init__(self, responses: Optional[list[TokenResponse]] = None, error: Optional[Exception] = None) -> None:
        super().__init__()
        self.responses = list(responses or [])
        self.error = error
        self.exchanges: list[tuple[str, str]] = []

    async def exchange_code(self, config: OAuthProviderConfig, code: str, redirect_uri: str) -> TokenResponse:
        self.exchanges.append((code, redirect_uri))
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)


def _identity_client() -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.startswith("/oauth/v1/access-tokens/")
        return httpx.Response(200, json={"hub_id": 4242, "hub_domain": "acme.hubspot.com"})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _controller(vault, token_client: OAuthTokenClient) -> OAuthFlowController:
    return OAuthFlowController(vault, token_client=token_client, http_client=_identity_client())


def _state_from(url: str) -> str:
    return parse_qs(urlparse(url).query)["state"][0]


async def _load_integration(org_id) -> Integration:
    async with get_session() as session:
        result = await session.execute(
            select(Integration).where(
                Integration.organization_id == org_id, Integration.provider == "hubspot"
            )
        )
        return result.scalar_one()


def test_begin_authorization_builds_provider_url(database, vault, org_id, user_id) -> None:
    controller = _controller(vault, FakeTokenClient())

    async def scenario():
        url = await controller.begin_authorization(org_id, user_id, "hubspot", REDIRECT_URI)
        async with get_session() as session:
            states = (await session.execute(select(OAuthState))).scalars().all()
        return url, states

    url, states = asyncio.run(scenario())

    parsed = urlparse(url)
    params = parse_qs(parsed.query)
    assert parsed.netloc == "app.hubspot.com"
    assert params["client_id"] == ["test-client-id"]
    assert params["redirect_uri"] == [REDIRECT_URI]
    assert params["response_type"] == ["code"]
    assert "crm.objects.deals.read" in params["optional_scope"][0]
    assert len(states) == 1
    assert states[0].state == params["state"][0]
    assert states[0].expires_at > utc_now()


def test_unconfigured_provider_is_rejected(database, vault, org_id, user_id) -> None:
    controller = _controller(vault, FakeTokenClient())

    with pytest.raises(ProviderNotConfigured):
        asyncio.run(controller.begin_authorization(org_id, user_id, "salesforce", REDIRECT_URI))


def test_complete_authorization_stores_encrypted_tokens(database, vault, org_id, user_id) -> None:
    client = FakeTokenClient([
        TokenResponse(access_token="access-a", refresh_token="refresh-a", expires_in=1800, scope="oauth crm.objects.deals.read"),
    ])
    controller = _controller(vault, client)

    async def scenario():
        url = await controller.begin_authorization(org_id, user_id, "hubspot", REDIRECT_URI)
        return await controller.complete_authorization("hubspot", "code-1", _state_from(url))

    integration = asyncio.run(scenario())

    assert client.exchanges == [("code-1", REDIRECT_URI)]
    assert integration.status == "active"
    assert integration.connected_by == user_id
    assert integration.scopes == ["oauth", "crm.objects.deals.read"]
    assert integration.external_account_id == "4242"
    assert integration.external_account_name == "acme.hubspot.com"
    assert integration.access_token_encrypted != "access-a"
    assert vault.decrypt(integration.access_token_encrypted) == "access-a"
    assert vault.decrypt(integration.refresh_token_encrypted) == "refresh-a"
    assert integration.token_expires_at > utc_now() + timedelta(minutes=25)


def test_state_is_single_use(database, vault, org_id, user_id) -> None:
    client = FakeTokenClient([
        TokenResponse(access_token="access-a", refresh_token="refresh-a", expires_in=1800),
        TokenResponse(access_token="access-b", refresh_token="refresh-b", expires_in=1800),
    ])
    controller = _controller(vault, client)

    async def scenario():
        url = await controller.begin_authorization(org_id, user_id, "hubspot", REDIRECT_URI)
        state = _state_from(url)
        await controller.complete_authorization("hubspot", "code-1", state)
        await controller.complete_authorization("hubspot", "code-2", state)

    with pytest.raises(InvalidState):
        asyncio.run(scenario())
    assert len(client.exchanges) == 1


def test_unknown_state_is_rejected(database, vault) -> None:
    controller = _controller(vault, FakeTokenClient())

    with pytest.raises(InvalidState):
        asyncio.run(controller.complete_authorization("hubspot", "code", "not-a-real-state"))


def test_expired_state_is_rejected_and_consumed(database, vault, org_id, user_id) -> None:
    client = FakeTokenClient()
    controller = _controller(vault, client)

    async def scenario():
        async with get_session() as session:
            session.add(OAuthState(
                state="stale",
                profile_id=user_id,
                organization_id=org_id,
                provider="hubspot",
                redirect_uri=REDIRECT_URI,
                expires_at=utc_now() - timedelta(minutes=1),
            ))
            await session.commit()
        with pytest.raises(ExpiredState):
            await controller.complete_authorization("hubspot", "code", "stale")
        async with get_session() as session:
            return (await session.execute(select(func.count()).select_from(OAuthState))).scalar_one()

    assert asyncio.run(scenario()) == 0
    assert client.exchanges == []


def test_state_for_another_provider_is_rejected(database, vault, org_id, user_id) -> None:
    client = FakeTokenClient()
    controller = _controller(vault, client)

    async def scenario():
        url = await controller.begin_authorization(org_id, user_id, "hubspot", REDIRECT_URI)
        await controller.complete_authorization("salesforce", "code", _state_from(url))

    with pytest.raises(ProviderMismatch):
        asyncio.run(scenario())
    assert client.exchanges == []


def test_rejected_exchange_raises_and_stores_nothing(database, vault, org_id, user_id) -> None:
    controller = _controller(vault, FakeTokenClient(error=AuthError("bad code", status_code=400)))

    async def scenario():
        url = await controller.begin_authorization(org_id, user_id, "hubspot", REDIRECT_URI)
        with pytest.raises(OAuthExchangeError, match="bad code"):
            await controller.complete_authorization("hubspot", "code", _state_from(url))
        async with get_session() as session:
            return (await session.execute(select(func.count()).select_from(Integration))).scalar_one()

    assert asyncio.run(scenario()) == 0


def test_reconnect_updates_in_place_and_keeps_refresh_token(database, vault, org_id, user_id) -> None:
    client = FakeTokenClient([
        TokenResponse(access_token="access-a", refresh_token="refresh-a", expires_in=1800),
        # Some providers omit the refresh token on re-consent
        TokenResponse(access_token="access-b", expires_in=1800),
    ])
    controller = _controller(vault, client)

    async def connect(code: str) -> Integration:
        url = await controller.begin_authorization(org_id, user_id, "hubspot", REDIRECT_URI)
        return await controller.complete_authorization("hubspot", code, _state_from(url))

    async def scenario():
        first = await connect("code-1")
        second = await connect("code-2")
        async with get_session() as session:
            count = (await session.execute(select(func.count()).select_from(Integration))).scalar_one()
        return first, second, count

    first, second, count = asyncio.run(scenario())

    assert count == 1
    assert second.id == first.id
    assert vault.decrypt(second.access_token_encrypted) == "access-b"
    assert vault.decrypt(second.refresh_token_encrypted) == "refresh-a"


def test_reconnect_reactivates_errored_integration(database, vault, make_integration, org_id, user_id) -> None:
    client = FakeTokenClient([TokenResponse(access_token="fresh", refresh_token="fresh-refresh", expires_in=1800)])
    controller = _controller(vault, client)

    async def scenario():
        existing = await make_integration(status="error", status_message="Token refresh failed", last_error="revoked")
        url = await controller.begin_authorization(
            org_id, user_id, "hubspot", REDIRECT_URI, existing_integration_id=existing.id
        )
        await controller.complete_authorization("hubspot", "code", _state_from(url))
        return existing, await _load_integration(org_id)

    existing, integration = asyncio.run(scenario())

    assert integration.id == existing.id
    assert integration.status == "active"
    assert integration.status_message is None
    assert integration.last_error is None


def test_purge_removes_only_expired_states(database, vault, org_id, user_id) -> None:
    controller = _controller(vault, FakeTokenClient())

    async def scenario():
        await controller.begin_authorization(org_id, user_id, "hubspot", REDIRECT_URI)
        async with get_session() as session:
            session.add(OAuthState(
                state="old",
                profile_id=user_id,
                organization_id=org_id,
                provider="hubspot",
                redirect_uri=REDIRECT_URI,
                expires_at=utc_now() - timedelta(hours=1),
            ))
            await session.commit()
        purged = await controller.purge_expired_states()
        async with get_session() as session:
            remaining = (await session.execute(select(OAuthState.state))).scalars().all()
        return purged, remaining

    purged, remaining = asyncio.run(scenario())

    assert purged == 1
    assert len(remaining) == 1
    assert remaining[0] != "old"
