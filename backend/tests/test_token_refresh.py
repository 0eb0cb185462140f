import asyncio
from datetime import timedelta
from typing import Optional

import httpx
import pytest

from config import utc_now
from connectors.errors import AuthError, PermanentError, RateLimited, TransientError
from connectors.oauth import OAuthProviderConfig, OAuthTokenClient, TokenResponse
from connectors.retry import RetryPolicy
from models.database import get_session
from models.integration import Integration
from services.token_refresh import REFRESH_FAILED_MESSAGE, TokenRefreshManager


class FakeTokenClient(OAuthTokenClient):
    """Refresh endpoint stand-in; slow enough for concurrent callers to overlap."""

    def __init__(self, error: Optional[Exception] = None, rotate: bool = True) -> None:
        super().__init__()
        self.error = error
        self.rotate = rotate
        self.calls: list[str] = []

    async def refresh(self, config: OAuthProviderConfig, refresh_token: str) -> TokenResponse:
        self.calls.append(refresh_token)
        await asyncio.sleep(0.01)
        if self.error is not None:
            raise self.error
        n = len(self.calls)
        return TokenResponse(
            access_token=f"new-access-{n}",
            refresh_token=f"new-refresh-{n}" if self.rotate else None,
            expires_in=1800,
        )


def _instant_retries(sleeps: Optional[list[float]] = None) -> RetryPolicy:
    async def fake_sleep(delay: float) -> None:
        if sleeps is not None:
            sleeps.append(delay)

    return RetryPolicy(max_attempts=3, base_delay=0, sleep=fake_sleep)


async def _reload(integration_id) -> Integration:
    async with get_session() as session:
        return await session.get(Integration, integration_id)


def test_fresh_token_is_returned_without_refresh(make_integration, vault) -> None:
    client = FakeTokenClient()
    manager = TokenRefreshManager(vault, token_client=client)

    async def scenario():
        integration = await make_integration(expires_in=timedelta(hours=1))
        return await manager.get_valid_access_token(integration.id)

    assert asyncio.run(scenario()) == "access-1"
    assert client.calls == []


def test_token_without_expiry_is_never_refreshed(make_integration, vault) -> None:
    client = FakeTokenClient()
    manager = TokenRefreshManager(vault, token_client=client)

    async def scenario():
        integration = await make_integration(expires_in=None)
        return await manager.get_valid_token(integration.id)

    token = asyncio.run(scenario())

    assert token.token == "access-1"
    assert token.expires_at is None
    assert client.calls == []


def test_concurrent_callers_share_one_refresh(make_integration, vault) -> None:
    client = FakeTokenClient()
    manager = TokenRefreshManager(vault, token_client=client)

    async def scenario():
        integration = await make_integration(expires_in=timedelta(minutes=1))
        tokens = await asyncio.gather(*(manager.get_valid_access_token(integration.id) for _ in range(5)))
        return tokens, await _reload(integration.id)

    tokens, integration = asyncio.run(scenario())

    assert client.calls == ["refresh-1"]
    assert tokens == ["new-access-1"] * 5
    assert vault.decrypt(integration.access_token_encrypted) == "new-access-1"
    assert vault.decrypt(integration.refresh_token_encrypted) == "new-refresh-1"
    assert integration.token_expires_at > utc_now() + timedelta(minutes=25)


def test_concurrent_forced_refreshes_share_one_provider_call(make_integration, vault) -> None:
    client = FakeTokenClient()
    manager = TokenRefreshManager(vault, token_client=client)

    async def scenario():
        integration = await make_integration()
        return await asyncio.gather(*(manager.refresh(integration.id) for _ in range(3)))

    assert asyncio.run(scenario()) == [True, True, True]
    assert len(client.calls) == 1


def test_refresh_keeps_refresh_token_when_provider_does_not_rotate(make_integration, vault) -> None:
    manager = TokenRefreshManager(vault, token_client=FakeTokenClient(rotate=False))

    async def scenario():
        integration = await make_integration()
        assert await manager.refresh(integration.id) is True
        return await _reload(integration.id)

    integration = asyncio.run(scenario())

    assert vault.decrypt(integration.access_token_encrypted) == "new-access-1"
    assert vault.decrypt(integration.refresh_token_encrypted) == "refresh-1"


def test_revoked_refresh_token_marks_integration_errored(make_integration, vault) -> None:
    manager = TokenRefreshManager(
        vault, token_client=FakeTokenClient(error=AuthError("invalid_grant", status_code=400))
    )

    async def scenario():
        integration = await make_integration(expires_in=timedelta(minutes=-5))
        with pytest.raises(AuthError):
            await manager.get_valid_token(integration.id)
        return await _reload(integration.id)

    integration = asyncio.run(scenario())

    assert integration.status == "error"
    assert integration.status_message == REFRESH_FAILED_MESSAGE
    assert "invalid_grant" in integration.last_error


def test_errored_integration_is_not_usable(make_integration, vault) -> None:
    client = FakeTokenClient()
    manager = TokenRefreshManager(vault, token_client=client)

    async def scenario():
        integration = await make_integration(status="error", last_error="revoked")
        await manager.get_valid_token(integration.id)

    with pytest.raises(AuthError, match="revoked"):
        asyncio.run(scenario())
    assert client.calls == []


def test_transient_failure_falls_back_to_unexpired_token(make_integration, vault) -> None:
    manager = TokenRefreshManager(
        vault,
        token_client=FakeTokenClient(error=TransientError("HubSpot network error")),
        retry_policy=_instant_retries(),
    )

    async def scenario():
        integration = await make_integration(expires_in=timedelta(minutes=2))
        token = await manager.get_valid_access_token(integration.id)
        return token, await _reload(integration.id)

    token, integration = asyncio.run(scenario())

    assert token == "access-1"
    assert integration.status == "active"
    assert integration.last_error == "HubSpot network error"


def test_transient_failure_with_expired_token_raises(make_integration, vault) -> None:
    manager = TokenRefreshManager(
        vault,
        token_client=FakeTokenClient(error=TransientError("HubSpot network error")),
        retry_policy=_instant_retries(),
    )

    async def scenario():
        integration = await make_integration(expires_in=timedelta(minutes=-1))
        with pytest.raises(AuthError, match="could not be refreshed"):
            await manager.get_valid_token(integration.id)
        return await _reload(integration.id)

    assert asyncio.run(scenario()).status == "active"


def test_missing_refresh_token_requires_reconnect(make_integration, vault) -> None:
    client = FakeTokenClient()
    manager = TokenRefreshManager(vault, token_client=client)

    async def scenario():
        integration = await make_integration(refresh_token=None)
        assert await manager.refresh(integration.id) is False
        return await _reload(integration.id)

    integration = asyncio.run(scenario())

    assert client.calls == []
    assert integration.status == "error"


def test_rate_limited_refresh_is_retried_and_leaves_integration_active(make_integration, vault) -> None:
    sleeps: list[float] = []
    client = FakeTokenClient(error=RateLimited("HubSpot API error (429)", retry_after=5))
    manager = TokenRefreshManager(vault, token_client=client, retry_policy=_instant_retries(sleeps))

    async def scenario():
        integration = await make_integration()
        assert await manager.refresh(integration.id) is False
        return await _reload(integration.id)

    integration = asyncio.run(scenario())

    assert len(client.calls) == 3
    assert sleeps == [5.0, 5.0]
    assert integration.status == "active"
    assert integration.status_message != REFRESH_FAILED_MESSAGE
    assert integration.last_error == "HubSpot API error (429)"


def test_refresh_leaves_disconnected_integration_alone(make_integration, vault) -> None:
    client = FakeTokenClient()
    manager = TokenRefreshManager(vault, token_client=client)

    async def scenario():
        integration = await make_integration(status="disconnected", refresh_token=None)
        assert await manager.refresh(integration.id) is False
        return await _reload(integration.id)

    integration = asyncio.run(scenario())

    assert client.calls == []
    assert integration.status == "disconnected"
    assert integration.last_error is None


def test_refresh_expiring_sweeps_only_tokens_near_expiry(make_integration, vault) -> None:
    client = FakeTokenClient()
    manager = TokenRefreshManager(vault, token_client=client)

    async def scenario():
        expiring = await make_integration(expires_in=timedelta(minutes=30))
        # One integration per (org, provider); vary the provider for the rest
        await make_integration(provider="hubspot-sandbox", expires_in=timedelta(days=1))
        await make_integration(provider="hubspot-test", refresh_token=None, expires_in=timedelta(minutes=10))
        stats = await manager.refresh_expiring(within=timedelta(hours=1))
        return stats, await _reload(expiring.id)

    stats, expiring = asyncio.run(scenario())

    assert stats == {"checked": 1, "refreshed": 1, "failed": 0}
    assert vault.decrypt(expiring.access_token_encrypted) == "new-access-1"


@pytest.mark.parametrize(
    ("status_code", "body", "expected"),
    [
        (400, {"status": "BAD_REFRESH_TOKEN", "message": "missing or invalid refresh token"}, AuthError),
        (400, {"message": "client_id is malformed"}, PermanentError),
        (429, {"message": "Too many requests"}, RateLimited),
        (503, {"message": "Service unavailable"}, TransientError),
    ],
)
def test_token_endpoint_errors_are_classified(status_code, body, expected) -> None:
    config = OAuthProviderConfig(
        provider="hubspot",
        client_id="client",
        client_secret="secret",
        authorization_url="https://app.hubspot.com/oauth/authorize",
        token_url="https://api.hubapi.com/oauth/v1/token",
    )
    transport = httpx.MockTransport(lambda request: httpx.Response(status_code, json=body))
    client = OAuthTokenClient(httpx.AsyncClient(transport=transport))

    with pytest.raises(expected) as excinfo:
        asyncio.run(client.refresh(config, "refresh-1"))

    assert excinfo.value.status_code == status_code
