"""Pytest configuration.

Ensures backend root is on sys.path for imports like api.*, services.*, etc.,
and points the app at a throwaway SQLite database before ``config`` is
imported anywhere.
"""
import asyncio
import os
import sys
import tempfile
import uuid
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import pytest

_backend: Path = Path(__file__).resolve().parent
if str(_backend) not in sys.path:
    sys.path.insert(0, str(_backend))

_db_dir = tempfile.mkdtemp(prefix="integration-sync-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_db_dir}/test.db"
os.environ["TOKEN_ENCRYPTION_KEY"] = "0123456789abcdef" * 4
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["HUBSPOT_CLIENT_ID"] = "test-client-id"
os.environ["HUBSPOT_CLIENT_SECRET"] = "test-client-secret"
os.environ["SYNC_LOCK_BACKEND"] = "memory"
os.environ["FRONTEND_URL"] = "http://frontend.test"
os.environ["BACKEND_PUBLIC_URL"] = "http://backend.test"


@pytest.fixture
def database():
    """Fresh schema for each test that touches the database."""
    from models.database import drop_db, init_db

    async def _reset() -> None:
        await drop_db()
        await init_db()

    asyncio.run(_reset())
    yield


ORG_ID = uuid.UUID("11111111-1111-1111-1111-111111111111")
USER_ID = uuid.UUID("22222222-2222-2222-2222-222222222222")


@pytest.fixture
def org_id() -> uuid.UUID:
    return ORG_ID


@pytest.fixture
def user_id() -> uuid.UUID:
    return USER_ID


@pytest.fixture
def vault():
    from services.token_vault import TokenVault

    return TokenVault(bytes.fromhex(os.environ["TOKEN_ENCRYPTION_KEY"]))


@pytest.fixture
def make_integration(database, vault):
    """Coroutine factory: persist an active HubSpot integration with encrypted tokens."""
    from config import utc_now
    from models.database import get_session
    from models.integration import Integration

    async def _make(
        access_token: str = "access-1",
        refresh_token: Optional[str] = "refresh-1",
        expires_in: Optional[timedelta] = timedelta(hours=1),
        **overrides: Any,
    ) -> Integration:
        values: dict[str, Any] = {
            "organization_id": ORG_ID,
            "provider": "hubspot",
            "status": "active",
            "access_token_encrypted": vault.encrypt(access_token),
            "refresh_token_encrypted": vault.encrypt(refresh_token) if refresh_token else None,
            "token_expires_at": utc_now() + expires_in if expires_in is not None else None,
            "connected_by": USER_ID,
        }
        values.update(overrides)
        async with get_session() as session:
            integration = Integration(**values)
            session.add(integration)
            await session.commit()
            return integration

    return _make


@pytest.fixture
def make_data_source(database):
    """Coroutine factory: persist a data source bound to an integration."""
    from models.data_source import DataSource
    from models.database import get_session

    async def _make(integration: Any, entity_type: str = "deals", **overrides: Any) -> DataSource:
        values: dict[str, Any] = {
            "organization_id": integration.organization_id,
            "integration_id": integration.id,
            "name": f"HubSpot {entity_type}",
            "source_type": integration.provider,
            "entity_type": entity_type,
            "query_config": {},
            "sync_frequency": "manual",
            "is_active": True,
        }
        values.update(overrides)
        async with get_session() as session:
            data_source = DataSource(**values)
            session.add(data_source)
            await session.commit()
            return data_source

    return _make
