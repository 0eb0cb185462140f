"""
Process-level collaborators handed to routes as FastAPI dependencies.

The token refresh coordinator and the sync lock are the only objects shared
across requests: single-flight refresh and fail-fast locking only work if
every request in the process sees the same instance. Everything else
(connectors, HTTP clients) is built per request.

Tests swap these with ``app.dependency_overrides``.
"""
from __future__ import annotations

from functools import lru_cache

from services.oauth_flow import OAuthFlowController
from services.sync_engine import SyncOrchestrator
from services.sync_lock import InProcessSyncLock, RedisSyncLock, get_sync_lock
from services.token_refresh import TokenRefreshManager
from services.token_vault import TokenVault


@lru_cache(maxsize=1)
def get_token_vault() -> TokenVault:
    return TokenVault.from_settings()


@lru_cache(maxsize=1)
def get_token_manager() -> TokenRefreshManager:
    return TokenRefreshManager(get_token_vault())


@lru_cache(maxsize=1)
def get_lock_manager() -> InProcessSyncLock | RedisSyncLock:
    return get_sync_lock()


def get_oauth_flow() -> OAuthFlowController:
    return OAuthFlowController(get_token_vault())


def get_sync_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator(get_token_manager(), get_lock_manager())
