"""
Sync tasks for Celery workers.

These tasks run data source syncs on a schedule or on demand, and keep
OAuth credentials and state rows tidy in the background.

Every task builds its own orchestrator and token manager: each task runs in
a fresh event loop, and asyncio locks, tasks and pooled connections cannot
cross loops.
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure backend directory is in Python path for Celery forked workers
_backend_dir = Path(__file__).resolve().parent.parent.parent
if str(_backend_dir) not in sys.path:
    sys.path.insert(0, str(_backend_dir))

import asyncio
import logging
from typing import Any
from uuid import UUID

from models.database import dispose_engine
from services.oauth_flow import OAuthFlowController
from services.sync_engine import DataSourceNotFoundError, SyncOrchestrator, list_due_data_source_ids
from services.sync_lock import InProcessSyncLock, RedisSyncLock, SyncAlreadyRunningError, get_sync_lock
from services.token_refresh import TokenRefreshManager
from services.token_vault import TokenVault
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro: Any) -> Any:
    """Run an async function in a sync context (for Celery tasks).

    Creates a fresh event loop and disposes any existing database connections
    to avoid 'Future attached to different loop' errors with asyncpg.
    """
    dispose_engine()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def _build_orchestrator(lock: InProcessSyncLock | RedisSyncLock) -> SyncOrchestrator:
    token_manager = TokenRefreshManager(TokenVault.from_settings())
    return SyncOrchestrator(token_manager, lock)


async def _close_lock(lock: InProcessSyncLock | RedisSyncLock) -> None:
    if isinstance(lock, RedisSyncLock):
        await lock.close()


async def _sync_data_source(data_source_id: str, trigger: str = "scheduled") -> dict[str, Any]:
    lock = get_sync_lock()
    orchestrator = _build_orchestrator(lock)
    try:
        result = await orchestrator.run_sync(UUID(data_source_id), trigger=trigger)
    except DataSourceNotFoundError as e:
        logger.warning("Skipping sync for data source %s: %s", data_source_id, e)
        return {"status": "not_found", "data_source_id": data_source_id, "error": str(e)}
    except SyncAlreadyRunningError as e:
        logger.info("Skipping sync for data source %s: %s", data_source_id, e)
        return {"status": "skipped", "data_source_id": data_source_id, "error": str(e)}
    finally:
        await _close_lock(lock)

    return {
        "status": result.status,
        "data_source_id": data_source_id,
        "sync_run_id": str(result.sync_run_id) if result.sync_run_id else None,
        **result.to_dict(),
    }


async def _sync_organization(organization_id: str, sync_type: str = "full") -> dict[str, Any]:
    lock = get_sync_lock()
    orchestrator = _build_orchestrator(lock)
    try:
        results = await orchestrator.run_entity_syncs(
            UUID(organization_id), sync_type=sync_type, trigger="scheduled"
        )
    finally:
        await _close_lock(lock)

    return {
        "organization_id": organization_id,
        "success": all(r.success for r in results.values()),
        "results": {entity: r.to_dict() for entity, r in results.items()},
    }


async def _refresh_expiring_tokens() -> dict[str, int]:
    manager = TokenRefreshManager(TokenVault.from_settings())
    return await manager.refresh_expiring()


async def _purge_expired_oauth_states() -> dict[str, int]:
    flow = OAuthFlowController(TokenVault.from_settings())
    return {"purged": await flow.purge_expired_states()}


@celery_app.task(bind=True, name="workers.tasks.sync.sync_data_source")
def sync_data_source(self: Any, data_source_id: str, trigger: str = "scheduled") -> dict[str, Any]:
    """
    Celery task to sync a single data source.

    Args:
        data_source_id: UUID of the data source
        trigger: 'scheduled' (beat) or 'manual'

    Returns:
        Dict with sync status and record counts
    """
    logger.info("Task %s: Syncing data source %s (%s)", self.request.id, data_source_id, trigger)
    return run_async(_sync_data_source(data_source_id, trigger))


@celery_app.task(bind=True, name="workers.tasks.sync.sync_organization")
def sync_organization(self: Any, organization_id: str, sync_type: str = "full") -> dict[str, Any]:
    """Celery task to run entity syncs for one organization, in entity order."""
    logger.info("Task %s: Syncing %s for org %s", self.request.id, sync_type, organization_id)
    return run_async(_sync_organization(organization_id, sync_type))


@celery_app.task(bind=True, name="workers.tasks.sync.sync_due_data_sources")
def sync_due_data_sources(self: Any) -> dict[str, Any]:
    """
    Beat task: queue a sync for every scheduled data source that is due.

    Each data source becomes its own task so one slow provider doesn't hold
    up the others; the per-data-source lock drops duplicates.
    """
    data_source_ids = run_async(list_due_data_source_ids())
    for data_source_id in data_source_ids:
        sync_data_source.delay(str(data_source_id), "scheduled")

    logger.info("Task %s: Dispatched %d due data source syncs", self.request.id, len(data_source_ids))
    return {"dispatched": len(data_source_ids), "data_source_ids": [str(i) for i in data_source_ids]}


@celery_app.task(bind=True, name="workers.tasks.sync.refresh_expiring_tokens")
def refresh_expiring_tokens(self: Any) -> dict[str, int]:
    """Beat task: refresh tokens expiring within the next hour."""
    stats = run_async(_refresh_expiring_tokens())
    logger.info("Task %s: Token refresh sweep %s", self.request.id, stats)
    return stats


@celery_app.task(bind=True, name="workers.tasks.sync.purge_expired_oauth_states")
def purge_expired_oauth_states(self: Any) -> dict[str, int]:
    """Beat task: delete OAuth state rows past their TTL."""
    return run_async(_purge_expired_oauth_states())
