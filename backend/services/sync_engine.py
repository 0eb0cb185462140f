"""
Sync orchestrator: pulls one data source from its provider into the record store.

Per run:
  1. Load the data source (must exist and be active)
  2. Take the per-data-source lock (fail-fast)
  3. Open a SyncRun row ('running')
  4. Build the provider connector and obtain a valid token
  5. Page through the provider in cursor order; for each page resolve
     associations, upsert, commit
  6. Finalize the SyncRun and the data source's last_sync_* columns

Status rules:
  success  - no errors
  partial  - errors, but at least one record landed
  failed   - errors and nothing landed
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from dataclasses import dataclass, field
from typing import Any, Callable, Optional
from uuid import UUID

import httpx
from sqlalchemy import or_, select
from sqlalchemy.exc import SQLAlchemyError

from config import utc_now
from connectors.base import BaseConnector, TokenProvider
from connectors.errors import AuthError, ConnectorError
from connectors.persistence import RecordStore
from connectors.registry import build_connector
from connectors.resolution import AssociationResolver
from connectors.retry import RetryPolicy
from models.data_source import DataSource, next_sync_time
from models.database import get_session
from models.integration import Integration
from models.sync_run import SyncRun
from services.sync_lock import SyncAlreadyRunningError, SyncLock
from services.token_vault import CryptoError

logger = logging.getLogger(__name__)

# Owners first so deals/activities can reference them
ENTITY_ORDER: tuple[str, ...] = ("owners", "deals", "activities")
SYNC_TYPES: tuple[str, ...] = ENTITY_ORDER + ("full",)

# Longest error string stored on a run / data source
MAX_ERROR_LENGTH = 2000

ConnectorFactory = Callable[..., BaseConnector]


class DataSourceNotFoundError(LookupError):
    """Data source does not exist or is inactive."""


@dataclass
class SyncResult:
    success: bool
    status: str
    records_fetched: int = 0
    records_processed: int = 0
    error: Optional[str] = None
    sync_run_id: Optional[UUID] = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "records_fetched": self.records_fetched,
            "records_processed": self.records_processed,
        }
        if self.error:
            result["error"] = self.error
        return result


@dataclass
class _RunProgress:
    records_fetched: int = 0
    records_processed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def add_error(self, page: int, stage: str, message: str) -> None:
        self.errors.append({"page": page, "stage": stage, "error": message[:MAX_ERROR_LENGTH]})

    @property
    def status(self) -> str:
        if not self.errors:
            return "success"
        return "partial" if self.records_processed > 0 else "failed"

    @property
    def error_message(self) -> Optional[str]:
        # The last error is the one that ended (or most recently degraded) the run
        return self.errors[-1]["error"] if self.errors else None


def _truncate(message: Optional[str]) -> Optional[str]:
    return message[:MAX_ERROR_LENGTH] if message else message


class SyncOrchestrator:
    """Runs sync pipelines. One instance may serve many runs concurrently."""

    def __init__(
        self,
        token_manager: TokenProvider,
        lock_manager: SyncLock,
        record_store: Optional[RecordStore] = None,
        connector_factory: ConnectorFactory = build_connector,
        retry_policy: Optional[RetryPolicy] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._tokens = token_manager
        self._locks = lock_manager
        self._records = record_store or RecordStore()
        self._connector_factory = connector_factory
        self._retry = retry_policy
        self._http_client = http_client

    # ------------------------------------------------------------------
    # Single data source
    # ------------------------------------------------------------------

    async def run_sync(self, data_source_id: UUID, trigger: str = "manual") -> SyncResult:
        """
        Sync one data source end to end.

        Raises:
            DataSourceNotFoundError: missing or inactive data source
            SyncAlreadyRunningError: a sync for this data source holds the lock
        """
        data_source = await self._load_data_source(data_source_id)

        async with self._locks.hold(f"data_source:{data_source_id}"):
            return await self._run_locked(data_source, trigger)

    async def _load_data_source(self, data_source_id: UUID) -> DataSource:
        async with get_session() as session:
            data_source = await session.get(DataSource, data_source_id)
        if data_source is None or not data_source.is_active:
            raise DataSourceNotFoundError(f"Data source {data_source_id} not found or inactive")
        return data_source

    async def _run_locked(self, data_source: DataSource, trigger: str) -> SyncResult:
        log_context: dict[str, Any] = {
            "data_source_id": str(data_source.id),
            "organization_id": str(data_source.organization_id),
            "source_type": data_source.source_type,
            "entity_type": data_source.entity_type,
            "trigger": trigger,
        }
        run_id = await self._start_run(data_source, trigger)
        log_context["sync_run_id"] = str(run_id)
        logger.info("Sync started for %s/%s", data_source.source_type, data_source.entity_type, extra=log_context)

        started = time.monotonic()
        progress = _RunProgress()
        try:
            await self._pull(data_source, progress)
        except Exception as exc:
            logger.error(
                "Sync for data source %s crashed: %s", data_source.id, exc,
                exc_info=True, extra=log_context,
            )
            progress.add_error(0, "internal", f"Unexpected error: {exc}")

        duration_ms = int((time.monotonic() - started) * 1000)
        status = progress.status
        await self._finish_run(run_id, data_source.id, progress, duration_ms)

        log_context.update(
            status=status,
            records_fetched=progress.records_fetched,
            records_processed=progress.records_processed,
            duration_ms=duration_ms,
        )
        log = logger.info if status == "success" else logger.warning
        log(
            "Sync %s for %s/%s: fetched=%d processed=%d",
            status, data_source.source_type, data_source.entity_type,
            progress.records_fetched, progress.records_processed,
            extra=log_context,
        )
        return SyncResult(
            success=status == "success",
            status=status,
            records_fetched=progress.records_fetched,
            records_processed=progress.records_processed,
            error=progress.error_message,
            sync_run_id=run_id,
        )

    async def _pull(self, data_source: DataSource, progress: _RunProgress) -> None:
        async with get_session() as session:
            integration = await session.get(Integration, data_source.integration_id)
        if integration is None:
            progress.add_error(0, "prepare", f"Integration {data_source.integration_id} not found")
            return

        try:
            connector = self._connector_factory(
                integration,
                self._tokens,
                http_client=self._http_client,
                retry_policy=self._retry,
            )
            await connector.prepare()
        except (AuthError, CryptoError) as exc:
            progress.add_error(0, "prepare", f"Authentication failed: {exc}")
            return
        except ConnectorError as exc:
            progress.add_error(0, "prepare", exc.message)
            return

        object_type = data_source.object_type
        targets = data_source.association_targets
        resolver = AssociationResolver(connector) if targets else None

        cursor: Optional[str] = None
        page_number = 0
        while True:
            page_number += 1
            try:
                page = await connector.list_objects(
                    object_type,
                    cursor=cursor,
                    properties=data_source.requested_properties,
                    filters=data_source.query_filters,
                )
                records = page.records
                if resolver is not None and records:
                    records = await resolver.attach(object_type, records, targets)
            except (AuthError, CryptoError) as exc:
                progress.add_error(page_number, "auth", f"Authentication failed: {exc}")
                break
            except ConnectorError as exc:
                logger.warning(
                    "Fetching page %d of %s failed: %s", page_number, object_type, exc.message,
                    extra={"data_source_id": str(data_source.id)},
                )
                progress.add_error(page_number, "fetch", exc.message)
                break

            progress.records_fetched += len(page.records)
            if records:
                try:
                    progress.records_processed += await self._records.upsert_batch(
                        data_source.organization_id,
                        object_type,
                        records,
                        data_source_id=data_source.id,
                    )
                except SQLAlchemyError as exc:
                    logger.error(
                        "Upserting page %d of %s failed: %s", page_number, object_type, exc,
                        extra={"data_source_id": str(data_source.id)},
                    )
                    progress.add_error(page_number, "upsert", str(exc))

            cursor = page.next_cursor
            if not cursor:
                break

    async def _start_run(self, data_source: DataSource, trigger: str) -> UUID:
        async with get_session() as session:
            run = SyncRun(
                data_source_id=data_source.id,
                organization_id=data_source.organization_id,
                started_at=utc_now(),
                status="running",
                triggered_by=trigger,
            )
            session.add(run)
            row = await session.get(DataSource, data_source.id)
            if row is not None:
                row.last_sync_status = "running"
            await session.commit()
            return run.id

    async def _finish_run(
        self,
        run_id: UUID,
        data_source_id: UUID,
        progress: _RunProgress,
        duration_ms: int,
    ) -> None:
        now = utc_now()
        status = progress.status
        error_message = _truncate(progress.error_message)

        async with get_session() as session:
            run = await session.get(SyncRun, run_id)
            if run is not None:
                run.status = status
                run.completed_at = now
                run.duration_ms = duration_ms
                run.records_fetched = progress.records_fetched
                run.records_processed = progress.records_processed
                run.error_message = error_message
                run.error_details = progress.errors or None

            data_source = await session.get(DataSource, data_source_id)
            if data_source is not None:
                data_source.last_sync_at = now
                data_source.last_sync_status = status
                data_source.last_sync_error = error_message
                data_source.last_sync_records_count = progress.records_processed
                data_source.next_scheduled_sync_at = next_sync_time(data_source.sync_frequency, now)
            await session.commit()

    # ------------------------------------------------------------------
    # Entity fan-out
    # ------------------------------------------------------------------

    async def run_entity_syncs(
        self,
        organization_id: UUID,
        sync_type: str = "full",
        trigger: str = "manual",
    ) -> dict[str, SyncResult]:
        """
        Sync an organization's data sources one entity type at a time.

        'full' runs owners, deals, activities, then every other active entity
        type alphabetically. Failures are reported per entity and never stop
        the remaining entity types.

        Raises:
            ValueError: unknown sync_type
        """
        if sync_type not in SYNC_TYPES:
            raise ValueError(
                f"Invalid sync_type '{sync_type}'. Expected one of: {', '.join(SYNC_TYPES)}"
            )

        sources = await self._active_sources_by_entity(organization_id)
        if sync_type == "full":
            extra_types = sorted(t for t in sources if t not in ENTITY_ORDER)
            entity_types = list(ENTITY_ORDER) + extra_types
        else:
            entity_types = [sync_type]

        results: dict[str, SyncResult] = {}
        for entity_type in entity_types:
            data_source = sources.get(entity_type)
            if data_source is None:
                results[entity_type] = SyncResult(
                    success=False,
                    status="failed",
                    error=f"No data source configured for {entity_type}",
                )
                continue
            try:
                results[entity_type] = await self.run_sync(data_source.id, trigger=trigger)
            except (SyncAlreadyRunningError, DataSourceNotFoundError) as exc:
                logger.info("Skipping %s sync for org %s: %s", entity_type, organization_id, exc)
                results[entity_type] = SyncResult(success=False, status="failed", error=str(exc))
        return results

    async def _active_sources_by_entity(self, organization_id: UUID) -> dict[str, DataSource]:
        async with get_session() as session:
            result = await session.execute(
                select(DataSource)
                .where(
                    DataSource.organization_id == organization_id,
                    DataSource.is_active.is_(True),
                )
                .order_by(DataSource.entity_type, DataSource.source_type)
            )
            rows = list(result.scalars().all())

        sources: dict[str, DataSource] = {}
        for data_source in rows:
            if data_source.entity_type in sources:
                logger.warning(
                    "Org %s has several active %s data sources; syncing %s only",
                    organization_id, data_source.entity_type,
                    sources[data_source.entity_type].source_type,
                )
                continue
            sources[data_source.entity_type] = data_source
        return sources


async def list_due_data_source_ids(now: Optional[datetime] = None) -> list[UUID]:
    """Active, scheduled data sources whose next sync time has passed (or was never set)."""
    now = now or utc_now()
    async with get_session() as session:
        result = await session.execute(
            select(DataSource.id)
            .where(
                DataSource.is_active.is_(True),
                DataSource.sync_frequency != "manual",
                or_(
                    DataSource.next_scheduled_sync_at.is_(None),
                    DataSource.next_scheduled_sync_at <= now,
                ),
            )
            .order_by(DataSource.next_scheduled_sync_at)
        )
        return list(result.scalars().all())
