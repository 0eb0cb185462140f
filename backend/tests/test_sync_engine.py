import asyncio
import json
import uuid
from datetime import timedelta
from typing import Callable, Optional

import httpx
import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from config import utc_now
from connectors.persistence import RecordStore
from connectors.retry import RetryPolicy
from models.data_source import DataSource
from models.database import get_session
from models.sync_run import SyncRun
from services.sync_engine import DataSourceNotFoundError, SyncOrchestrator, list_due_data_source_ids
from services.sync_lock import InProcessSyncLock, SyncAlreadyRunningError
from services.token_refresh import TokenRefreshManager

Handler = Callable[[httpx.Request], httpx.Response]


def _deal(n: int) -> dict:
    return {"id": str(n), "properties": {"dealname": f"Deal {n}"}}


def _two_page_handler(request: httpx.Request) -> httpx.Response:
    if request.url.params.get("after") == "page-2":
        return httpx.Response(200, json={"results": [_deal(n) for n in range(51, 61)]})
    return httpx.Response(200, json={
        "results": [_deal(n) for n in range(1, 51)],
        "paging": {"next": {"after": "page-2"}},
    })


def _orchestrator(
    vault,
    handler: Handler,
    lock: Optional[InProcessSyncLock] = None,
    record_store: Optional[RecordStore] = None,
    **kwargs,
) -> SyncOrchestrator:
    async def no_sleep(delay: float) -> None:
        return None

    return SyncOrchestrator(
        TokenRefreshManager(vault),
        lock or InProcessSyncLock(),
        record_store=record_store,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, sleep=no_sleep),
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


async def _runs_for(data_source_id) -> list[SyncRun]:
    async with get_session() as session:
        result = await session.execute(select(SyncRun).where(SyncRun.data_source_id == data_source_id))
        return list(result.scalars().all())


async def _reload(data_source_id) -> DataSource:
    async with get_session() as session:
        return await session.get(DataSource, data_source_id)


def test_successful_sync_lands_every_page(vault, make_integration, make_data_source, org_id) -> None:
    orchestrator = _orchestrator(vault, _two_page_handler)

    async def scenario():
        data_source = await make_data_source(await make_integration())
        result = await orchestrator.run_sync(data_source.id)
        records = await RecordStore().list_records(org_id, "deals")
        return result, records, await _runs_for(data_source.id), await _reload(data_source.id)

    result, records, runs, data_source = asyncio.run(scenario())

    assert result.success is True
    assert result.status == "success"
    assert (result.records_fetched, result.records_processed) == (60, 60)
    assert len(records) == 60
    assert records[0].data_source_id == data_source.id
    assert len(runs) == 1
    assert runs[0].id == result.sync_run_id
    assert runs[0].status == "success"
    assert runs[0].completed_at is not None
    assert runs[0].error_details is None
    assert data_source.last_sync_status == "success"
    assert data_source.last_sync_records_count == 60
    assert data_source.last_sync_error is None


def test_query_filters_use_the_search_api(vault, make_integration, make_data_source, org_id) -> None:
    filters = [{"propertyName": "dealstage", "operator": "EQ", "value": "closedwon"}]
    requests: list[tuple[str, str, dict]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        requests.append((request.method, request.url.path, body))
        if body.get("after") == "page-2":
            return httpx.Response(200, json={"results": [_deal(n) for n in range(51, 61)]})
        return httpx.Response(200, json={
            "results": [_deal(n) for n in range(1, 51)],
            "paging": {"next": {"after": "page-2"}},
        })

    orchestrator = _orchestrator(vault, handler)

    async def scenario():
        data_source = await make_data_source(
            await make_integration(),
            query_config={"object_type": "deals", "filters": filters},
        )
        result = await orchestrator.run_sync(data_source.id)
        return result, await RecordStore().list_records(org_id, "deals")

    result, records = asyncio.run(scenario())

    assert result.status == "success"
    assert len(records) == 60
    assert [(method, path) for method, path, _ in requests] == [
        ("POST", "/crm/v3/objects/deals/search"),
        ("POST", "/crm/v3/objects/deals/search"),
    ]
    assert requests[0][2]["filterGroups"] == [{"filters": filters}]
    assert "after" not in requests[0][2]
    assert requests[1][2]["after"] == "page-2"


def test_failure_mid_pagination_keeps_earlier_pages(vault, make_integration, make_data_source, org_id) -> None:
    calls = {"page_2": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("after") == "page-2":
            calls["page_2"] += 1
            raise httpx.ReadTimeout("timed out", request=request)
        return _two_page_handler(request)

    orchestrator = _orchestrator(vault, handler)

    async def scenario():
        data_source = await make_data_source(await make_integration())
        result = await orchestrator.run_sync(data_source.id)
        records = await RecordStore().list_records(org_id, "deals")
        return result, records, await _runs_for(data_source.id), await _reload(data_source.id)

    result, records, runs, data_source = asyncio.run(scenario())

    assert calls["page_2"] == 3
    assert result.success is False
    assert result.status == "partial"
    assert (result.records_fetched, result.records_processed) == (50, 50)
    assert "ReadTimeout" in result.error
    assert len(records) == 50
    assert runs[0].status == "partial"
    assert runs[0].error_details == [{"page": 2, "stage": "fetch", "error": result.error}]
    assert data_source.last_sync_status == "partial"
    assert data_source.last_sync_records_count == 50


def test_failure_on_first_page_is_failed(vault, make_integration, make_data_source) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"message": "Unknown object type"})

    orchestrator = _orchestrator(vault, handler)

    async def scenario():
        data_source = await make_data_source(await make_integration())
        return await orchestrator.run_sync(data_source.id)

    result = asyncio.run(scenario())

    assert result.status == "failed"
    assert result.records_processed == 0
    assert "Unknown object type" in result.error


def test_associations_are_attached_before_upsert(vault, make_integration, make_data_source, org_id) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/crm/v4/associations/tickets/companies/labels":
            return httpx.Response(200, json={"results": [{"typeId": 26, "category": "HUBSPOT_DEFINED"}]})
        if path == "/crm/v4/associations/tickets/companies/batch/read":
            return httpx.Response(200, json={"results": [
                {"from": {"id": "1"}, "to": [{"toObjectId": 900}]},
            ]})
        return httpx.Response(200, json={"results": [
            {"id": "1", "properties": {"subject": "Broken"}},
            {"id": "2", "properties": {"subject": "Slow"}},
        ]})

    orchestrator = _orchestrator(vault, handler)

    async def scenario():
        data_source = await make_data_source(
            await make_integration(),
            entity_type="tickets",
            query_config={"associations": ["companies"]},
        )
        await orchestrator.run_sync(data_source.id)
        return await RecordStore().list_records(org_id, "tickets")

    records = asyncio.run(scenario())

    assert records[0].properties["associated_companies_ids"] == ["900"]
    assert records[0].properties["associated_companies_id"] == "900"
    assert records[1].properties["associated_companies_ids"] == []


def test_sync_is_rejected_while_another_holds_the_lock(vault, make_integration, make_data_source) -> None:
    lock = InProcessSyncLock()
    orchestrator = _orchestrator(vault, _two_page_handler, lock=lock)

    async def scenario():
        data_source = await make_data_source(await make_integration())
        async with lock.hold(f"data_source:{data_source.id}"):
            with pytest.raises(SyncAlreadyRunningError):
                await orchestrator.run_sync(data_source.id)
        return await _runs_for(data_source.id)

    assert asyncio.run(scenario()) == []


def test_concurrent_syncs_of_one_data_source_run_once(vault, make_integration, make_data_source) -> None:
    async def slow_handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(0.05)
        return _two_page_handler(request)

    orchestrator = _orchestrator(vault, slow_handler)

    async def scenario():
        data_source = await make_data_source(await make_integration())
        outcomes = await asyncio.gather(
            orchestrator.run_sync(data_source.id),
            orchestrator.run_sync(data_source.id),
            return_exceptions=True,
        )
        return outcomes, await _runs_for(data_source.id)

    outcomes, runs = asyncio.run(scenario())

    assert sum(isinstance(o, SyncAlreadyRunningError) for o in outcomes) == 1
    assert len(runs) == 1


def test_missing_or_inactive_data_source(vault, make_integration, make_data_source) -> None:
    orchestrator = _orchestrator(vault, _two_page_handler)

    async def scenario():
        inactive = await make_data_source(await make_integration(), is_active=False)
        with pytest.raises(DataSourceNotFoundError):
            await orchestrator.run_sync(inactive.id)
        with pytest.raises(DataSourceNotFoundError):
            await orchestrator.run_sync(uuid.uuid4())

    asyncio.run(scenario())


def test_unusable_credentials_fail_before_any_request(vault, make_integration, make_data_source) -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"results": []})

    orchestrator = _orchestrator(vault, handler)

    async def scenario():
        integration = await make_integration(status="error", last_error="Token refresh failed")
        data_source = await make_data_source(integration)
        return await orchestrator.run_sync(data_source.id), await _runs_for(data_source.id)

    result, runs = asyncio.run(scenario())

    assert result.status == "failed"
    assert result.error.startswith("Authentication failed")
    assert requests == []
    assert runs[0].error_details[0]["stage"] == "prepare"


class FlakyRecordStore(RecordStore):
    """Fails the first upsert, then behaves normally."""

    def __init__(self) -> None:
        self.calls = 0

    async def upsert_batch(self, organization_id, object_type, records, data_source_id=None) -> int:
        self.calls += 1
        if self.calls == 1:
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return await super().upsert_batch(organization_id, object_type, records, data_source_id=data_source_id)


def test_upsert_failure_does_not_stop_paging(vault, make_integration, make_data_source, org_id) -> None:
    store = FlakyRecordStore()
    orchestrator = _orchestrator(vault, _two_page_handler, record_store=store)

    async def scenario():
        data_source = await make_data_source(await make_integration())
        result = await orchestrator.run_sync(data_source.id)
        return result, await RecordStore().list_records(org_id, "deals")

    result, records = asyncio.run(scenario())

    assert store.calls == 2
    assert result.status == "partial"
    assert (result.records_fetched, result.records_processed) == (60, 10)
    assert "database is locked" in result.error
    assert len(records) == 10


def test_unexpected_error_finalizes_run_and_releases_lock(vault, make_integration, make_data_source) -> None:
    def exploding_factory(*args, **kwargs):
        raise RuntimeError("boom")

    lock = InProcessSyncLock()
    orchestrator = _orchestrator(vault, _two_page_handler, lock=lock, connector_factory=exploding_factory)

    async def scenario():
        data_source = await make_data_source(await make_integration())
        result = await orchestrator.run_sync(data_source.id)
        return data_source, result, await _runs_for(data_source.id)

    data_source, result, runs = asyncio.run(scenario())

    assert result.status == "failed"
    assert result.error == "Unexpected error: boom"
    assert runs[0].status == "failed"
    assert not lock.is_held(f"data_source:{data_source.id}")


def test_scheduled_source_gets_next_sync_time(vault, make_integration, make_data_source) -> None:
    orchestrator = _orchestrator(vault, _two_page_handler)

    async def scenario():
        data_source = await make_data_source(await make_integration(), sync_frequency="hourly")
        await orchestrator.run_sync(data_source.id, trigger="scheduled")
        return await _reload(data_source.id), await _runs_for(data_source.id)

    data_source, runs = asyncio.run(scenario())

    assert data_source.next_scheduled_sync_at == data_source.last_sync_at + timedelta(hours=1)
    assert runs[0].triggered_by == "scheduled"


def test_full_sync_runs_entity_types_in_order(vault, make_integration, make_data_source, org_id) -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(200, json={"results": []})

    orchestrator = _orchestrator(vault, handler)

    async def scenario():
        integration = await make_integration()
        await make_data_source(integration, entity_type="tickets")
        await make_data_source(integration, entity_type="deals")
        await make_data_source(integration, entity_type="activities", query_config={"object_type": "meetings"})
        return await orchestrator.run_entity_syncs(org_id)

    results = asyncio.run(scenario())

    assert list(results) == ["owners", "deals", "activities", "tickets"]
    assert results["owners"].success is False
    assert results["owners"].error == "No data source configured for owners"
    assert all(results[t].success for t in ("deals", "activities", "tickets"))
    assert paths == ["/crm/v3/objects/deals", "/crm/v3/objects/meetings", "/crm/v3/objects/tickets"]


def test_single_entity_sync(vault, make_integration, make_data_source, org_id) -> None:
    orchestrator = _orchestrator(vault, _two_page_handler)

    async def scenario():
        await make_data_source(await make_integration(), entity_type="deals")
        return await orchestrator.run_entity_syncs(org_id, sync_type="deals")

    results = asyncio.run(scenario())

    assert list(results) == ["deals"]
    assert results["deals"].to_dict() == {"success": True, "records_fetched": 60, "records_processed": 60}


def test_unknown_sync_type_is_rejected(vault, database, org_id) -> None:
    orchestrator = _orchestrator(vault, _two_page_handler)

    with pytest.raises(ValueError, match="Invalid sync_type"):
        asyncio.run(orchestrator.run_entity_syncs(org_id, sync_type="everything"))


def test_due_data_sources(make_integration, make_data_source) -> None:
    now = utc_now()

    async def scenario():
        integration = await make_integration()
        never_synced = await make_data_source(integration, entity_type="deals", sync_frequency="hourly")
        overdue = await make_data_source(
            integration, entity_type="owners", sync_frequency="daily",
            next_scheduled_sync_at=now - timedelta(minutes=1),
        )
        await make_data_source(
            integration, entity_type="tickets", sync_frequency="daily",
            next_scheduled_sync_at=now + timedelta(hours=3),
        )
        await make_data_source(integration, entity_type="contacts", sync_frequency="manual")
        await make_data_source(integration, entity_type="companies", sync_frequency="hourly", is_active=False)
        due = await list_due_data_source_ids(now)
        return due, {never_synced.id, overdue.id}

    due, expected = asyncio.run(scenario())

    assert set(due) == expected
