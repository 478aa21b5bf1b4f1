"""
End-to-end tests of the read side: bus message -> router -> materializer ->
SQLite read model -> query service / API, including a store outage and
reconciliation after drift.
"""
import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from analytics.adapters.cache import RedisViewCache
from analytics.adapters.dead_letters import RedisDeadLetterSink
from analytics.domain.model import ConsistencyAction
from analytics.entrypoints import analytics_api
from analytics.entrypoints.redis_eventconsumer import build_dispatchers, build_router, handle_domain_event
from analytics.service_layer import reconciliation
from analytics.service_layer.unit_of_work import SqlAlchemyUnitOfWork
from analytics.views import QueryService

pytestmark = pytest.mark.integration

KEY = ("acme-corp", "crm", "2024-01")


def bus_message(data):
    return {"type": "message", "channel": b"erp:domain-events", "data": json.dumps(data).encode()}


LEAD_CREATED = {
    "event_id": "evt-created",
    "tenant_id": "acme-corp",
    "event_type": "crm.lead.created",
    "event_version": 1,
    "aggregate_id": "lead-1",
    "aggregate_type": "lead",
    "source_service": "crm-service",
    "payload": {"value": 5000},
    "occurred_at": "2024-01-10T09:00:00Z",
}

LEAD_CONVERTED = {
    "event_id": "evt-converted",
    "tenant_id": "acme-corp",
    "event_type": "crm.lead.converted",
    "event_version": 2,
    "aggregate_id": "lead-1",
    "aggregate_type": "lead",
    "source_service": "crm-service",
    "payload": {},
    "occurred_at": "2024-01-12T15:30:00Z",
}


def broken_session_factory():
    raise OperationalError("SELECT 1", {}, Exception("connection refused"))


@pytest.fixture
def cache(fake_redis):
    return RedisViewCache(fake_redis, ttl_seconds=300)


@pytest.fixture
def uow_factory(sqlite_session_factory, cache, fake_alerts):
    return lambda: SqlAlchemyUnitOfWork(sqlite_session_factory, cache=cache, alerts=fake_alerts)


@pytest.fixture
def materialized(uow_factory, fake_redis, fake_alerts):
    """Run the acme-corp lead lifecycle through the consumer pipeline."""
    dead_letters = RedisDeadLetterSink(fake_redis, key="test:dead-letters")
    dispatchers = build_dispatchers(uow_factory, dead_letters, fake_alerts, partitions=1)
    router = build_router(dispatchers, dead_letters, fake_alerts)

    for data in (LEAD_CREATED, LEAD_CONVERTED, LEAD_CREATED):
        handle_domain_event(bus_message(data), router)
    handle_domain_event(bus_message({"event_type": "crm.lead.created"}), router)

    for dispatcher in dispatchers.values():
        dispatcher.join()
        dispatcher.stop()
    return dead_letters


def test_lead_lifecycle_is_materialized(materialized, uow_factory, cache):
    service = QueryService(uow_factory, cache=cache)

    view = service.get_analytics("acme-corp", "crm", "2024-01")

    assert view.metrics["leads_total"] == 1
    assert view.metrics["leads_converted"] == 1
    assert view.metrics["pipeline_value"] == 0
    assert view.metrics["won_value"] == 5000
    assert view.metrics["conversion_rate"] == 1.0
    assert view.stale is False


def test_malformed_message_is_dead_lettered(materialized):
    entries = materialized.list()

    assert len(entries) == 1
    assert entries[0].error_type == "MalformedEventError"


def test_store_outage_serves_same_values_marked_stale(materialized, uow_factory, cache, fake_alerts):
    service = QueryService(uow_factory, cache=cache)
    before = service.get_analytics("acme-corp", "crm", "2024-01")
    cache.invalidate(*KEY)
    service.uow_factory = lambda: SqlAlchemyUnitOfWork(broken_session_factory, cache=cache, alerts=fake_alerts)

    with ThreadPoolExecutor(max_workers=4) as pool:
        views = list(pool.map(lambda _: service.get_analytics("acme-corp", "crm", "2024-01"), range(4)))

    for view in views:
        assert view.stale is True
        assert view.metrics == before.metrics


def test_api_reports_stale_during_outage(materialized, uow_factory, cache, fake_alerts):
    service = QueryService(uow_factory, cache=cache)
    analytics_api.app.dependency_overrides[analytics_api.get_query_service] = lambda: service
    client = TestClient(analytics_api.app)
    try:
        fresh = client.get("/api/v1/analytics/acme-corp/crm/2024-01").json()
        cache.invalidate(*KEY)
        service.uow_factory = lambda: SqlAlchemyUnitOfWork(broken_session_factory, cache=cache, alerts=fake_alerts)
        stale = client.get("/api/v1/analytics/acme-corp/crm/2024-01").json()
    finally:
        analytics_api.app.dependency_overrides.clear()

    assert fresh["stale"] is False
    assert stale["stale"] is True
    assert stale["metrics"] == fresh["metrics"]


def test_reconciliation_repairs_drift(materialized, uow_factory):
    uow = uow_factory()
    with uow:
        stored = uow.read_models.get(KEY)
        uow.read_models.put(replace(stored, metrics={**stored.metrics, "leads_total": 4}))
        uow.commit()

    reports = reconciliation.sweep(uow_factory)

    assert [r.action_taken for r in reports] == [ConsistencyAction.REBUILD_TRIGGERED]
    assert reports[0].discrepancies[0].metric == "leads_total"
    with uow:
        assert uow.read_models.get(KEY).metrics["leads_total"] == 1
        assert uow.read_models.get(KEY).source_event_versions == {"lead-1": 2}
        assert len(uow.reports.list_recent("acme-corp", "crm")) == 1
