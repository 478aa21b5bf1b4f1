"""Unit tests for the Redis domain event consumer."""

import json

import pytest
from unittest.mock import Mock, patch

from analytics.domain.model import RouteStatus
from analytics.entrypoints.redis_eventconsumer import (
    build_dispatchers,
    build_router,
    handle_domain_event,
)


def message(**overrides):
    data = {
        "event_id": "evt-1",
        "tenant_id": "acme-corp",
        "event_type": "crm.lead.created",
        "event_version": 1,
        "aggregate_id": "lead-1",
        "payload": {"value": 5000},
        "occurred_at": "2024-01-15T10:00:00Z",
    }
    data.update(overrides)
    return {"type": "message", "channel": b"erp:domain-events", "data": json.dumps(data).encode()}


@pytest.fixture
def pipeline(fake_uow, fake_dead_letters, fake_alerts):
    dispatchers = build_dispatchers(lambda: fake_uow, fake_dead_letters, fake_alerts, partitions=1)
    router = build_router(dispatchers, fake_dead_letters, fake_alerts)
    yield router, dispatchers
    for dispatcher in dispatchers.values():
        dispatcher.stop()


def drain(dispatchers):
    for dispatcher in dispatchers.values():
        dispatcher.join()


class TestHandleDomainEvent:

    def test_routes_event_to_crm_materializer(self, pipeline, fake_uow):
        router, dispatchers = pipeline

        result = handle_domain_event(message(), router)
        drain(dispatchers)

        assert result.status == RouteStatus.DELIVERED
        model = fake_uow.read_models.get(("acme-corp", "crm", "2024-01"))
        assert model.metrics["leads_total"] == 1

    def test_materialized_update_invalidates_cached_view(self, pipeline, fake_uow):
        router, dispatchers = pipeline
        fake_uow.cache.fresh[("acme-corp", "crm", "2024-01")] = {"stale": False}

        handle_domain_event(message(), router)
        drain(dispatchers)

        assert ("acme-corp", "crm", "2024-01") not in fake_uow.cache.fresh

    def test_malformed_event_is_acknowledged_and_dead_lettered(self, pipeline, fake_dead_letters):
        router, _ = pipeline

        result = handle_domain_event(message(tenant_id=None), router)

        assert result is None
        assert len(fake_dead_letters.entries) == 1

    def test_unknown_domain_is_dropped(self, pipeline, fake_uow):
        router, dispatchers = pipeline

        result = handle_domain_event(message(event_type="marketing.campaign.started"), router)
        drain(dispatchers)

        assert result.status == RouteStatus.DROPPED
        assert fake_uow.read_models.list_tenant_domains() == []

    def test_failed_apply_is_dead_lettered_with_alert(self, fake_dead_letters, fake_alerts):
        broken_uow = Mock()
        dispatchers = build_dispatchers(
            lambda: broken_uow, fake_dead_letters, fake_alerts, partitions=1, max_attempts=2, backoff_multiplier=0
        )
        router = build_router(dispatchers, fake_dead_letters, fake_alerts)

        with patch("analytics.entrypoints.redis_eventconsumer.messagebus") as mock_messagebus:
            mock_messagebus.handle.side_effect = RuntimeError("cannot apply")
            handle_domain_event(message(), router)
            drain(dispatchers)

        for dispatcher in dispatchers.values():
            dispatcher.stop()

        assert fake_dead_letters.entries[0].target == "crm."
        assert fake_dead_letters.entries[0].error_type == "RuntimeError"
        assert fake_alerts.alerts[0].kind == "dead_letter"
