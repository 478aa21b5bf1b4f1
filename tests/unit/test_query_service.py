"""Unit tests for the query service read path, cache and circuit breaker."""
import threading
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest

from analytics.domain.circuit_breaker import BreakerPolicy, BreakerStatus
from analytics.domain.exceptions import DegradedResultError, NotFoundError, SourceQueryError
from analytics.domain.projections import PROJECTIONS
from analytics.service_layer.circuit_breaker import CircuitBreaker
from analytics.service_layer.materializer import Materializer
from analytics.views import QueryService


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.fixture
def seeded_uow(fake_uow, make_event):
    crm = Materializer(PROJECTIONS["crm"], granularity="month")
    crm.apply(make_event(payload={"value": 5000}), fake_uow)
    crm.apply(make_event("crm.lead.converted", version=2), fake_uow)
    return fake_uow


@pytest.fixture
def clock():
    return FakeClock()


def build_service(uow, cache, clock, store_timeout=1, fallback_timeout=1):
    breaker = CircuitBreaker(policy=BreakerPolicy(failure_threshold=3, cooldown_seconds=30), clock=clock)
    return QueryService(
        uow_factory=lambda: uow,
        cache=cache,
        breaker=breaker,
        store_timeout=store_timeout,
        fallback_timeout=fallback_timeout,
    )


def break_store(uow):
    """Make every read-model read fail and count the attempts."""
    failing_get = Mock(side_effect=ConnectionError("store is down"))
    uow.read_models._get = failing_get
    return failing_get


def test_reads_store_then_serves_from_cache(seeded_uow, fake_cache, clock):
    service = build_service(seeded_uow, fake_cache, clock)

    first = service.get_analytics("acme-corp", "crm", "2024-01")
    second = service.get_analytics("acme-corp", "crm", "2024-01")

    assert first.served_from == "read_model"
    assert first.metrics["leads_total"] == 1
    assert first.metrics["won_value"] == 5000
    assert second.served_from == "cache"
    assert second.metrics == first.metrics
    assert not second.stale


def test_unknown_domain_is_not_found(seeded_uow, fake_cache, clock):
    service = build_service(seeded_uow, fake_cache, clock)

    with pytest.raises(NotFoundError):
        service.get_analytics("acme-corp", "marketing", "2024-01")


def test_unknown_tenant_is_not_found_and_not_a_breaker_failure(seeded_uow, fake_cache, clock):
    service = build_service(seeded_uow, fake_cache, clock)

    for _ in range(5):
        with pytest.raises(NotFoundError):
            service.get_analytics("globex", "crm", "2024-01")

    assert service.breaker.status == BreakerStatus.CLOSED


def test_period_without_events_returns_zero_metrics(seeded_uow, fake_cache, clock):
    service = build_service(seeded_uow, fake_cache, clock)

    view = service.get_analytics("acme-corp", "crm", "2023-12")

    assert view.metrics == PROJECTIONS["crm"].zero_metrics()
    assert view.last_updated is None


def test_store_outage_serves_last_known_value_marked_stale(seeded_uow, fake_cache, clock):
    service = build_service(seeded_uow, fake_cache, clock)
    service.get_analytics("acme-corp", "crm", "2024-01")
    fake_cache.invalidate("acme-corp", "crm", "2024-01")
    break_store(seeded_uow)

    view = service.get_analytics("acme-corp", "crm", "2024-01")

    assert view.stale is True
    assert view.served_from == "stale_cache"
    assert view.metrics["leads_converted"] == 1


def test_breaker_opens_and_skips_store_during_cooldown(seeded_uow, fake_cache, clock):
    service = build_service(seeded_uow, fake_cache, clock)
    service.get_analytics("acme-corp", "crm", "2024-01")
    fake_cache.invalidate("acme-corp", "crm", "2024-01")
    failing_get = break_store(seeded_uow)

    for _ in range(3):
        assert service.get_analytics("acme-corp", "crm", "2024-01").stale
    assert failing_get.call_count == 3
    assert service.breaker.status == BreakerStatus.OPEN

    for _ in range(10):
        assert service.get_analytics("acme-corp", "crm", "2024-01").stale
    assert failing_get.call_count == 3

    clock.now += 30
    service.get_analytics("acme-corp", "crm", "2024-01")
    assert failing_get.call_count == 4
    assert service.breaker.status == BreakerStatus.OPEN


def test_half_open_trial_success_closes_breaker(seeded_uow, fake_cache, clock):
    service = build_service(seeded_uow, fake_cache, clock)
    original_get = seeded_uow.read_models._get
    break_store(seeded_uow)
    for _ in range(3):
        service.get_analytics("acme-corp", "crm", "2024-01")
    assert service.breaker.status == BreakerStatus.OPEN

    seeded_uow.read_models._get = original_get
    clock.now += 30
    view = service.get_analytics("acme-corp", "crm", "2024-01")

    assert view.served_from == "read_model"
    assert service.breaker.status == BreakerStatus.CLOSED


def test_without_cached_value_falls_back_to_source(seeded_uow, fake_cache, clock):
    service = build_service(seeded_uow, fake_cache, clock)
    break_store(seeded_uow)

    view = service.get_analytics("acme-corp", "crm", "2024-01")

    assert view.served_from == "source"
    assert view.stale is False
    assert view.metrics["leads_total"] == 1
    assert view.metrics["won_value"] == 5000


def test_every_fallback_failing_is_degraded(seeded_uow, fake_cache, clock):
    service = build_service(seeded_uow, fake_cache, clock)
    break_store(seeded_uow)
    seeded_uow.source = Mock()
    seeded_uow.source.aggregate_all.side_effect = SourceQueryError("source down")

    with pytest.raises(DegradedResultError):
        service.get_analytics("acme-corp", "crm", "2024-01")


def test_slow_store_times_out_into_fallback(seeded_uow, fake_cache, clock):
    release = threading.Event()
    original_get = seeded_uow.read_models._get

    def slow_get(key):
        release.wait(2)
        return original_get(key)

    service = build_service(seeded_uow, fake_cache, clock, store_timeout=0.05)
    service.get_analytics("acme-corp", "crm", "2024-01")
    fake_cache.invalidate("acme-corp", "crm", "2024-01")
    seeded_uow.read_models._get = slow_get

    try:
        view = service.get_analytics("acme-corp", "crm", "2024-01")
    finally:
        release.set()

    assert view.stale is True
    assert service.breaker.state.consecutive_failures == 1


def test_slow_source_times_out_into_degraded_result(seeded_uow, fake_cache, clock):
    release = threading.Event()
    source = Mock()
    source.aggregate_all.side_effect = lambda tenant_id, domain, period: release.wait(2)
    service = build_service(seeded_uow, fake_cache, clock, fallback_timeout=0.05)
    service.source = source
    break_store(seeded_uow)

    try:
        with pytest.raises(DegradedResultError):
            service.get_analytics("acme-corp", "crm", "2024-01")
    finally:
        release.set()


def test_fallback_source_does_not_need_the_store(fake_cache, clock):
    def unreachable_store():
        raise ConnectionError("could not connect to server")

    source = Mock()
    source.aggregate_all.return_value = {**PROJECTIONS["crm"].zero_metrics(), "leads_total": 4}
    service = QueryService(
        uow_factory=unreachable_store,
        cache=fake_cache,
        breaker=CircuitBreaker(policy=BreakerPolicy(failure_threshold=3, cooldown_seconds=30), clock=clock),
        source=source,
    )

    view = service.get_analytics("acme-corp", "crm", "2024-01")

    assert view.served_from == "source"
    assert view.metrics["leads_total"] == 4
    assert service.breaker.state.consecutive_failures == 1


def test_hung_store_reads_do_not_starve_source_fallback(seeded_uow, fake_cache, clock):
    release = threading.Event()

    def hung_get(key):
        release.wait(5)

    seeded_uow.read_models._get = hung_get
    store_pool = ThreadPoolExecutor(max_workers=1)
    fallback_pool = ThreadPoolExecutor(max_workers=1)
    service = QueryService(
        uow_factory=lambda: seeded_uow,
        cache=fake_cache,
        breaker=CircuitBreaker(policy=BreakerPolicy(failure_threshold=10, cooldown_seconds=30), clock=clock),
        store_timeout=0.05,
        fallback_timeout=1,
        store_executor=store_pool,
        fallback_executor=fallback_pool,
    )

    try:
        views = [service.get_analytics("acme-corp", "crm", "2024-01") for _ in range(3)]
    finally:
        release.set()
        store_pool.shutdown(wait=True)
        fallback_pool.shutdown(wait=True)

    assert [v.served_from for v in views] == ["source"] * 3
    assert all(v.metrics["leads_total"] == 1 for v in views)
