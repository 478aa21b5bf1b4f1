# pylint: disable=redefined-outer-name
import itertools
import uuid
from datetime import datetime, timezone

import fakeredis
import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from analytics.adapters import orm
from analytics.adapters.alerts import AbstractAlertSink
from analytics.adapters.cache import AbstractViewCache
from analytics.adapters.dead_letters import AbstractDeadLetterSink
from analytics.adapters.repository import (
    AbstractEventLog,
    AbstractReadModelRepository,
    AbstractReportRepository,
)
from analytics.adapters.source_of_truth import EventLogSourceOfTruth
from analytics.domain.model import DomainEvent, ReadModelView
from analytics.service_layer.unit_of_work import AbstractUnitOfWork, SqlAlchemyUnitOfWork


class FakeReadModelRepository(AbstractReadModelRepository):
    def __init__(self):
        super().__init__()
        self._models = {}
        self.fail_writes = False

    def _check_writable(self):
        if self.fail_writes:
            raise OperationalError("UPDATE read_models", {}, Exception("store is down"))

    def _get(self, key):
        return self._models.get(key)

    def _put(self, model):
        self._check_writable()
        self._models[model.key] = model

    def _compare_and_set(self, model, expected_versions):
        self._check_writable()
        current = self._models.get(model.key)
        current_versions = current.source_event_versions if current else {}
        if current is None and expected_versions:
            return False
        if current_versions != expected_versions:
            return False
        self._models[model.key] = model
        return True

    def _list_periods(self, tenant_id, domain):
        return sorted(p for (t, d, p) in self._models if t == tenant_id and d == domain)

    def _list_tenant_domains(self):
        return sorted({(t, d) for (t, d, _) in self._models})


class FakeEventLog(AbstractEventLog):
    def __init__(self):
        self._events = {}

    def _append(self, event, period):
        if event.event_id in self._events:
            return False
        self._events[event.event_id] = (event, period)
        return True

    def _list_events(self, tenant_id, domain, period):
        events = [
            e for e, p in self._events.values()
            if e.tenant_id == tenant_id and e.domain == domain and p == period
        ]
        return sorted(events, key=lambda e: (e.event_version, e.occurred_at, e.event_id))

    def _list_periods(self, tenant_id, domain):
        return sorted({p for e, p in self._events.values() if e.tenant_id == tenant_id and e.domain == domain})

    def _list_tenant_domains(self):
        return sorted({(e.tenant_id, e.domain) for e, _ in self._events.values()})


class FakeReportRepository(AbstractReportRepository):
    def __init__(self):
        super().__init__()
        self._reports = []
        self._ids = itertools.count(1)

    def _add(self, report):
        self._reports.append(report)
        return next(self._ids)

    def _list_recent(self, tenant_id, domain, limit):
        reports = [r for r in self._reports if r.tenant_id == tenant_id and r.domain == domain]
        return sorted(reports, key=lambda r: (r.checked_at, r.report_id), reverse=True)[:limit]


class FakeAlertSink(AbstractAlertSink):
    def __init__(self):
        self.alerts = []

    def send(self, alert):
        self.alerts.append(alert)


class FakeDeadLetterSink(AbstractDeadLetterSink):
    def __init__(self):
        self.entries = []

    def push(self, entry):
        self.entries.append(entry)

    def list(self, limit=100):
        return self.entries[:limit]


class FakeViewCache(AbstractViewCache):
    def __init__(self):
        self.fresh = {}
        self.last_known = {}

    def get(self, tenant_id, domain, period):
        data = self.fresh.get((tenant_id, domain, period))
        return ReadModelView.from_dict(data) if data else None

    def get_last_known(self, tenant_id, domain, period):
        data = self.last_known.get((tenant_id, domain, period))
        return ReadModelView.from_dict(data) if data else None

    def set(self, view):
        data = view.to_dict()
        data["stale"] = False
        self.fresh[(view.tenant_id, view.domain, view.period)] = data
        self.last_known[(view.tenant_id, view.domain, view.period)] = data

    def invalidate(self, tenant_id, domain, period):
        self.fresh.pop((tenant_id, domain, period), None)


class FakeUnitOfWork(AbstractUnitOfWork):
    """In-memory unit of work; uncommitted writes are undone on exit."""

    def __init__(self, source=None, cache=None, alerts=None):
        self.read_models = FakeReadModelRepository()
        self.event_log = FakeEventLog()
        self.reports = FakeReportRepository()
        self.source = source or EventLogSourceOfTruth(self.event_log)
        self.cache = cache
        self.alerts = alerts or FakeAlertSink()
        self.commits = 0
        self._snapshot = None

    def _take_snapshot(self):
        self._snapshot = (
            dict(self.read_models._models),
            dict(self.event_log._events),
            list(self.reports._reports),
        )

    def __enter__(self):
        self._take_snapshot()
        return super().__enter__()

    def _commit(self):
        self.commits += 1
        self._take_snapshot()

    def rollback(self):
        if self._snapshot is None:
            return
        models, events, reports = self._snapshot
        self.read_models._models = dict(models)
        self.event_log._events = dict(events)
        self.reports._reports = list(reports)


@pytest.fixture
def fake_uow():
    return FakeUnitOfWork(cache=FakeViewCache())


@pytest.fixture
def fake_alerts():
    return FakeAlertSink()


@pytest.fixture
def fake_dead_letters():
    return FakeDeadLetterSink()


@pytest.fixture
def fake_cache():
    return FakeViewCache()


@pytest.fixture
def make_event():
    """Build DomainEvents with sensible defaults; occurred_at defaults to 2024-01-15."""
    def _make(event_type="crm.lead.created", aggregate_id="lead-1", version=1, tenant_id="acme-corp",
              payload=None, occurred_at=None, event_id=None):
        return DomainEvent(
            event_id=event_id or str(uuid.uuid4()),
            tenant_id=tenant_id,
            event_type=event_type,
            event_version=version,
            aggregate_id=aggregate_id,
            payload=payload or {},
            occurred_at=occurred_at or datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc),
        )
    return _make


@pytest.fixture
def sqlite_session_factory():
    """SQLite in-memory database shared across threads for fast testing."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    orm.create_tables(engine)

    yield sessionmaker(bind=engine)

    orm.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def sqlite_uow_factory(sqlite_session_factory, fake_cache, fake_alerts):
    return lambda: SqlAlchemyUnitOfWork(sqlite_session_factory, cache=fake_cache, alerts=fake_alerts)


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis()
