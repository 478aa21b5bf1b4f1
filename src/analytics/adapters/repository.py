import abc
import json
import logging
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy import and_, insert, select, update
from sqlalchemy.exc import IntegrityError

from analytics.adapters import orm
from analytics.domain.model import (
    ConsistencyAction,
    ConsistencyReport,
    Discrepancy,
    DomainEvent,
    ReadModel,
    as_utc,
    utcnow,
)

logger = logging.getLogger(__name__)

ReadModelKey = Tuple[str, str, str]


def canonical_versions(versions: Dict[str, int]) -> str:
    return json.dumps(versions, sort_keys=True, separators=(",", ":"))


class AbstractReadModelRepository(abc.ABC):
    """ReadModel store: get / put / compare-and-set on (tenant, domain, period)."""

    def __init__(self):
        self.seen = set()  # type: Set[ReadModel]

    def get(self, key: ReadModelKey) -> Optional[ReadModel]:
        return self._get(key)

    def put(self, model: ReadModel) -> None:
        self._put(model)
        self.seen.add(model)

    def compare_and_set(self, model: ReadModel, expected_versions: Dict[str, int]) -> bool:
        """
        Persist model only if the stored source_event_versions still equal
        expected_versions (an absent row matches an empty mapping).
        """
        stored = self._compare_and_set(model, expected_versions)
        if stored:
            self.seen.add(model)
        return stored

    def list_periods(self, tenant_id: str, domain: str) -> List[str]:
        return self._list_periods(tenant_id, domain)

    def has_tenant_domain(self, tenant_id: str, domain: str) -> bool:
        return bool(self._list_periods(tenant_id, domain))

    def list_tenant_domains(self) -> List[Tuple[str, str]]:
        return self._list_tenant_domains()

    @abc.abstractmethod
    def _get(self, key: ReadModelKey) -> Optional[ReadModel]:
        raise NotImplementedError

    @abc.abstractmethod
    def _put(self, model: ReadModel) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def _compare_and_set(self, model: ReadModel, expected_versions: Dict[str, int]) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_periods(self, tenant_id: str, domain: str) -> List[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_tenant_domains(self) -> List[Tuple[str, str]]:
        raise NotImplementedError


class AbstractEventLog(abc.ABC):
    """Append-only history of routed domain events, used for replay."""

    def append(self, event: DomainEvent, period: str) -> bool:
        """Record the event unless its event_id is already present."""
        return self._append(event, period)

    def list_events(self, tenant_id: str, domain: str, period: str) -> List[DomainEvent]:
        """Events of one read-model key in version order."""
        return self._list_events(tenant_id, domain, period)

    def list_periods(self, tenant_id: str, domain: str) -> List[str]:
        return self._list_periods(tenant_id, domain)

    def list_tenant_domains(self) -> List[Tuple[str, str]]:
        return self._list_tenant_domains()

    @abc.abstractmethod
    def _append(self, event: DomainEvent, period: str) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_events(self, tenant_id: str, domain: str, period: str) -> List[DomainEvent]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_periods(self, tenant_id: str, domain: str) -> List[str]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_tenant_domains(self) -> List[Tuple[str, str]]:
        raise NotImplementedError


class AbstractReportRepository(abc.ABC):
    def __init__(self):
        self.seen = set()  # type: Set[ConsistencyReport]

    def add(self, report: ConsistencyReport) -> Optional[int]:
        report.report_id = self._add(report)
        self.seen.add(report)
        return report.report_id

    def list_recent(self, tenant_id: str, domain: str, limit: int = 20) -> List[ConsistencyReport]:
        """Newest first."""
        return self._list_recent(tenant_id, domain, limit)

    @abc.abstractmethod
    def _add(self, report: ConsistencyReport) -> Optional[int]:
        raise NotImplementedError

    @abc.abstractmethod
    def _list_recent(self, tenant_id: str, domain: str, limit: int) -> List[ConsistencyReport]:
        raise NotImplementedError


def _key_clause(table, tenant_id, domain, period):
    return and_(
        table.c.tenant_id == tenant_id,
        table.c.domain == domain,
        table.c.period == period,
    )


class SqlAlchemyReadModelRepository(AbstractReadModelRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _get(self, key):
        row = self.session.execute(
            select(orm.read_models).where(_key_clause(orm.read_models, *key))
        ).mappings().first()
        if row is None:
            return None
        return ReadModel(
            tenant_id=row["tenant_id"],
            domain=row["domain"],
            period=row["period"],
            metrics=dict(row["metrics"] or {}),
            lookups=dict(row["lookups"] or {}),
            source_event_versions=json.loads(row["source_event_versions"] or "{}"),
            last_updated=as_utc(row["last_updated"]),
        )

    def _values(self, model):
        return dict(
            metrics=model.metrics,
            lookups=model.lookups,
            source_event_versions=canonical_versions(model.source_event_versions),
            last_updated=model.last_updated,
        )

    def _put(self, model):
        result = self.session.execute(
            update(orm.read_models)
            .where(_key_clause(orm.read_models, *model.key))
            .values(**self._values(model))
        )
        if result.rowcount == 0:
            self.session.execute(
                insert(orm.read_models).values(
                    tenant_id=model.tenant_id,
                    domain=model.domain,
                    period=model.period,
                    **self._values(model),
                )
            )

    def _compare_and_set(self, model, expected_versions):
        result = self.session.execute(
            update(orm.read_models)
            .where(_key_clause(orm.read_models, *model.key))
            .where(orm.read_models.c.source_event_versions == canonical_versions(expected_versions))
            .values(**self._values(model))
        )
        if result.rowcount == 1:
            return True
        if expected_versions:
            return False

        exists = self.session.execute(
            select(orm.read_models.c.tenant_id).where(_key_clause(orm.read_models, *model.key))
        ).first()
        if exists:
            return False

        try:
            self.session.execute(
                insert(orm.read_models).values(
                    tenant_id=model.tenant_id,
                    domain=model.domain,
                    period=model.period,
                    **self._values(model),
                )
            )
        except IntegrityError:
            logger.info(f"Concurrent insert for read model {model.key}")
            self.session.rollback()
            return False
        return True

    def _list_periods(self, tenant_id, domain):
        rows = self.session.execute(
            select(orm.read_models.c.period)
            .where(orm.read_models.c.tenant_id == tenant_id)
            .where(orm.read_models.c.domain == domain)
            .order_by(orm.read_models.c.period)
        ).all()
        return [row[0] for row in rows]

    def _list_tenant_domains(self):
        rows = self.session.execute(
            select(orm.read_models.c.tenant_id, orm.read_models.c.domain)
            .distinct()
            .order_by(orm.read_models.c.tenant_id, orm.read_models.c.domain)
        ).all()
        return [(row[0], row[1]) for row in rows]


class SqlAlchemyEventLog(AbstractEventLog):
    def __init__(self, session):
        self.session = session

    def _append(self, event, period):
        exists = self.session.execute(
            select(orm.event_log.c.event_id).where(orm.event_log.c.event_id == event.event_id)
        ).first()
        if exists:
            return False
        self.session.execute(
            insert(orm.event_log).values(
                event_id=event.event_id,
                tenant_id=event.tenant_id,
                domain=event.domain,
                period=period,
                event_type=event.event_type,
                event_version=event.event_version,
                aggregate_id=event.aggregate_id,
                aggregate_type=event.aggregate_type,
                source_service=event.source_service,
                payload=dict(event.payload),
                occurred_at=event.occurred_at,
                correlation_id=event.correlation_id,
                causation_id=event.causation_id,
                recorded_at=utcnow(),
            )
        )
        return True

    def _list_events(self, tenant_id, domain, period):
        rows = self.session.execute(
            select(orm.event_log)
            .where(_key_clause(orm.event_log, tenant_id, domain, period))
            .order_by(
                orm.event_log.c.event_version,
                orm.event_log.c.occurred_at,
                orm.event_log.c.event_id,
            )
        ).mappings().all()
        return [
            DomainEvent(
                event_id=row["event_id"],
                tenant_id=row["tenant_id"],
                event_type=row["event_type"],
                event_version=row["event_version"],
                aggregate_id=row["aggregate_id"],
                aggregate_type=row["aggregate_type"] or "",
                source_service=row["source_service"] or "",
                payload=dict(row["payload"] or {}),
                occurred_at=as_utc(row["occurred_at"]),
                correlation_id=row["correlation_id"],
                causation_id=row["causation_id"],
            )
            for row in rows
        ]

    def _list_periods(self, tenant_id, domain):
        rows = self.session.execute(
            select(orm.event_log.c.period)
            .where(orm.event_log.c.tenant_id == tenant_id)
            .where(orm.event_log.c.domain == domain)
            .distinct()
            .order_by(orm.event_log.c.period)
        ).all()
        return [row[0] for row in rows]

    def _list_tenant_domains(self):
        rows = self.session.execute(
            select(orm.event_log.c.tenant_id, orm.event_log.c.domain)
            .distinct()
            .order_by(orm.event_log.c.tenant_id, orm.event_log.c.domain)
        ).all()
        return [(row[0], row[1]) for row in rows]


class SqlAlchemyReportRepository(AbstractReportRepository):
    def __init__(self, session):
        super().__init__()
        self.session = session

    def _add(self, report):
        result = self.session.execute(
            insert(orm.consistency_reports).values(
                tenant_id=report.tenant_id,
                domain=report.domain,
                checked_at=report.checked_at,
                periods_checked=list(report.periods_checked),
                discrepancies=[d.to_dict() for d in report.discrepancies],
                action_taken=report.action_taken.value,
                severe=report.severe,
            )
        )
        return result.inserted_primary_key[0]

    def _list_recent(self, tenant_id, domain, limit):
        rows = self.session.execute(
            select(orm.consistency_reports)
            .where(orm.consistency_reports.c.tenant_id == tenant_id)
            .where(orm.consistency_reports.c.domain == domain)
            .order_by(orm.consistency_reports.c.checked_at.desc(), orm.consistency_reports.c.id.desc())
            .limit(limit)
        ).mappings().all()
        return [
            ConsistencyReport(
                report_id=row["id"],
                tenant_id=row["tenant_id"],
                domain=row["domain"],
                checked_at=as_utc(row["checked_at"]),
                periods_checked=list(row["periods_checked"] or []),
                discrepancies=[Discrepancy(**d) for d in row["discrepancies"] or []],
                action_taken=ConsistencyAction(row["action_taken"]),
                severe=bool(row["severe"]),
            )
            for row in rows
        ]
