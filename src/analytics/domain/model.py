"""Domain model for the analytics read side: events, read models and reports."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive timestamps as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def period_for(occurred_at: datetime, granularity: str = "month") -> str:
    """
    Map an event timestamp to its read-model period.

    Args:
        occurred_at: Source-assigned event timestamp
        granularity: 'month' -> '2024-01', 'quarter' -> '2024-Q1'
    """
    occurred_at = as_utc(occurred_at)
    if granularity == "month":
        return f"{occurred_at.year:04d}-{occurred_at.month:02d}"
    if granularity == "quarter":
        return f"{occurred_at.year:04d}-Q{(occurred_at.month - 1) // 3 + 1}"
    raise ValueError(f"Unknown period granularity: {granularity}")


@dataclass(frozen=True)
class DomainEvent:
    """Immutable fact emitted by a source-of-truth business service."""
    event_id: str
    tenant_id: str
    event_type: str  # domain.entity.action, e.g. crm.lead.created
    event_version: int
    aggregate_id: str
    occurred_at: datetime
    aggregate_type: str = ""
    source_service: str = ""
    payload: Dict[str, Any] = field(default_factory=dict, hash=False)
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None

    @property
    def domain(self) -> str:
        return self.event_type.split(".", 1)[0]

    @property
    def action(self) -> str:
        """event_type without the domain prefix, e.g. 'lead.created'."""
        return self.event_type.split(".", 1)[1]

    @property
    def partition_key(self) -> str:
        return f"{self.tenant_id}:{self.aggregate_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "tenant_id": self.tenant_id,
            "event_type": self.event_type,
            "event_version": self.event_version,
            "aggregate_id": self.aggregate_id,
            "aggregate_type": self.aggregate_type,
            "source_service": self.source_service,
            "payload": dict(self.payload),
            "occurred_at": self.occurred_at.isoformat(),
            "correlation_id": self.correlation_id,
            "causation_id": self.causation_id,
        }


class ApplyResult(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"


@dataclass
class ProjectionState:
    """Metric values plus per-aggregate working values a projection folds over."""
    metrics: Dict[str, Any]
    lookups: Dict[str, Any]


@dataclass
class ReadModel:
    """Denormalized, pre-aggregated projection for one (tenant, domain, period)."""
    tenant_id: str
    domain: str
    period: str
    metrics: Dict[str, Any] = field(default_factory=dict)
    lookups: Dict[str, Any] = field(default_factory=dict)
    source_event_versions: Dict[str, int] = field(default_factory=dict)
    last_updated: Optional[datetime] = None
    events: List = field(default_factory=list, compare=False, repr=False)

    def __hash__(self):
        return hash(self.key)

    @classmethod
    def zero(cls, tenant_id: str, domain: str, period: str, projection) -> "ReadModel":
        return cls(
            tenant_id=tenant_id,
            domain=domain,
            period=period,
            metrics=projection.zero_metrics(),
        )

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.tenant_id, self.domain, self.period)

    def version_of(self, aggregate_id: str) -> int:
        return self.source_event_versions.get(aggregate_id, 0)

    def has_applied(self, event: DomainEvent) -> bool:
        return self.version_of(event.aggregate_id) >= event.event_version

    def apply_event(self, event: DomainEvent, projection, applied_at: datetime) -> Optional["ReadModel"]:
        """
        Fold one event into a copy of this read model.

        Returns None when the event's version was already applied for its
        aggregate (duplicate or stale replay). The receiver is not modified.
        """
        if self.has_applied(event):
            return None

        state = projection.fold(ProjectionState(self.metrics, self.lookups), event)
        versions = dict(self.source_event_versions)
        versions[event.aggregate_id] = event.event_version

        return ReadModel(
            tenant_id=self.tenant_id,
            domain=self.domain,
            period=self.period,
            metrics=state.metrics,
            lookups=state.lookups,
            source_event_versions=versions,
            last_updated=applied_at,
        )


@dataclass
class ReadModelView:
    """What the query API returns for one read-model key."""
    tenant_id: str
    domain: str
    period: str
    metrics: Dict[str, Any]
    last_updated: Optional[datetime]
    stale: bool = False
    served_from: str = "read_model"  # cache | read_model | stale_cache | source

    @classmethod
    def from_read_model(cls, model: ReadModel, served_from: str = "read_model") -> "ReadModelView":
        return cls(
            tenant_id=model.tenant_id,
            domain=model.domain,
            period=model.period,
            metrics=dict(model.metrics),
            last_updated=model.last_updated,
            served_from=served_from,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "domain": self.domain,
            "period": self.period,
            "metrics": dict(self.metrics),
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
            "stale": self.stale,
            "served_from": self.served_from,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReadModelView":
        last_updated = data.get("last_updated")
        return cls(
            tenant_id=data["tenant_id"],
            domain=data["domain"],
            period=data["period"],
            metrics=dict(data.get("metrics") or {}),
            last_updated=as_utc(datetime.fromisoformat(last_updated)) if last_updated else None,
            stale=data.get("stale", False),
            served_from=data.get("served_from", "cache"),
        )


class ConsistencyAction(str, Enum):
    NONE = "none"
    REBUILD_TRIGGERED = "rebuild_triggered"
    ALERT_RAISED = "alert_raised"


@dataclass(frozen=True)
class Discrepancy:
    period: str
    metric: str
    source_value: Any
    read_model_value: Any
    delta: float  # read_model_value - source_value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period,
            "metric": self.metric,
            "source_value": self.source_value,
            "read_model_value": self.read_model_value,
            "delta": self.delta,
        }


@dataclass
class ConsistencyReport:
    tenant_id: str
    domain: str
    checked_at: datetime
    discrepancies: List[Discrepancy] = field(default_factory=list)
    action_taken: ConsistencyAction = ConsistencyAction.NONE
    periods_checked: List[str] = field(default_factory=list)
    severe: bool = False
    report_id: Optional[int] = None
    events: List = field(default_factory=list, compare=False, repr=False)

    def __hash__(self):
        return id(self)

    @property
    def consistent(self) -> bool:
        return not self.discrepancies

    def to_dict(self) -> Dict[str, Any]:
        return {
            "report_id": self.report_id,
            "tenant_id": self.tenant_id,
            "domain": self.domain,
            "checked_at": self.checked_at.isoformat(),
            "periods_checked": list(self.periods_checked),
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "action_taken": self.action_taken.value,
            "severe": self.severe,
        }


class RouteStatus(str, Enum):
    DELIVERED = "delivered"
    DROPPED = "dropped"
    DEAD_LETTERED = "dead_lettered"


@dataclass
class RouteResult:
    status: RouteStatus
    event: Optional[DomainEvent] = None
    targets: List[str] = field(default_factory=list)
    failed_targets: List[str] = field(default_factory=list)
    reason: Optional[str] = None


@dataclass
class DeadLetterEntry:
    """An event the pipeline gave up on, kept for operators."""
    event_id: Optional[str]
    raw: str
    reason: str
    error_type: str
    attempts: int = 1
    target: Optional[str] = None
    failed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "raw": self.raw,
            "reason": self.reason,
            "error_type": self.error_type,
            "attempts": self.attempts,
            "target": self.target,
            "failed_at": self.failed_at.isoformat(),
        }


@dataclass
class Alert:
    """Structured operator alert."""
    kind: str  # dead_letter | reconciliation
    severity: str  # warning | critical
    message: str
    tenant_id: Optional[str] = None
    domain: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    raised_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "severity": self.severity,
            "message": self.message,
            "tenant_id": self.tenant_id,
            "domain": self.domain,
            "details": dict(self.details),
            "raised_at": self.raised_at.isoformat(),
        }


def fold_history(model: ReadModel, events, projection) -> ReadModel:
    """Apply events in order with the same skip rules as live materialization."""
    for event in events:
        updated = model.apply_event(event, projection, event.occurred_at)
        if updated is not None:
            model = updated
    return model
