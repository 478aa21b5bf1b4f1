"""
Consistency reconciler: compare read models with aggregates computed straight
from the source of truth, rebuild drifted keys and escalate what a rebuild
cannot fix.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import config
from analytics.domain.events import ConsistencyAlertRaised, DiscrepancyDetected
from analytics.domain.exceptions import AnalyticsError, NotFoundError
from analytics.domain.model import (
    ConsistencyAction,
    ConsistencyReport,
    Discrepancy,
    utcnow,
)
from analytics.domain.projections import COUNT, Projection
from analytics.service_layer.materializer import MATERIALIZERS, Materializer
from analytics.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def compare_metrics(
    projection: Projection,
    period: str,
    read_model_metrics: Dict[str, Any],
    source_metrics: Dict[str, Any],
    tolerance: float,
) -> List[Discrepancy]:
    """
    Counts must match exactly; amounts and rates may differ by tolerance.
    Discrepancies come back in the projection's metric order.
    """
    discrepancies = []
    for spec in projection.metric_specs:
        source_value = source_metrics.get(spec.name, 0)
        read_value = read_model_metrics.get(spec.name, 0)
        delta = read_value - source_value
        if spec.kind == COUNT:
            differs = read_value != source_value
        else:
            differs = abs(delta) > tolerance
        if differs:
            discrepancies.append(
                Discrepancy(
                    period=period,
                    metric=spec.name,
                    source_value=source_value,
                    read_model_value=read_value,
                    delta=delta,
                )
            )
    return discrepancies


def is_severe(discrepancy: Discrepancy, severity_ratio: float) -> bool:
    """Relative drift against the source value (absolute below 1)."""
    return abs(discrepancy.delta) / max(abs(discrepancy.source_value), 1.0) >= severity_ratio


def _check(uow: AbstractUnitOfWork, materializer: Materializer, tenant_id: str, periods: List[str], tolerance: float):
    discrepancies = []
    with uow:
        for period in periods:
            stored = uow.read_models.get((tenant_id, materializer.domain, period))
            if stored is None:
                stored = materializer.zero(tenant_id, period)
            source_metrics = uow.source.aggregate_all(tenant_id, materializer.domain, period)
            discrepancies.extend(
                compare_metrics(materializer.projection, period, stored.metrics, source_metrics, tolerance)
            )
    return discrepancies


def _known_periods(uow: AbstractUnitOfWork, tenant_id: str, domain: str) -> List[str]:
    with uow:
        return sorted(
            set(uow.read_models.list_periods(tenant_id, domain))
            | set(uow.event_log.list_periods(tenant_id, domain))
        )


def _severe_streak(uow: AbstractUnitOfWork, tenant_id: str, domain: str, repeats: int) -> bool:
    """Whether the previous repeats - 1 reports were all severe."""
    if repeats <= 1:
        return True
    with uow:
        recent = uow.reports.list_recent(tenant_id, domain, limit=repeats - 1)
    return len(recent) == repeats - 1 and all(report.severe for report in recent)


def reconcile(
    tenant_id: str,
    domain: str,
    uow: AbstractUnitOfWork,
    period: Optional[str] = None,
    cancel: Optional[threading.Event] = None,
    materializers: Optional[Dict[str, Materializer]] = None,
    clock: Callable = utcnow,
) -> ConsistencyReport:
    """
    Reconcile one tenant/domain and persist the resulting report.

    Args:
        tenant_id: Tenant to check
        domain: Materializer domain to check
        uow: Unit of work giving access to the store, event log and source
        period: Single period to check; None checks every known period
        cancel: Set to stop a running rebuild between replayed events

    Returns:
        The persisted ConsistencyReport

    Raises:
        NotFoundError: If the domain has no materializer
        SourceQueryError: If source-of-truth aggregates are unavailable
    """
    materializer = (materializers or MATERIALIZERS).get(domain)
    if materializer is None:
        raise NotFoundError(f"Unknown analytics domain: {domain}")

    settings = config.get_reconcile_config()
    tolerance = settings["rate_tolerance"]

    periods = [period] if period else _known_periods(uow, tenant_id, domain)
    discrepancies = _check(uow, materializer, tenant_id, periods, tolerance)
    report = ConsistencyReport(
        tenant_id=tenant_id,
        domain=domain,
        checked_at=clock(),
        discrepancies=discrepancies,
        periods_checked=periods,
    )

    if discrepancies:
        report.severe = any(is_severe(d, settings["severity_ratio"]) for d in discrepancies)
        drifted = sorted({d.period for d in discrepancies})
        logger.warning(f"{len(discrepancies)} discrepancies for {tenant_id}/{domain} in {drifted}, rebuilding")
        report.events.append(
            DiscrepancyDetected(
                tenant_id=tenant_id,
                domain=domain,
                periods=drifted,
                discrepancy_count=len(discrepancies),
                severe=report.severe,
            )
        )

        failures = {}
        cancelled = False
        for drifted_period in drifted:
            try:
                if not materializer.rebuild(tenant_id, drifted_period, uow, cancel=cancel):
                    cancelled = True
                    break
            except AnalyticsError as e:
                logger.error(f"Rebuild of {tenant_id}/{domain}/{drifted_period} failed: {e}")
                failures[drifted_period] = str(e)

        remaining = []
        if not cancelled:
            remaining = _check(uow, materializer, tenant_id, drifted, tolerance)

        reason = None
        if failures:
            reason = "rebuild failed"
        elif cancelled:
            reason = "rebuild cancelled"
        elif remaining:
            reason = "discrepancies remain after rebuild"
        elif report.severe and _severe_streak(uow, tenant_id, domain, settings["severity_repeats"]):
            reason = f"severe drift in {settings['severity_repeats']} consecutive checks"

        if reason:
            report.action_taken = ConsistencyAction.ALERT_RAISED
            report.events.append(
                ConsistencyAlertRaised(
                    tenant_id=tenant_id,
                    domain=domain,
                    reason=reason,
                    details={
                        "periods": drifted,
                        "rebuild_errors": failures,
                        "remaining": [d.to_dict() for d in remaining],
                    },
                )
            )
        else:
            report.action_taken = ConsistencyAction.REBUILD_TRIGGERED

    with uow:
        uow.reports.add(report)
        uow.commit()

    logger.info(
        f"Reconciled {tenant_id}/{domain}: {len(report.discrepancies)} discrepancies, "
        f"action={report.action_taken.value}"
    )
    return report


def sweep(
    uow_factory: Callable[[], AbstractUnitOfWork],
    materializers: Optional[Dict[str, Materializer]] = None,
) -> List[ConsistencyReport]:
    """
    Reconcile every known tenant/domain through the message bus.

    A failure for one pair is logged and does not stop the others.
    """
    from analytics.service_layer import messagebus
    from analytics.domain.commands import ReconcileReadModel

    materializers = materializers or MATERIALIZERS
    uow = uow_factory()
    with uow:
        pairs = sorted(set(uow.read_models.list_tenant_domains()) | set(uow.event_log.list_tenant_domains()))

    reports = []
    for tenant_id, domain in pairs:
        if domain not in materializers:
            logger.warning(f"Skipping {tenant_id}/{domain}: no materializer")
            continue
        try:
            results = messagebus.handle(ReconcileReadModel(tenant_id=tenant_id, domain=domain), uow_factory())
            reports.append(results[0])
        except Exception:
            logger.exception(f"Reconciliation of {tenant_id}/{domain} failed")
    logger.info(f"Sweep finished: {len(reports)} of {len(pairs)} tenant/domain pairs reconciled")
    return reports
