import logging

from analytics.domain import commands, events
from analytics.domain.model import Alert, ApplyResult, ConsistencyReport
from analytics.service_layer import reconciliation
from analytics.service_layer.materializer import MATERIALIZERS
from analytics.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


def apply_domain_event(
    command: commands.ApplyDomainEvent,
    uow: AbstractUnitOfWork,
    materializers=None,
) -> ApplyResult:
    """
    Fold a routed event into the read model of the command's domain.

    Args:
        command: ApplyDomainEvent with the validated event and target domain
        uow: Unit of work for the read-model store

    Returns:
        ApplyResult.APPLIED or ApplyResult.SKIPPED

    Raises:
        KeyError: If no materializer is registered for the domain
        PersistenceError: If the store write failed
        ConcurrentUpdateError: If compare-and-set kept conflicting
    """
    materializer = (materializers or MATERIALIZERS)[command.domain]
    return materializer.apply(command.event, uow)


def reconcile_read_model(
    command: commands.ReconcileReadModel,
    uow: AbstractUnitOfWork,
) -> ConsistencyReport:
    logger.info(f"Reconciling {command.tenant_id}/{command.domain} period={command.period or 'all'}")
    return reconciliation.reconcile(command.tenant_id, command.domain, uow, period=command.period)


def invalidate_cached_view(event: events.ReadModelUpdated, uow: AbstractUnitOfWork):
    """Drop the fresh cache entry so the next query reads the new state."""
    if uow.cache is None:
        return
    uow.cache.invalidate(event.tenant_id, event.domain, event.period)
    logger.debug(f"Invalidated cached view {event.tenant_id}/{event.domain}/{event.period}")


def log_discrepancy(event: events.DiscrepancyDetected, uow: AbstractUnitOfWork):
    logger.warning(
        f"Read model drift for {event.tenant_id}/{event.domain}: {event.discrepancy_count} "
        f"discrepancies in {event.periods} (severe={event.severe})"
    )


def raise_alert(event: events.ConsistencyAlertRaised, uow: AbstractUnitOfWork):
    uow.alerts.send(
        Alert(
            kind="reconciliation",
            severity="critical",
            message=f"Read model for {event.tenant_id}/{event.domain} needs attention: {event.reason}",
            tenant_id=event.tenant_id,
            domain=event.domain,
            details=dict(event.details),
        )
    )
