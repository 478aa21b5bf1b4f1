"""
Read-model materializers: one per business domain, each the only writer of
its domain's read models.
"""
import logging
import threading
from typing import Callable, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

import config
from analytics.domain.events import ReadModelUpdated
from analytics.domain.exceptions import ConcurrentUpdateError, PersistenceError
from analytics.domain.model import (
    ApplyResult,
    DomainEvent,
    ReadModel,
    fold_history,
    period_for,
    utcnow,
)
from analytics.domain.projections import PROJECTIONS, Projection
from analytics.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


class Materializer:
    """Applies routed domain events to one domain's read models."""

    def __init__(
        self,
        projection: Projection,
        granularity: Optional[str] = None,
        max_cas_attempts: int = 5,
        clock: Callable = utcnow,
    ):
        self.projection = projection
        self.granularity = granularity or config.get_period_granularity(projection.domain)
        self.max_cas_attempts = max_cas_attempts
        self.clock = clock

    @property
    def domain(self) -> str:
        return self.projection.domain

    def period_of(self, event: DomainEvent) -> str:
        return period_for(event.occurred_at, self.granularity)

    def zero(self, tenant_id: str, period: str) -> ReadModel:
        return ReadModel.zero(tenant_id, self.domain, period, self.projection)

    def apply(self, event: DomainEvent, uow: AbstractUnitOfWork) -> ApplyResult:
        """
        Fold one event into its read model, idempotently.

        The event-log append, version check, aggregation and the
        compare-and-set write form one unit of work: if anything fails the
        whole apply rolls back and source_event_versions is not advanced.

        Returns:
            ApplyResult.APPLIED, or ApplyResult.SKIPPED for a duplicate or
            stale version

        Raises:
            PersistenceError: If the store write failed
            ConcurrentUpdateError: If compare-and-set kept conflicting
        """
        if event.domain != self.domain:
            raise ValueError(f"{self.domain} materializer cannot apply {event.event_type}")

        period = self.period_of(event)
        key = (event.tenant_id, self.domain, period)

        for attempt in range(1, self.max_cas_attempts + 1):
            try:
                with uow:
                    uow.event_log.append(event, period)
                    current = uow.read_models.get(key) or self.zero(event.tenant_id, period)
                    updated = current.apply_event(event, self.projection, self.clock())

                    if updated is None:
                        logger.debug(
                            f"Skipping {event.event_type} {event.event_id}: aggregate {event.aggregate_id} "
                            f"already at version {current.version_of(event.aggregate_id)}"
                        )
                        uow.commit()
                        return ApplyResult.SKIPPED

                    if not uow.read_models.compare_and_set(updated, current.source_event_versions):
                        logger.info(f"Read model {key} changed concurrently, retrying (attempt {attempt})")
                        continue

                    updated.events.append(
                        ReadModelUpdated(
                            tenant_id=event.tenant_id,
                            domain=self.domain,
                            period=period,
                            event_id=event.event_id,
                        )
                    )
                    uow.commit()

            except SQLAlchemyError as e:
                logger.error(f"Failed to persist read model {key} for event {event.event_id}: {e}")
                raise PersistenceError(f"Read model {key} write failed: {e}") from e

            logger.info(f"Applied {event.event_type} {event.event_id} to {key}")
            return ApplyResult.APPLIED

        raise ConcurrentUpdateError(f"Read model {key} kept changing after {self.max_cas_attempts} attempts")

    def project(self, tenant_id: str, period: str, events: Iterable[DomainEvent]) -> ReadModel:
        """Build a read model from scratch in memory from an event history."""
        return fold_history(self.zero(tenant_id, period), events, self.projection)

    def rebuild(
        self,
        tenant_id: str,
        period: str,
        uow: AbstractUnitOfWork,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        """
        Replay a key's history from a zero state with cleared versions, then
        swap the result in with one compare-and-set.

        The replay folds events with the same skip rules as apply(). The
        stored model stays untouched until the final write, which only
        succeeds against the versions observed before the replay; a live
        apply landing in between makes the rebuild start over on the fresh
        history.

        Returns:
            True if the rebuilt model was written, False if cancelled

        Raises:
            PersistenceError: If the store write failed
            ConcurrentUpdateError: If live applies kept racing the rebuild
        """
        key = (tenant_id, self.domain, period)
        for attempt in range(1, self.max_cas_attempts + 1):
            try:
                with uow:
                    current = uow.read_models.get(key)
                    expected = current.source_event_versions if current is not None else {}
                    events = uow.event_log.list_events(tenant_id, self.domain, period)

                    logger.info(f"Replaying {len(events)} events into {key}")
                    rebuilt = self.zero(tenant_id, period)
                    for event in events:
                        if cancel is not None and cancel.is_set():
                            logger.warning(f"Rebuild of {key} cancelled, stored model left unchanged")
                            return False
                        rebuilt = fold_history(rebuilt, [event], self.projection)
                    rebuilt.last_updated = self.clock()

                    if not uow.read_models.compare_and_set(rebuilt, expected):
                        logger.info(f"Read model {key} changed during rebuild, replaying again (attempt {attempt})")
                        continue

                    rebuilt.events.append(ReadModelUpdated(tenant_id=tenant_id, domain=self.domain, period=period))
                    uow.commit()

            except SQLAlchemyError as e:
                logger.error(f"Failed to rebuild read model {key}: {e}")
                raise PersistenceError(f"Could not rebuild read model {key}: {e}") from e

            logger.info(f"Rebuilt {key} from {len(events)} events")
            return True

        raise ConcurrentUpdateError(f"Read model {key} kept changing during rebuild")


def build_materializers(**kwargs) -> Dict[str, Materializer]:
    """One independent materializer per registered domain."""
    return {domain: Materializer(projection, **kwargs) for domain, projection in PROJECTIONS.items()}


MATERIALIZERS = build_materializers()  # type: Dict[str, Materializer]
