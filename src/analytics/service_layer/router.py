"""Event ingestion router: validate raw bus messages and hand them to materializers."""

import json
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

from analytics.adapters.alerts import AbstractAlertSink
from analytics.adapters.dead_letters import AbstractDeadLetterSink
from analytics.adapters.schemas import RawDomainEvent
from analytics.domain.exceptions import MalformedEventError, TransientDeliveryError
from analytics.domain.model import (
    Alert,
    DeadLetterEntry,
    DomainEvent,
    RouteResult,
    RouteStatus,
    utcnow,
)
from analytics.service_layer.dispatch import build_retrying

logger = logging.getLogger(__name__)

Target = Callable[[DomainEvent], Any]


def _raw_text(raw) -> str:
    if isinstance(raw, bytes):
        return raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        return raw
    try:
        return json.dumps(raw, default=str)
    except (TypeError, ValueError):
        return repr(raw)


def deserialize(raw, received_at=None) -> DomainEvent:
    """
    Turn a raw bus message (bytes, str or mapping) into a DomainEvent.

    Raises:
        MalformedEventError: If it is not JSON or required fields are missing/invalid
    """
    data = raw
    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        if isinstance(data, str):
            data = json.loads(data)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedEventError(f"Event is not valid JSON: {e}", raw=raw) from e

    if not isinstance(data, Mapping):
        raise MalformedEventError(f"Event must be a JSON object, got {type(data).__name__}", raw=raw)

    try:
        parsed = RawDomainEvent.model_validate(dict(data))
    except ValidationError as e:
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in e.errors())
        raise MalformedEventError(f"Invalid or missing fields: {fields}", raw=raw) from e

    return parsed.to_domain_event(received_at or utcnow())


class EventRouter:
    """
    Routes events by event_type prefix.

    The prefix table is fixed at construction: {"crm.": crm_target, ...}.
    Targets are callables accepting a DomainEvent, normally the partitioned
    dispatcher of one materializer domain.
    """

    def __init__(
        self,
        routes: Dict[str, Target],
        dead_letters: AbstractDeadLetterSink,
        alerts: AbstractAlertSink,
        max_attempts: Optional[int] = None,
        backoff_multiplier: Optional[float] = None,
        backoff_max_seconds: Optional[float] = None,
    ):
        self.routes = {prefix if prefix.endswith(".") else f"{prefix}.": target for prefix, target in routes.items()}
        self.dead_letters = dead_letters
        self.alerts = alerts
        self.max_attempts = max_attempts
        self.backoff_multiplier = backoff_multiplier
        self.backoff_max_seconds = backoff_max_seconds

    def resolve(self, event_type: str) -> List[str]:
        """Registered prefixes matching an event type."""
        return sorted(prefix for prefix in self.routes if event_type.startswith(prefix))

    def route(self, raw) -> RouteResult:
        """
        Validate a raw event and deliver it to every matching target.

        Raises:
            MalformedEventError: After the raw event was dead-lettered
        """
        try:
            event = deserialize(raw)
        except MalformedEventError as e:
            logger.error(f"Malformed event dead-lettered: {e}")
            self.dead_letters.push(
                DeadLetterEntry(
                    event_id=raw.get("event_id") if isinstance(raw, Mapping) else None,
                    raw=_raw_text(raw),
                    reason=str(e),
                    error_type=type(e).__name__,
                )
            )
            raise

        targets = self.resolve(event.event_type)
        if not targets:
            logger.info(f"No materializer for {event.event_type}, dropping {event.event_id}")
            return RouteResult(RouteStatus.DROPPED, event=event, reason=f"no route for {event.event_type}")

        delivered, failed = [], []
        for prefix in targets:
            if self._deliver(prefix, event):
                delivered.append(prefix)
            else:
                failed.append(prefix)

        if failed:
            return RouteResult(
                RouteStatus.DEAD_LETTERED,
                event=event,
                targets=delivered,
                failed_targets=failed,
                reason="delivery failed",
            )
        logger.debug(f"Routed {event.event_id} to {delivered}")
        return RouteResult(RouteStatus.DELIVERED, event=event, targets=delivered)

    def _deliver(self, prefix: str, event: DomainEvent) -> bool:
        retrying = build_retrying(
            TransientDeliveryError,
            max_attempts=self.max_attempts,
            backoff_multiplier=self.backoff_multiplier,
            backoff_max_seconds=self.backoff_max_seconds,
        )
        try:
            retrying(self.routes[prefix], event)
            return True
        except Exception as e:
            attempts = retrying.statistics.get("attempt_number", 1)
            logger.error(f"Delivery of {event.event_id} to {prefix} failed after {attempts} attempts: {e}")
            self.dead_letter(event, e, attempts, target=prefix)
            return False

    def dead_letter(self, event: DomainEvent, error: Exception, attempts: int, target: Optional[str] = None):
        dead_letter_event(self.dead_letters, self.alerts, event, error, attempts, target=target)


def dead_letter_event(
    dead_letters: AbstractDeadLetterSink,
    alerts: AbstractAlertSink,
    event: DomainEvent,
    error: Exception,
    attempts: int,
    target: Optional[str] = None,
):
    """Park an event that exhausted its retries and tell an operator."""
    dead_letters.push(
        DeadLetterEntry(
            event_id=event.event_id,
            raw=json.dumps(event.to_dict()),
            reason=str(error),
            error_type=type(error).__name__,
            attempts=attempts,
            target=target,
        )
    )
    alerts.send(
        Alert(
            kind="dead_letter",
            severity="critical",
            message=f"Event {event.event_id} ({event.event_type}) dead-lettered after {attempts} attempts",
            tenant_id=event.tenant_id,
            domain=event.domain,
            details={"target": target, "error": str(error)},
        )
    )
