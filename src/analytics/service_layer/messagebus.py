# pylint: disable=broad-except
"""Message bus for the analytics read side following Cosmic Python pattern."""

from __future__ import annotations
import logging
from typing import List, Dict, Callable, Type, Union, TYPE_CHECKING

from shared.domain.commands import Command, Event
from analytics.domain import commands, events
from analytics.service_layer import handlers

if TYPE_CHECKING:
    from analytics.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)

Message = Union[Command, Event]


def handle(
    message: Message,
    uow: AbstractUnitOfWork,
):
    """Handle message (command or event) and every internal event it raises."""
    results = []
    queue = [message]

    while queue:
        message = queue.pop(0)

        if isinstance(message, Event):
            handle_event(message, queue, uow)
        elif isinstance(message, Command):
            cmd_result = handle_command(message, queue, uow)
            results.append(cmd_result)
        else:
            raise Exception(f"{message} was not an Event or Command")

    return results


def handle_event(
    event: Event,
    queue: List[Message],
    uow: AbstractUnitOfWork,
):
    for handler in EVENT_HANDLERS[type(event)]:
        try:
            logger.debug(f"handling event {event} with handler {handler}")
            handler(event, uow=uow)
            queue.extend(uow.collect_new_events())
        except Exception:
            logger.exception("Exception handling event %s", event)
            continue


def handle_command(
    command: Command,
    queue: List[Message],
    uow: AbstractUnitOfWork,
):
    logger.debug(f"handling command {command}")
    try:
        handler = COMMAND_HANDLERS[type(command)]
        result = handler(command, uow=uow)
        queue.extend(uow.collect_new_events())
        return result
    except Exception:
        logger.exception("Exception handling command %s", command)
        raise


EVENT_HANDLERS = {
    events.ReadModelUpdated: [handlers.invalidate_cached_view],
    events.DiscrepancyDetected: [handlers.log_discrepancy],
    events.ConsistencyAlertRaised: [handlers.raise_alert],
}  # type: Dict[Type[Event], List[Callable]]

COMMAND_HANDLERS = {
    commands.ApplyDomainEvent: handlers.apply_domain_event,
    commands.ReconcileReadModel: handlers.reconcile_read_model,
}  # type: Dict[Type[Command], Callable]
