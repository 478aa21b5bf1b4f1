"""Redis event consumer - routes ERP domain events to the read-model materializers."""

import functools
import logging
from typing import Callable, Dict

import redis
from sqlalchemy import create_engine

import config
from analytics.adapters import orm
from analytics.adapters.alerts import AbstractAlertSink, RedisAlertPublisher
from analytics.adapters.cache import RedisViewCache
from analytics.adapters.dead_letters import AbstractDeadLetterSink, RedisDeadLetterSink
from analytics.adapters.source_of_truth import build_source_of_truth
from analytics.domain import commands
from analytics.domain.exceptions import MalformedEventError
from analytics.service_layer import messagebus
from analytics.service_layer.dispatch import PartitionedDispatcher
from analytics.service_layer.materializer import MATERIALIZERS
from analytics.service_layer.router import EventRouter, dead_letter_event
from analytics.service_layer.unit_of_work import AbstractUnitOfWork, SqlAlchemyUnitOfWork

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

r = redis.Redis(**config.get_redis_host_and_port())


def build_dispatchers(
    uow_factory: Callable[[], AbstractUnitOfWork],
    dead_letters: AbstractDeadLetterSink,
    alerts: AbstractAlertSink,
    **dispatcher_kwargs,
) -> Dict[str, PartitionedDispatcher]:
    """One independent consumer group per materializer domain."""
    dispatchers = {}
    for domain in MATERIALIZERS:

        def apply(event, domain=domain):
            return messagebus.handle(commands.ApplyDomainEvent(event=event, domain=domain), uow_factory())

        dispatchers[domain] = PartitionedDispatcher(
            name=f"{domain}-materializer",
            handler=apply,
            on_failure=functools.partial(dead_letter_event, dead_letters, alerts, target=f"{domain}."),
            **dispatcher_kwargs,
        )
    return dispatchers


def build_router(dispatchers: Dict[str, PartitionedDispatcher], dead_letters, alerts) -> EventRouter:
    return EventRouter(
        routes={f"{domain}.": dispatcher for domain, dispatcher in dispatchers.items()},
        dead_letters=dead_letters,
        alerts=alerts,
    )


def main():
    """Main entry point for Redis event consumer."""
    logger.info("Analytics Redis pubsub consumer starting")

    engine = create_engine(config.get_postgres_uri())
    orm.create_tables(engine)
    logger.info("Database tables created")

    dead_letters = RedisDeadLetterSink(r)
    alerts = RedisAlertPublisher(r)
    cache = RedisViewCache(r)
    source = build_source_of_truth()
    dispatchers = build_dispatchers(
        lambda: SqlAlchemyUnitOfWork(source=source, cache=cache, alerts=alerts), dead_letters, alerts
    )
    for dispatcher in dispatchers.values():
        dispatcher.start()
    router = build_router(dispatchers, dead_letters, alerts)

    channel = config.get_event_channel()
    pubsub = r.pubsub(ignore_subscribe_messages=True)
    pubsub.subscribe(channel)

    logger.info(f"Subscribed to '{channel}' channel, waiting for messages...")

    try:
        for m in pubsub.listen():
            handle_domain_event(m, router)
    finally:
        for dispatcher in dispatchers.values():
            dispatcher.stop()


def handle_domain_event(m, router: EventRouter):
    """
    Handle one domain event message from Redis.

    The message is acknowledged in every case: malformed events and events
    that exhausted their retries end up in the dead-letter list.

    Args:
        m: Redis message dictionary
        router: Router holding the per-domain dispatchers
    """
    logger.debug("Received message: %s", m)

    try:
        result = router.route(m["data"])
        logger.info(f"Event {result.event.event_id} {result.status.value} {result.targets}")
        return result

    except MalformedEventError as e:
        logger.warning(f"Rejected malformed event: {e}")
    except Exception as e:
        logger.error(f"Error routing domain event: {e}", exc_info=True)


if __name__ == "__main__":
    main()
