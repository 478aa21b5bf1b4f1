"""Redis adapter for publishing domain events and alerts."""

import json
import logging
from datetime import datetime
from typing import Any, Dict

import redis

from config import get_redis_host_and_port, get_event_channel
from analytics.domain.model import DomainEvent

logger = logging.getLogger(__name__)

_client = None


def get_client():
    global _client
    if _client is None:
        _client = redis.Redis(**get_redis_host_and_port())
    return _client


def _serialize(data: Dict[str, Any]) -> str:
    """Serialize a mapping to JSON, handling datetime objects."""
    return json.dumps(
        {key: value.isoformat() if isinstance(value, datetime) else value for key, value in data.items()}
    )


def publish(channel: str, data: Dict[str, Any], client=None):
    """Publish a JSON message to a Redis channel."""
    logger.info("publishing: channel=%s, message=%s", channel, data)
    (client or get_client()).publish(channel, _serialize(data))


def publish_domain_event(event: DomainEvent, channel: str = None, client=None):
    """Publish a domain event the way business services put it on the bus."""
    publish(channel or get_event_channel(), event.to_dict(), client=client)
