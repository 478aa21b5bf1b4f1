"""Dead-letter sink for events the pipeline gave up on."""

import abc
import json
import logging
from datetime import datetime
from typing import List

import redis

import config
from analytics.domain.model import DeadLetterEntry

logger = logging.getLogger(__name__)


class AbstractDeadLetterSink(abc.ABC):
    @abc.abstractmethod
    def push(self, entry: DeadLetterEntry) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def list(self, limit: int = 100) -> List[DeadLetterEntry]:
        """Oldest first."""
        raise NotImplementedError


class RedisDeadLetterSink(AbstractDeadLetterSink):
    def __init__(self, client=None, key: str = None):
        self.client = client or redis.Redis(**config.get_redis_host_and_port())
        self.key = key or config.get_dead_letter_key()

    def push(self, entry):
        logger.warning(f"Dead-lettering event {entry.event_id}: {entry.reason}")
        self.client.rpush(self.key, json.dumps(entry.to_dict()))

    def list(self, limit=100):
        entries = []
        for raw in self.client.lrange(self.key, 0, limit - 1):
            data = json.loads(raw)
            data["failed_at"] = datetime.fromisoformat(data["failed_at"])
            entries.append(DeadLetterEntry(**data))
        return entries
