"""Redis cache for analytics views."""

import abc
import json
import logging
from typing import Optional

import redis

import config
from analytics.domain.model import ReadModelView

logger = logging.getLogger(__name__)


def fresh_key(tenant_id: str, domain: str, period: str) -> str:
    return f"analytics:view:{tenant_id}:{domain}:{period}"


def last_known_key(tenant_id: str, domain: str, period: str) -> str:
    return f"analytics:last-known:{tenant_id}:{domain}:{period}"


class AbstractViewCache(abc.ABC):
    """
    Two entries per key: a fresh one that expires after the TTL and a
    last-known one without expiry that backs stale reads during outages.
    """

    @abc.abstractmethod
    def get(self, tenant_id: str, domain: str, period: str) -> Optional[ReadModelView]:
        raise NotImplementedError

    @abc.abstractmethod
    def get_last_known(self, tenant_id: str, domain: str, period: str) -> Optional[ReadModelView]:
        raise NotImplementedError

    @abc.abstractmethod
    def set(self, view: ReadModelView) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def invalidate(self, tenant_id: str, domain: str, period: str) -> None:
        """Drop the fresh entry; the last-known entry stays for stale reads."""
        raise NotImplementedError


class RedisViewCache(AbstractViewCache):
    def __init__(self, client=None, ttl_seconds: Optional[int] = None):
        self.client = client or redis.Redis(**config.get_redis_host_and_port())
        self.ttl_seconds = ttl_seconds or config.get_cache_ttl_seconds()

    def _load(self, key: str) -> Optional[ReadModelView]:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if raw is None:
            return None
        return ReadModelView.from_dict(json.loads(raw))

    def get(self, tenant_id, domain, period):
        return self._load(fresh_key(tenant_id, domain, period))

    def get_last_known(self, tenant_id, domain, period):
        return self._load(last_known_key(tenant_id, domain, period))

    def set(self, view):
        data = view.to_dict()
        data["stale"] = False
        message = json.dumps(data)
        try:
            pipe = self.client.pipeline()
            pipe.setex(fresh_key(view.tenant_id, view.domain, view.period), self.ttl_seconds, message)
            pipe.set(last_known_key(view.tenant_id, view.domain, view.period), message)
            pipe.execute()
        except redis.RedisError as e:
            logger.warning(f"Cache write failed for {view.tenant_id}/{view.domain}/{view.period}: {e}")

    def invalidate(self, tenant_id, domain, period):
        try:
            self.client.delete(fresh_key(tenant_id, domain, period))
        except redis.RedisError as e:
            logger.warning(f"Cache invalidation failed for {tenant_id}/{domain}/{period}: {e}")
