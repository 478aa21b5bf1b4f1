"""Operator alert sinks."""

import abc
import logging

import redis

import config
from analytics.adapters import redis_adapter
from analytics.domain.model import Alert

logger = logging.getLogger(__name__)


class AbstractAlertSink(abc.ABC):
    @abc.abstractmethod
    def send(self, alert: Alert) -> None:
        raise NotImplementedError


class LoggingAlertSink(AbstractAlertSink):
    def send(self, alert):
        log = logger.error if alert.severity == "critical" else logger.warning
        log(f"ALERT [{alert.kind}/{alert.severity}] {alert.message} tenant={alert.tenant_id} domain={alert.domain} details={alert.details}")


class RedisAlertPublisher(AbstractAlertSink):
    """Publishes alerts on a Redis channel for the notification service."""

    def __init__(self, client=None, channel: str = None):
        self.client = client
        self.channel = channel or config.get_alert_channel()

    def send(self, alert):
        try:
            redis_adapter.publish(self.channel, alert.to_dict(), client=self.client)
        except redis.RedisError as e:
            logger.error(f"Failed to publish alert {alert.kind}: {e}")
            LoggingAlertSink().send(alert)
