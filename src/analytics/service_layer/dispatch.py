"""
Partitioned hand-off from the router to a materializer.

Every (tenant_id, aggregate_id) hashes to one lane; a lane is a FIFO drained
by a single worker thread. Events of one aggregate are therefore applied in
the order they were routed, while different aggregates proceed in parallel.
"""
import logging
import queue
import threading
import zlib
from typing import Any, Callable, List, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

import config
from analytics.domain.exceptions import (
    ConcurrentUpdateError,
    PersistenceError,
    TransientDeliveryError,
)
from analytics.domain.model import DomainEvent

logger = logging.getLogger(__name__)

_STOP = object()


def build_retrying(retry_on, max_attempts=None, backoff_multiplier=None, backoff_max_seconds=None) -> Retrying:
    """Bounded exponential backoff, defaults from config."""
    defaults = config.get_router_retry_config()
    return Retrying(
        stop=stop_after_attempt(max_attempts or defaults["max_attempts"]),
        wait=wait_exponential(
            multiplier=defaults["backoff_multiplier"] if backoff_multiplier is None else backoff_multiplier,
            max=backoff_max_seconds or defaults["backoff_max_seconds"],
        ),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def partition_of(event: DomainEvent, partitions: int) -> int:
    return zlib.crc32(event.partition_key.encode("utf-8")) % partitions


class PartitionedDispatcher:
    """Consumer group of one materializer domain."""

    def __init__(
        self,
        name: str,
        handler: Callable[[DomainEvent], Any],
        partitions: Optional[int] = None,
        queue_size: Optional[int] = None,
        put_timeout: Optional[float] = None,
        on_failure: Optional[Callable[[DomainEvent, Exception, int], None]] = None,
        max_attempts: Optional[int] = None,
        backoff_multiplier: Optional[float] = None,
    ):
        worker_config = config.get_worker_config()
        self.name = name
        self.handler = handler
        self.put_timeout = worker_config["put_timeout_seconds"] if put_timeout is None else put_timeout
        self.on_failure = on_failure
        self.max_attempts = max_attempts or config.get_router_retry_config()["max_attempts"]
        self.backoff_multiplier = backoff_multiplier
        self._lanes = [
            queue.Queue(maxsize=queue_size or worker_config["queue_size"])
            for _ in range(partitions or worker_config["partitions"])
        ]  # type: List[queue.Queue]
        self._threads = []  # type: List[threading.Thread]
        self._lock = threading.Lock()

    @property
    def partitions(self) -> int:
        return len(self._lanes)

    def start(self):
        with self._lock:
            if self._threads:
                return
            for index, lane in enumerate(self._lanes):
                thread = threading.Thread(
                    target=self._run,
                    args=(lane,),
                    name=f"{self.name}-lane-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        logger.info(f"Started {self.partitions} lanes for {self.name}")

    def submit(self, event: DomainEvent):
        """
        Queue an event on its aggregate's lane.

        Raises:
            TransientDeliveryError: If the lane stays full for put_timeout
        """
        if not self._threads:
            self.start()
        lane = self._lanes[partition_of(event, self.partitions)]
        try:
            lane.put(event, timeout=self.put_timeout)
        except queue.Full as e:
            raise TransientDeliveryError(f"{self.name} lane full, could not queue {event.event_id}") from e

    __call__ = submit

    def join(self):
        """Block until every queued event was processed."""
        for lane in self._lanes:
            lane.join()

    def stop(self):
        for lane in self._lanes:
            lane.put(_STOP)
        for thread in self._threads:
            thread.join()
        self._threads = []
        logger.info(f"Stopped lanes for {self.name}")

    def _run(self, lane: queue.Queue):
        while True:
            item = lane.get()
            try:
                if item is _STOP:
                    return
                self._process(item)
            finally:
                lane.task_done()

    def _process(self, event: DomainEvent):
        retrying = build_retrying(
            (PersistenceError, ConcurrentUpdateError),
            max_attempts=self.max_attempts,
            backoff_multiplier=self.backoff_multiplier,
        )
        try:
            retrying(self.handler, event)
        except Exception as e:
            logger.exception(f"{self.name} failed to materialize {event.event_id}")
            if self.on_failure is None:
                return
            try:
                self.on_failure(event, e, retrying.statistics.get("attempt_number", 1))
            except Exception:
                logger.exception(f"{self.name} could not dead-letter {event.event_id}")
