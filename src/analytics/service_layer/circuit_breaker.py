"""Thread-safe holder for the read-model store's circuit breaker state."""
import logging
import threading
import time
from typing import Callable, Optional

import config
from analytics.domain import circuit_breaker as fsm
from analytics.domain.circuit_breaker import BreakerPolicy, BreakerState, BreakerStatus

logger = logging.getLogger(__name__)


class CircuitBreaker:
    def __init__(
        self,
        name: str = "read-model-store",
        policy: Optional[BreakerPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if policy is None:
            policy = BreakerPolicy(**config.get_circuit_breaker_config())
        self.name = name
        self.policy = policy
        self.clock = clock
        self._state = BreakerState()
        self._lock = threading.Lock()

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def status(self) -> BreakerStatus:
        return self._state.status

    def allow(self) -> bool:
        """Whether the next call may go to the store. Admits one trial when half-open."""
        with self._lock:
            previous = self._state.status
            self._state, allowed = fsm.before_call(self._state, self.clock(), self.policy)
            if previous != self._state.status:
                logger.info(f"Circuit breaker {self.name} {previous.value} -> {self._state.status.value}")
            return allowed

    def record_success(self):
        with self._lock:
            previous = self._state.status
            self._state = fsm.record_success(self._state)
            if previous != BreakerStatus.CLOSED:
                logger.info(f"Circuit breaker {self.name} closed")

    def record_failure(self):
        with self._lock:
            previous = self._state.status
            self._state = fsm.record_failure(self._state, self.clock(), self.policy)
            if self._state.status == BreakerStatus.OPEN and previous != BreakerStatus.OPEN:
                logger.error(
                    f"Circuit breaker {self.name} opened after {self._state.consecutive_failures} failures"
                )
            else:
                logger.warning(
                    f"Circuit breaker {self.name} failure {self._state.consecutive_failures}"
                    f"/{self.policy.failure_threshold}"
                )
