"""
Circuit breaker as an explicit state machine.

State is plain frozen data; transitions are pure functions of
(current state, outcome, now). The service layer owns the single mutable
reference and the clock.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple


class BreakerStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerPolicy:
    failure_threshold: int = 5
    cooldown_seconds: float = 60.0


@dataclass(frozen=True)
class BreakerState:
    status: BreakerStatus = BreakerStatus.CLOSED
    consecutive_failures: int = 0
    opened_at: Optional[float] = None
    trial_in_flight: bool = False


def before_call(state: BreakerState, now: float, policy: BreakerPolicy) -> Tuple[BreakerState, bool]:
    """
    Decide whether a call may reach the protected dependency.

    Returns the (possibly transitioned) state and whether the call is allowed.
    An open breaker whose cooldown elapsed moves to half-open and lets exactly
    one trial call through; other callers keep bypassing until it resolves.
    """
    if state.status == BreakerStatus.CLOSED:
        return state, True

    if state.status == BreakerStatus.OPEN:
        if state.opened_at is not None and now - state.opened_at >= policy.cooldown_seconds:
            return replace(state, status=BreakerStatus.HALF_OPEN, trial_in_flight=True), True
        return state, False

    # half-open
    if state.trial_in_flight:
        return state, False
    return replace(state, trial_in_flight=True), True


def record_success(state: BreakerState) -> BreakerState:
    return BreakerState()


def record_failure(state: BreakerState, now: float, policy: BreakerPolicy) -> BreakerState:
    if state.status == BreakerStatus.HALF_OPEN:
        return BreakerState(
            status=BreakerStatus.OPEN,
            consecutive_failures=state.consecutive_failures + 1,
            opened_at=now,
        )

    failures = state.consecutive_failures + 1
    if failures >= policy.failure_threshold:
        return BreakerState(status=BreakerStatus.OPEN, consecutive_failures=failures, opened_at=now)
    return replace(state, consecutive_failures=failures)
