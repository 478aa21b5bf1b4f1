"""Internal events raised by the analytics read side."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from shared.domain.commands import Event


@dataclass
class ReadModelUpdated(Event):
    """Raised after a materializer persisted a new read-model state."""
    tenant_id: str
    domain: str
    period: str
    event_id: Optional[str] = None  # None for a rebuild


@dataclass
class DiscrepancyDetected(Event):
    """Raised when reconciliation found read-model drift."""
    tenant_id: str
    domain: str
    periods: List[str]
    discrepancy_count: int
    severe: bool


@dataclass
class ConsistencyAlertRaised(Event):
    """Raised when drift could not be repaired or keeps coming back."""
    tenant_id: str
    domain: str
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)
