"""Commands for the analytics read side."""

from dataclasses import dataclass
from typing import Optional

from shared.domain.commands import Command
from analytics.domain.model import DomainEvent


@dataclass
class ApplyDomainEvent(Command):
    """Fold a routed domain event into its domain's read model."""
    event: DomainEvent
    domain: str


@dataclass
class ReconcileReadModel(Command):
    """Compare read models against source-of-truth data and repair drift."""
    tenant_id: str
    domain: str
    period: Optional[str] = None  # None checks every known period
