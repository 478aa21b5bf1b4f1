"""Wire schema for domain events arriving from the bus."""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from analytics.domain.model import DomainEvent, as_utc


class RawDomainEvent(BaseModel):
    """JSON shape published by business services."""
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    event_id: str = Field(min_length=1)
    tenant_id: str = Field(min_length=1)
    event_type: str
    event_version: int = Field(ge=1)
    aggregate_id: Optional[str] = None
    aggregate_type: Optional[str] = None
    source_service: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    occurred_at: Optional[datetime] = None
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None

    @field_validator("event_type")
    @classmethod
    def check_event_type(cls, value: str) -> str:
        segments = value.split(".")
        if len(segments) < 3 or not all(segments):
            raise ValueError("event_type must look like domain.entity.action")
        return value.lower()

    def to_domain_event(self, received_at: datetime) -> DomainEvent:
        return DomainEvent(
            event_id=self.event_id,
            tenant_id=self.tenant_id,
            event_type=self.event_type,
            event_version=self.event_version,
            aggregate_id=self.aggregate_id or self.event_id,
            aggregate_type=self.aggregate_type or "",
            source_service=self.source_service or "",
            payload=dict(self.payload or {}),
            occurred_at=as_utc(self.occurred_at) if self.occurred_at else received_at,
            correlation_id=self.correlation_id,
            causation_id=self.causation_id,
        )
