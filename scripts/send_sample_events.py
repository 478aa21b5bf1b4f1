#!/usr/bin/env python3
"""
Publish sample ERP domain events to the event bus.

Usage:
    # Publish the acme-corp lead lifecycle once
    python scripts/send_sample_events.py

    # Publish events one by one with intervals, for another tenant
    python scripts/send_sample_events.py --tenant globex --interval 2

    # Also publish a malformed event to exercise the dead-letter path
    python scripts/send_sample_events.py --malformed
"""

import argparse
import json
import time
import uuid
from datetime import datetime, timezone

import redis

import config
from analytics.adapters.redis_adapter import publish_domain_event
from analytics.domain.model import DomainEvent


def sample_events(tenant_id: str):
    """A small cross-domain history for one tenant."""
    now = datetime.now(timezone.utc)
    lead_id = f"lead-{uuid.uuid4().hex[:8]}"
    invoice_id = f"inv-{uuid.uuid4().hex[:8]}"
    employee_id = f"emp-{uuid.uuid4().hex[:8]}"

    def event(event_type, aggregate_id, version, payload):
        return DomainEvent(
            event_id=str(uuid.uuid4()),
            tenant_id=tenant_id,
            event_type=event_type,
            event_version=version,
            aggregate_id=aggregate_id,
            aggregate_type=event_type.split(".")[1],
            source_service=f"{event_type.split('.')[0]}-service",
            payload=payload,
            occurred_at=now,
        )

    return [
        event("crm.lead.created", lead_id, 1, {"value": 5000}),
        event("crm.lead.converted", lead_id, 2, {}),
        event("hrm.employee.hired", employee_id, 1, {"department": "sales"}),
        event("finance.invoice.issued", invoice_id, 1, {"amount": 1200.0}),
        event("finance.invoice.paid", invoice_id, 2, {"amount": 1200.0}),
    ]


def health_check(client) -> bool:
    """Check if Redis is available."""
    try:
        client.ping()
        print(f"Redis reachable at {config.get_redis_url()}")
        return True
    except redis.RedisError as e:
        print(f"Cannot reach Redis at {config.get_redis_url()}: {e}")
        return False


def main():
    parser = argparse.ArgumentParser(description="Publish sample ERP domain events to the event bus")
    parser.add_argument("--tenant", type=str, default="acme-corp", help="Tenant id (default: acme-corp)")
    parser.add_argument(
        "--interval",
        type=float,
        default=0,
        help="Interval in seconds between events (default: 0 - send all at once)"
    )
    parser.add_argument("--malformed", action="store_true", help="Also publish an event without tenant_id")
    args = parser.parse_args()

    client = redis.Redis(**config.get_redis_host_and_port())
    if not health_check(client):
        print("\nRedis not available. Make sure services are running:")
        print("   docker-compose up -d")
        return

    events = sample_events(args.tenant)
    for i, event in enumerate(events):
        publish_domain_event(event, client=client)
        print(f"Published {event.event_type} {event.event_id}")
        if args.interval > 0 and i < len(events) - 1:
            time.sleep(args.interval)

    if args.malformed:
        client.publish(config.get_event_channel(), json.dumps({"event_id": str(uuid.uuid4()), "event_type": "crm.lead.created"}))
        print("Published malformed event")

    print(f"\nPublished {len(events)} events on '{config.get_event_channel()}'")


if __name__ == "__main__":
    main()
