import logging
from sqlalchemy import (
    Table,
    MetaData,
    Column,
    Integer,
    String,
    Text,
    Boolean,
    DateTime,
    JSON,
    Index,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

# Read models are written with explicit compare-and-set statements, so they are
# kept as plain tables instead of mapped entities.
read_models = Table(
    "read_models",
    metadata,
    Column("tenant_id", String(255), primary_key=True),
    Column("domain", String(64), primary_key=True),
    Column("period", String(16), primary_key=True),
    Column("metrics", JSON, nullable=False),
    Column("lookups", JSON, nullable=False),
    # canonical JSON (sorted keys) so equality can be checked in the WHERE clause
    Column("source_event_versions", Text, nullable=False, server_default="{}"),
    Column("last_updated", DateTime(timezone=True)),
)

event_log = Table(
    "event_log",
    metadata,
    Column("event_id", String(255), primary_key=True),
    Column("tenant_id", String(255), nullable=False),
    Column("domain", String(64), nullable=False),
    Column("period", String(16), nullable=False),
    Column("event_type", String(255), nullable=False),
    Column("event_version", Integer, nullable=False),
    Column("aggregate_id", String(255), nullable=False),
    Column("aggregate_type", String(255)),
    Column("source_service", String(255)),
    Column("payload", JSON, nullable=False),
    Column("occurred_at", DateTime(timezone=True), nullable=False),
    Column("correlation_id", String(255)),
    Column("causation_id", String(255)),
    Column("recorded_at", DateTime(timezone=True), nullable=False),
)

Index("ix_event_log_key", event_log.c.tenant_id, event_log.c.domain, event_log.c.period)

consistency_reports = Table(
    "consistency_reports",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String(255), nullable=False),
    Column("domain", String(64), nullable=False),
    Column("checked_at", DateTime(timezone=True), nullable=False),
    Column("periods_checked", JSON, nullable=False),
    Column("discrepancies", JSON, nullable=False),
    Column("action_taken", String(32), nullable=False),
    Column("severe", Boolean, nullable=False, default=False),
)

Index("ix_consistency_reports_key", consistency_reports.c.tenant_id, consistency_reports.c.domain)


def create_tables(engine):
    logger.info("Creating analytics tables")
    metadata.create_all(engine)
