"""Periodic reconciliation sweep over every known tenant/domain."""

import argparse
import logging
import threading

from sqlalchemy import create_engine

import config
from analytics.adapters import orm
from analytics.adapters.alerts import RedisAlertPublisher
from analytics.adapters.cache import RedisViewCache
from analytics.adapters.redis_adapter import get_client
from analytics.adapters.source_of_truth import build_source_of_truth
from analytics.service_layer import reconciliation
from analytics.service_layer.unit_of_work import SqlAlchemyUnitOfWork

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run(uow_factory, interval_seconds: float, once: bool = False, stop: threading.Event = None):
    """Sweep, then sleep interval_seconds until stop is set."""
    stop = stop or threading.Event()
    while True:
        reports = reconciliation.sweep(uow_factory)
        drifted = [r for r in reports if not r.consistent]
        logger.info(f"Reconciliation sweep: {len(reports)} checked, {len(drifted)} with discrepancies")
        if once or stop.wait(interval_seconds):
            return reports


def main(argv=None):
    parser = argparse.ArgumentParser(description="Reconcile analytics read models against source data")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    parser.add_argument("--interval", type=float, default=None, help="seconds between sweeps")
    args = parser.parse_args(argv)

    engine = create_engine(config.get_postgres_uri())
    orm.create_tables(engine)

    cache = RedisViewCache(get_client())
    alerts = RedisAlertPublisher(get_client())
    source = build_source_of_truth()
    interval = args.interval or config.get_reconcile_config()["interval_seconds"]

    logger.info(f"Reconciliation scheduler starting (interval={interval}s, once={args.once})")
    run(lambda: SqlAlchemyUnitOfWork(source=source, cache=cache, alerts=alerts), interval, once=args.once)


if __name__ == "__main__":
    main()
