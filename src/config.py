"""Configuration settings for the ERP analytics read side."""

import os


def get_postgres_uri():
    """Get PostgreSQL connection URI from environment variables."""
    host = os.environ.get("DB_HOST", "localhost")
    port = 5433 if host == "localhost" else 5432
    password = os.environ.get("DB_PASSWORD", "analytics_pass")
    user = os.environ.get("DB_USER", "analytics_user")
    db_name = os.environ.get("DB_NAME", "analytics_db")
    return f"postgresql://{user}:{password}@{host}:{port}/{db_name}"


def get_redis_host_and_port():
    """Get Redis connection details from environment variables."""
    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", 6379))
    return dict(host=host, port=port)


def get_redis_url():
    """Get Redis URL from environment variables."""
    redis_config = get_redis_host_and_port()
    return f"redis://{redis_config['host']}:{redis_config['port']}"


def get_event_channel():
    """Redis channel carrying domain events from the business services."""
    return os.environ.get("EVENT_CHANNEL", "erp:domain-events")


def get_alert_channel():
    """Redis channel operator alerts are published to."""
    return os.environ.get("ALERT_CHANNEL", "analytics:alerts")


def get_dead_letter_key():
    """Redis list holding dead-lettered events."""
    return os.environ.get("DEAD_LETTER_KEY", "analytics:dead-letters")


def get_source_of_truth_url():
    """Get base URL of the business services' aggregate query API."""
    host = os.environ.get("SOURCE_API_HOST", "localhost")
    port = int(os.environ.get("SOURCE_API_PORT", 8000))
    return f"http://{host}:{port}"


def get_cache_ttl_seconds():
    """TTL of fresh analytics views in the cache."""
    return int(os.environ.get("CACHE_TTL_SECONDS", 300))


def get_circuit_breaker_config():
    """Circuit breaker around read-model store reads."""
    return dict(
        failure_threshold=int(os.environ.get("BREAKER_FAILURE_THRESHOLD", 5)),
        cooldown_seconds=float(os.environ.get("BREAKER_COOLDOWN_SECONDS", 60)),
    )


def get_query_timeouts():
    """Store read timeout and the (longer) direct-fallback query timeout."""
    return dict(
        store_timeout_seconds=float(os.environ.get("STORE_TIMEOUT_SECONDS", 2)),
        fallback_timeout_seconds=float(os.environ.get("FALLBACK_TIMEOUT_SECONDS", 10)),
    )


def get_query_pool_sizes():
    """Worker threads for store reads and, separately, for source fallbacks."""
    return dict(
        store_workers=int(os.environ.get("STORE_READ_WORKERS", 8)),
        fallback_workers=int(os.environ.get("FALLBACK_WORKERS", 8)),
    )


def get_source_of_truth_kind():
    """'http' queries the business services; 'event_log' folds the local event log."""
    value = os.environ.get("SOURCE_OF_TRUTH", "http").lower()
    if value not in ("http", "event_log"):
        raise ValueError(f"Unsupported source of truth: {value}")
    return value


def get_router_retry_config():
    """Bounded exponential backoff for router and worker retries."""
    return dict(
        max_attempts=int(os.environ.get("ROUTER_MAX_ATTEMPTS", 5)),
        backoff_multiplier=float(os.environ.get("ROUTER_BACKOFF_MULTIPLIER", 0.5)),
        backoff_max_seconds=float(os.environ.get("ROUTER_BACKOFF_MAX_SECONDS", 30)),
    )


def get_worker_config():
    """Partition lanes per materializer domain."""
    return dict(
        partitions=int(os.environ.get("WORKER_PARTITIONS", 8)),
        queue_size=int(os.environ.get("WORKER_QUEUE_SIZE", 1000)),
        put_timeout_seconds=float(os.environ.get("WORKER_PUT_TIMEOUT_SECONDS", 1)),
    )


def get_reconcile_config():
    """Reconciliation cadence, tolerances and alert escalation."""
    return dict(
        interval_seconds=int(os.environ.get("RECONCILE_INTERVAL_SECONDS", 3600)),
        rate_tolerance=float(os.environ.get("RECONCILE_RATE_TOLERANCE", 1e-6)),
        severity_ratio=float(os.environ.get("RECONCILE_SEVERITY_RATIO", 0.1)),
        severity_repeats=int(os.environ.get("RECONCILE_SEVERITY_REPEATS", 3)),
    )


def get_period_granularity(domain: str):
    """Read-model period granularity for a domain: 'month' or 'quarter'."""
    value = os.environ.get(f"PERIOD_GRANULARITY_{domain.upper()}", "month").lower()
    if value not in ("month", "quarter"):
        raise ValueError(f"Unsupported period granularity for {domain}: {value}")
    return value


def get_api_url():
    """Get analytics API URL from environment variables."""
    host = os.environ.get("API_HOST", "localhost")
    port = int(os.environ.get("API_PORT", 8001))
    return f"http://{host}:{port}"
