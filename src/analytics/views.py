"""
Views for read operations - separate from the event-driven write path.

The query service answers from the view cache or the read-model store and
degrades gracefully when the store is slow or down: the circuit breaker stops
calling a failing store, and reads fall back to the last known cached view
(flagged stale) or to a direct source-of-truth aggregation.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, Dict, Optional

import config
from analytics.adapters.cache import AbstractViewCache
from analytics.adapters.source_of_truth import AbstractSourceOfTruth
from analytics.domain.exceptions import (
    DegradedResultError,
    NotFoundError,
    StoreUnavailableError,
)
from analytics.domain.model import ReadModel, ReadModelView
from analytics.service_layer.circuit_breaker import CircuitBreaker
from analytics.service_layer.materializer import MATERIALIZERS, Materializer
from analytics.service_layer.unit_of_work import AbstractUnitOfWork

logger = logging.getLogger(__name__)


class QueryService:
    def __init__(
        self,
        uow_factory: Callable[[], AbstractUnitOfWork],
        cache: Optional[AbstractViewCache] = None,
        breaker: Optional[CircuitBreaker] = None,
        store_timeout: Optional[float] = None,
        fallback_timeout: Optional[float] = None,
        store_executor: Optional[ThreadPoolExecutor] = None,
        fallback_executor: Optional[ThreadPoolExecutor] = None,
        materializers: Optional[Dict[str, Materializer]] = None,
        source: Optional[AbstractSourceOfTruth] = None,
    ):
        timeouts = config.get_query_timeouts()
        pools = config.get_query_pool_sizes()
        self.uow_factory = uow_factory
        self.cache = cache
        self.breaker = breaker or CircuitBreaker()
        self.store_timeout = store_timeout or timeouts["store_timeout_seconds"]
        self.fallback_timeout = fallback_timeout or timeouts["fallback_timeout_seconds"]
        # hung store reads keep their worker, so fallbacks get a pool of their own
        self.store_executor = store_executor or ThreadPoolExecutor(
            max_workers=pools["store_workers"], thread_name_prefix="analytics-store-read"
        )
        self.fallback_executor = fallback_executor or ThreadPoolExecutor(
            max_workers=pools["fallback_workers"], thread_name_prefix="analytics-fallback"
        )
        self.materializers = materializers or MATERIALIZERS
        self.source = source

    def get_analytics(self, tenant_id: str, domain: str, period: str) -> ReadModelView:
        """
        Get the metrics of one (tenant, domain, period).

        Returns:
            ReadModelView; served_from tells whether it came from the cache,
            the store, the last-known cache entry (stale=True) or the source

        Raises:
            NotFoundError: Unknown domain, or no read models for the tenant/domain
            DegradedResultError: Store unavailable and every fallback failed
        """
        if domain not in self.materializers:
            raise NotFoundError(f"Unknown analytics domain: {domain}")

        if self.cache is not None:
            cached = self.cache.get(tenant_id, domain, period)
            if cached is not None:
                cached.served_from = "cache"
                cached.stale = False
                return cached

        if self.breaker.allow():
            try:
                view = self._read_with_timeout(tenant_id, domain, period)
            except NotFoundError:
                self.breaker.record_success()
                raise
            except StoreUnavailableError as e:
                self.breaker.record_failure()
                logger.warning(f"Store read failed for {tenant_id}/{domain}/{period}: {e}")
            else:
                self.breaker.record_success()
                if self.cache is not None:
                    self.cache.set(view)
                return view
        else:
            logger.warning(f"Circuit open, not querying store for {tenant_id}/{domain}/{period}")

        return self._fallback(tenant_id, domain, period)

    def _read_with_timeout(self, tenant_id, domain, period) -> ReadModelView:
        future = self.store_executor.submit(self._read_store, tenant_id, domain, period)
        try:
            return future.result(timeout=self.store_timeout)
        except FutureTimeout as e:
            future.cancel()
            raise StoreUnavailableError(f"Store read timed out after {self.store_timeout}s") from e

    def _read_store(self, tenant_id, domain, period) -> ReadModelView:
        try:
            uow = self.uow_factory()
            with uow:
                model = uow.read_models.get((tenant_id, domain, period))
                if model is None:
                    if not uow.read_models.has_tenant_domain(tenant_id, domain):
                        raise NotFoundError(f"No {domain} analytics for tenant {tenant_id}")
                    model = self.materializers[domain].zero(tenant_id, period)
        except NotFoundError:
            raise
        except Exception as e:
            raise StoreUnavailableError(str(e)) from e
        return ReadModelView.from_read_model(model)

    def _fallback(self, tenant_id, domain, period) -> ReadModelView:
        if self.cache is not None:
            last_known = self.cache.get_last_known(tenant_id, domain, period)
            if last_known is not None:
                last_known.stale = True
                last_known.served_from = "stale_cache"
                logger.info(f"Serving last known view for {tenant_id}/{domain}/{period}")
                return last_known

        future = self.fallback_executor.submit(self._aggregate_from_source, tenant_id, domain, period)
        try:
            view = future.result(timeout=self.fallback_timeout)
        except FutureTimeout as e:
            future.cancel()
            logger.error(f"Source aggregation for {tenant_id}/{domain}/{period} timed out")
            raise DegradedResultError("data temporarily unavailable") from e
        except Exception as e:
            logger.error(f"Source aggregation for {tenant_id}/{domain}/{period} failed: {e}")
            raise DegradedResultError("data temporarily unavailable") from e

        logger.info(f"Served {tenant_id}/{domain}/{period} from source of truth")
        return view

    def _aggregate_from_source(self, tenant_id, domain, period) -> ReadModelView:
        if self.source is not None:
            metrics = self.source.aggregate_all(tenant_id, domain, period)
        else:
            uow = self.uow_factory()
            with uow:
                metrics = uow.source.aggregate_all(tenant_id, domain, period)
        model = ReadModel(tenant_id=tenant_id, domain=domain, period=period, metrics=dict(metrics))
        return ReadModelView.from_read_model(model, served_from="source")
