"""
Analytics API - read endpoints for pre-aggregated ERP metrics plus on-demand
reconciliation. Thin API layer: queries delegate to views, reconciliation is
dispatched as a command through the message bus.
"""
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel
import logging

from analytics import views
from analytics.adapters.alerts import RedisAlertPublisher
from analytics.adapters.cache import RedisViewCache
from analytics.adapters.redis_adapter import get_client
from analytics.adapters.source_of_truth import build_source_of_truth
from analytics.domain.commands import ReconcileReadModel
from analytics.domain.exceptions import DegradedResultError, NotFoundError, SourceQueryError
from analytics.service_layer import messagebus
from analytics.service_layer.materializer import MATERIALIZERS
from analytics.service_layer.unit_of_work import SqlAlchemyUnitOfWork

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="ERP Analytics API",
    description="Read API for per-tenant, per-domain analytics read models",
    version="1.0.0"
)


class AnalyticsResponse(BaseModel):
    tenant_id: str
    domain: str
    period: str
    metrics: Dict[str, Any]
    last_updated: Optional[str]
    stale: bool
    served_from: str


class DiscrepancyResponse(BaseModel):
    period: str
    metric: str
    source_value: Any
    read_model_value: Any
    delta: float


class ReportResponse(BaseModel):
    report_id: Optional[int]
    tenant_id: str
    domain: str
    checked_at: str
    periods_checked: List[str]
    discrepancies: List[DiscrepancyResponse]
    action_taken: str
    severe: bool


def get_uow():
    return SqlAlchemyUnitOfWork(
        source=build_source_of_truth(),
        cache=RedisViewCache(get_client()),
        alerts=RedisAlertPublisher(get_client()),
    )


@lru_cache(maxsize=1)
def get_query_service() -> views.QueryService:
    """Single query service per process so the circuit breaker state is shared."""
    cache = RedisViewCache(get_client())
    source = build_source_of_truth()
    return views.QueryService(
        uow_factory=lambda: SqlAlchemyUnitOfWork(source=source, cache=cache),
        cache=cache,
        source=source,
    )


def _require_domain(domain: str):
    if domain not in MATERIALIZERS:
        raise HTTPException(status_code=404, detail=f"Unknown analytics domain {domain}")


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "service": "erp-analytics-api",
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/api/v1/analytics/{tenant_id}/{domain}/{period}", response_model=AnalyticsResponse)
def get_analytics(
    tenant_id: str,
    domain: str,
    period: str,
    service: views.QueryService = Depends(get_query_service),
):
    """
    Get the metrics of one tenant/domain/period.

    stale=true means the store was unavailable and the last known value was
    served; served_from tells where the answer came from.
    """
    try:
        view = service.get_analytics(tenant_id, domain, period)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except DegradedResultError:
        logger.error(f"No analytics available for {tenant_id}/{domain}/{period}")
        raise HTTPException(status_code=503, detail="data temporarily unavailable")

    return AnalyticsResponse(**view.to_dict())


@app.post("/api/v1/reconciliation/{tenant_id}/{domain}", response_model=ReportResponse)
def reconcile(tenant_id: str, domain: str, period: Optional[str] = None, uow=Depends(get_uow)):
    """Run reconciliation for one tenant/domain now and return the report."""
    _require_domain(domain)
    try:
        results = messagebus.handle(ReconcileReadModel(tenant_id=tenant_id, domain=domain, period=period), uow)
    except SourceQueryError as e:
        logger.error(f"Reconciliation of {tenant_id}/{domain} could not reach the source: {e}")
        raise HTTPException(status_code=503, detail="source of truth unavailable")

    return ReportResponse(**results[0].to_dict())


@app.get("/api/v1/reconciliation/{tenant_id}/{domain}/reports", response_model=List[ReportResponse])
def list_reports(tenant_id: str, domain: str, limit: int = 20, uow=Depends(get_uow)):
    """Audit trail of reconciliation reports, newest first."""
    _require_domain(domain)
    with uow:
        reports = uow.reports.list_recent(tenant_id, domain, limit=limit)
        serialized = [ReportResponse(**report.to_dict()) for report in reports]
    return serialized
