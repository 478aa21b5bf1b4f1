"""Source-of-truth aggregate queries, used by reconciliation and the query fallback path."""

import abc
import logging
from typing import Any, Dict, Optional

import requests

import config
from analytics.adapters.repository import AbstractEventLog
from analytics.domain.exceptions import SourceQueryError
from analytics.domain.model import ReadModel, fold_history
from analytics.domain.projections import PROJECTIONS

logger = logging.getLogger(__name__)


class AbstractSourceOfTruth(abc.ABC):
    """Authoritative aggregates, computed without going through read models."""

    @abc.abstractmethod
    def aggregate_query(self, tenant_id: str, domain: str, period: str, metric: str) -> Any:
        """
        Compute one metric directly from source data.

        Raises:
            SourceQueryError: If the source cannot answer
        """
        raise NotImplementedError

    def aggregate_all(self, tenant_id: str, domain: str, period: str) -> Dict[str, Any]:
        """Compute every metric the domain's read model carries."""
        return {
            metric: self.aggregate_query(tenant_id, domain, period, metric)
            for metric in PROJECTIONS[domain].metric_names
        }


class EventLogSourceOfTruth(AbstractSourceOfTruth):
    """
    Aggregates computed on the fly from the recorded event history.

    Folds the full history of a key from a zero state, independent of what the
    materializers have persisted.
    """

    def __init__(self, event_log: AbstractEventLog):
        self.event_log = event_log

    def aggregate_all(self, tenant_id, domain, period):
        projection = PROJECTIONS[domain]
        try:
            events = self.event_log.list_events(tenant_id, domain, period)
        except Exception as e:
            raise SourceQueryError(f"Event history unavailable for {tenant_id}/{domain}/{period}: {e}") from e

        model = fold_history(ReadModel.zero(tenant_id, domain, period, projection), events, projection)
        return model.metrics

    def aggregate_query(self, tenant_id, domain, period, metric):
        return self.aggregate_all(tenant_id, domain, period)[metric]


class HTTPSourceOfTruthClient(AbstractSourceOfTruth):
    """HTTP client for the business services' aggregate query API."""

    def __init__(self, base_url: Optional[str] = None, timeout: int = 30):
        """
        Args:
            base_url: Base URL of the aggregate API. If None, uses config.
            timeout: Request timeout in seconds
        """
        self.base_url = base_url or config.get_source_of_truth_url()
        self.timeout = timeout

    def _get(self, url: str, params=None) -> Dict[str, Any]:
        logger.info(f"Querying source of truth {url}")
        try:
            response = requests.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()

        except requests.exceptions.HTTPError as e:
            logger.error(f"HTTP error querying {url}: {e}")
            raise SourceQueryError(f"Aggregate query failed: {e}") from e

        except requests.exceptions.RequestException as e:
            logger.error(f"Network error querying {url}: {e}")
            raise SourceQueryError(f"Network error: {e}") from e

        except ValueError as e:
            logger.error(f"Invalid JSON from {url}: {e}")
            raise SourceQueryError(f"Invalid response: {e}") from e

    def aggregate_query(self, tenant_id, domain, period, metric):
        data = self._get(
            f"{self.base_url}/api/v1/aggregates/{tenant_id}/{domain}/{period}",
            params={"metric": metric},
        )
        if "value" not in data:
            raise SourceQueryError(f"No value for {metric} in aggregate response")
        return data["value"]

    def aggregate_all(self, tenant_id, domain, period):
        data = self._get(f"{self.base_url}/api/v1/aggregates/{tenant_id}/{domain}/{period}")
        metrics = data.get("metrics")
        if not isinstance(metrics, dict):
            raise SourceQueryError(f"No metrics in aggregate response for {tenant_id}/{domain}/{period}")
        return metrics


def build_source_of_truth() -> Optional[AbstractSourceOfTruth]:
    """
    Source of truth chosen by config.

    Returns None for 'event_log', which leaves the unit of work folding its
    own event log.
    """
    if config.get_source_of_truth_kind() == "http":
        return HTTPSourceOfTruthClient()
    return None
