"""
Per-domain aggregation functions folding domain events into read-model metrics.

Every fold is a pure function of (current state, event): the incoming state is
copied, never mutated, so live materialization, rebuild replay and direct
source aggregation all produce the same numbers for the same history.
"""
import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, Tuple

from analytics.domain.model import DomainEvent, ProjectionState

logger = logging.getLogger(__name__)

COUNT = "count"
AMOUNT = "amount"
RATE = "rate"


@dataclass(frozen=True)
class MetricSpec:
    name: str
    kind: str = COUNT  # counts compare exactly, amounts and rates within tolerance


def _number(payload: Dict[str, Any], key: str, default: float = 0.0) -> float:
    value = payload.get(key)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-numeric payload field {key}={value!r}")
        return default


def _ratio(numerator, denominator) -> float:
    return numerator / denominator if denominator else 0.0


class Projection:
    """Base class: dispatches an event's action to a handler method."""

    domain = ""
    metric_specs: Tuple[MetricSpec, ...] = ()
    actions: Dict[str, str] = {}

    @property
    def metric_names(self):
        return [spec.name for spec in self.metric_specs]

    def spec_for(self, metric: str) -> MetricSpec:
        for spec in self.metric_specs:
            if spec.name == metric:
                return spec
        raise KeyError(metric)

    def zero_metrics(self) -> Dict[str, Any]:
        return {spec.name: 0 if spec.kind == COUNT else 0.0 for spec in self.metric_specs}

    def fold(self, state: ProjectionState, event: DomainEvent) -> ProjectionState:
        metrics = self.zero_metrics()
        metrics.update(state.metrics)
        lookups = copy.deepcopy(state.lookups)

        handler_name = self.actions.get(event.action)
        if handler_name is None:
            logger.debug(f"{self.domain} projection has no aggregation for {event.event_type}")
        else:
            getattr(self, handler_name)(metrics, lookups, event)

        self.derive(metrics)
        return ProjectionState(metrics=metrics, lookups=lookups)

    def derive(self, metrics: Dict[str, Any]) -> None:
        """Recompute rate metrics from running totals."""
        pass


class CrmProjection(Projection):
    """
    Lead funnel per period.

    Each period is folded on its own: pipeline_value is the value of leads
    created in the period and still open at its last event there. A lead
    converted or lost in a later period counts in that later period's
    leads_converted/leads_lost and won_value, and leaves the creation
    period's pipeline_value unchanged. conversion_rate is leads converted
    over leads created within the same period, 0.0 when none were created.
    """
    domain = "crm"
    metric_specs = (
        MetricSpec("leads_total"),
        MetricSpec("leads_converted"),
        MetricSpec("leads_lost"),
        MetricSpec("pipeline_value", AMOUNT),
        MetricSpec("won_value", AMOUNT),
        MetricSpec("conversion_rate", RATE),
    )
    actions = {
        "lead.created": "lead_created",
        "lead.converted": "lead_converted",
        "lead.lost": "lead_lost",
    }

    def lead_created(self, metrics, lookups, event):
        value = _number(event.payload, "value")
        metrics["leads_total"] += 1
        metrics["pipeline_value"] += value
        lookups[event.aggregate_id] = {"value": value, "status": "open"}

    def lead_converted(self, metrics, lookups, event):
        lead = lookups.get(event.aggregate_id, {})
        value = _number(event.payload, "value", lead.get("value", 0.0))
        if lead.get("status") == "open":
            metrics["pipeline_value"] -= lead["value"]
        metrics["leads_converted"] += 1
        metrics["won_value"] += value
        lookups[event.aggregate_id] = {"value": value, "status": "converted"}

    def lead_lost(self, metrics, lookups, event):
        lead = lookups.get(event.aggregate_id, {})
        if lead.get("status") == "open":
            metrics["pipeline_value"] -= lead["value"]
        metrics["leads_lost"] += 1
        lookups[event.aggregate_id] = {"value": lead.get("value", 0.0), "status": "lost"}

    def derive(self, metrics):
        metrics["conversion_rate"] = _ratio(metrics["leads_converted"], metrics["leads_total"])


class HrmProjection(Projection):
    domain = "hrm"
    metric_specs = (
        MetricSpec("headcount"),
        MetricSpec("hires"),
        MetricSpec("terminations"),
        MetricSpec("attrition_rate", RATE),
    )
    actions = {
        "employee.hired": "employee_hired",
        "employee.terminated": "employee_terminated",
    }

    def employee_hired(self, metrics, lookups, event):
        metrics["hires"] += 1
        metrics["headcount"] += 1

    def employee_terminated(self, metrics, lookups, event):
        metrics["terminations"] += 1
        metrics["headcount"] -= 1

    def derive(self, metrics):
        metrics["attrition_rate"] = _ratio(
            metrics["terminations"], metrics["headcount"] + metrics["terminations"]
        )


class FinanceProjection(Projection):
    domain = "finance"
    metric_specs = (
        MetricSpec("invoices_issued"),
        MetricSpec("invoices_paid"),
        MetricSpec("expenses_recorded"),
        MetricSpec("invoiced_amount", AMOUNT),
        MetricSpec("collected_amount", AMOUNT),
        MetricSpec("outstanding_amount", AMOUNT),
        MetricSpec("expenses_total", AMOUNT),
        MetricSpec("collection_rate", RATE),
    )
    actions = {
        "invoice.issued": "invoice_issued",
        "invoice.paid": "invoice_paid",
        "expense.recorded": "expense_recorded",
    }

    def invoice_issued(self, metrics, lookups, event):
        amount = _number(event.payload, "amount")
        metrics["invoices_issued"] += 1
        metrics["invoiced_amount"] += amount
        metrics["outstanding_amount"] += amount
        lookups[event.aggregate_id] = {"amount": amount, "status": "open"}

    def invoice_paid(self, metrics, lookups, event):
        invoice = lookups.get(event.aggregate_id, {})
        amount = _number(event.payload, "amount", invoice.get("amount", 0.0))
        if invoice.get("status") == "open":
            metrics["outstanding_amount"] -= invoice["amount"]
        metrics["invoices_paid"] += 1
        metrics["collected_amount"] += amount
        lookups[event.aggregate_id] = {"amount": amount, "status": "paid"}

    def expense_recorded(self, metrics, lookups, event):
        metrics["expenses_recorded"] += 1
        metrics["expenses_total"] += _number(event.payload, "amount")

    def derive(self, metrics):
        metrics["collection_rate"] = _ratio(metrics["collected_amount"], metrics["invoiced_amount"])


class InventoryProjection(Projection):
    domain = "inventory"
    metric_specs = (
        MetricSpec("adjustments"),
        MetricSpec("units_received", AMOUNT),
        MetricSpec("units_shipped", AMOUNT),
        MetricSpec("stock_on_hand", AMOUNT),
    )
    actions = {
        "stock.received": "stock_received",
        "stock.shipped": "stock_shipped",
        "stock.adjusted": "stock_adjusted",
    }

    def stock_received(self, metrics, lookups, event):
        quantity = _number(event.payload, "quantity")
        metrics["units_received"] += quantity
        metrics["stock_on_hand"] += quantity

    def stock_shipped(self, metrics, lookups, event):
        quantity = _number(event.payload, "quantity")
        metrics["units_shipped"] += quantity
        metrics["stock_on_hand"] -= quantity

    def stock_adjusted(self, metrics, lookups, event):
        metrics["adjustments"] += 1
        metrics["stock_on_hand"] += _number(event.payload, "delta")


class ProjectProjection(Projection):
    domain = "project"
    metric_specs = (
        MetricSpec("projects_total"),
        MetricSpec("projects_active"),
        MetricSpec("projects_completed"),
        MetricSpec("tasks_completed"),
        MetricSpec("hours_logged", AMOUNT),
        MetricSpec("completion_rate", RATE),
    )
    actions = {
        "project.created": "project_created",
        "project.completed": "project_completed",
        "task.completed": "task_completed",
        "hours.logged": "hours_logged",
    }

    def project_created(self, metrics, lookups, event):
        metrics["projects_total"] += 1
        metrics["projects_active"] += 1
        lookups[event.aggregate_id] = {"status": "active"}

    def project_completed(self, metrics, lookups, event):
        if lookups.get(event.aggregate_id, {}).get("status") == "active":
            metrics["projects_active"] -= 1
        metrics["projects_completed"] += 1
        lookups[event.aggregate_id] = {"status": "completed"}

    def task_completed(self, metrics, lookups, event):
        metrics["tasks_completed"] += 1

    def hours_logged(self, metrics, lookups, event):
        metrics["hours_logged"] += _number(event.payload, "hours")

    def derive(self, metrics):
        metrics["completion_rate"] = _ratio(metrics["projects_completed"], metrics["projects_total"])


PROJECTIONS = {
    projection.domain: projection
    for projection in (
        CrmProjection(),
        HrmProjection(),
        FinanceProjection(),
        InventoryProjection(),
        ProjectProjection(),
    )
}  # type: Dict[str, Projection]
