"""Unit tests for the per-domain aggregation functions."""
import pytest

from analytics.domain.model import ProjectionState
from analytics.domain.projections import PROJECTIONS


def fold_all(domain, events):
    projection = PROJECTIONS[domain]
    state = ProjectionState(projection.zero_metrics(), {})
    for event in events:
        state = projection.fold(state, event)
    return state.metrics


def test_crm_lead_lifecycle(make_event):
    metrics = fold_all("crm", [
        make_event("crm.lead.created", "lead-1", 1, payload={"value": 5000}),
        make_event("crm.lead.created", "lead-2", 1, payload={"value": 1000}),
        make_event("crm.lead.converted", "lead-1", 2),
        make_event("crm.lead.lost", "lead-2", 2),
    ])

    assert metrics["leads_total"] == 2
    assert metrics["leads_converted"] == 1
    assert metrics["leads_lost"] == 1
    assert metrics["pipeline_value"] == 0
    assert metrics["won_value"] == 5000
    assert metrics["conversion_rate"] == 0.5


def test_crm_conversion_can_override_lead_value(make_event):
    metrics = fold_all("crm", [
        make_event("crm.lead.created", "lead-1", 1, payload={"value": 5000}),
        make_event("crm.lead.converted", "lead-1", 2, payload={"value": 4500}),
    ])

    assert metrics["pipeline_value"] == 0
    assert metrics["won_value"] == 4500


def test_hrm_headcount_and_attrition(make_event):
    metrics = fold_all("hrm", [
        make_event("hrm.employee.hired", "emp-1"),
        make_event("hrm.employee.hired", "emp-2"),
        make_event("hrm.employee.hired", "emp-3"),
        make_event("hrm.employee.terminated", "emp-3", 2),
    ])

    assert metrics["headcount"] == 2
    assert metrics["hires"] == 3
    assert metrics["terminations"] == 1
    assert metrics["attrition_rate"] == pytest.approx(1 / 3)


def test_finance_invoices_and_expenses(make_event):
    metrics = fold_all("finance", [
        make_event("finance.invoice.issued", "inv-1", 1, payload={"amount": 1200.0}),
        make_event("finance.invoice.issued", "inv-2", 1, payload={"amount": 800.0}),
        make_event("finance.invoice.paid", "inv-1", 2),
        make_event("finance.expense.recorded", "exp-1", 1, payload={"amount": "99.5"}),
    ])

    assert metrics["invoices_issued"] == 2
    assert metrics["invoices_paid"] == 1
    assert metrics["invoiced_amount"] == 2000.0
    assert metrics["collected_amount"] == 1200.0
    assert metrics["outstanding_amount"] == 800.0
    assert metrics["expenses_total"] == 99.5
    assert metrics["collection_rate"] == pytest.approx(0.6)


def test_inventory_stock_movements(make_event):
    metrics = fold_all("inventory", [
        make_event("inventory.stock.received", "sku-1", 1, payload={"quantity": 100}),
        make_event("inventory.stock.shipped", "sku-1", 2, payload={"quantity": 30}),
        make_event("inventory.stock.adjusted", "sku-1", 3, payload={"delta": -5}),
    ])

    assert metrics["units_received"] == 100
    assert metrics["units_shipped"] == 30
    assert metrics["adjustments"] == 1
    assert metrics["stock_on_hand"] == 65


def test_project_completion(make_event):
    metrics = fold_all("project", [
        make_event("project.project.created", "prj-1"),
        make_event("project.project.created", "prj-2"),
        make_event("project.project.completed", "prj-1", 2),
        make_event("project.task.completed", "task-1"),
        make_event("project.hours.logged", "log-1", payload={"hours": 7.5}),
    ])

    assert metrics["projects_total"] == 2
    assert metrics["projects_active"] == 1
    assert metrics["projects_completed"] == 1
    assert metrics["tasks_completed"] == 1
    assert metrics["hours_logged"] == 7.5
    assert metrics["completion_rate"] == 0.5


def test_unknown_action_leaves_metrics_unchanged(make_event):
    metrics = fold_all("crm", [make_event("crm.lead.reassigned", "lead-1")])

    assert metrics == PROJECTIONS["crm"].zero_metrics()


def test_fold_does_not_mutate_input_state(make_event):
    projection = PROJECTIONS["crm"]
    state = ProjectionState(projection.zero_metrics(), {})

    projection.fold(state, make_event(payload={"value": 10}))

    assert state.metrics["leads_total"] == 0
    assert state.lookups == {}


def test_non_numeric_payload_value_counts_as_zero(make_event):
    metrics = fold_all("crm", [make_event(payload={"value": "lots"})])

    assert metrics["leads_total"] == 1
    assert metrics["pipeline_value"] == 0.0
