from datetime import date
from itertools import permutations

from obstracker.core.records import (
    F_AUDIT_NAME,
    F_DEPARTMENT,
    F_DUE_DATE,
    F_EMAIL,
    F_ID,
    F_OBSERVATION,
    F_PERSON,
    F_REFERENCE,
    F_RISK,
    F_STATUS,
    F_YEAR,
)
from obstracker.rules.filters import (
    DashboardFilters,
    TrackerFilters,
    apply_dashboard_filters,
    apply_steps,
    apply_tracker_filters,
    dashboard_filter_steps,
    dashboard_statistics,
    dashboard_view_row,
    filter_options,
    paginate,
    risk_code_from_param,
    sort_rows,
    status_code_from_param,
    tracker_filter_steps,
    tracker_statistics,
)

TODAY = date(2024, 7, 1)


def _raw(idx, audit, due, status=1, risk=2, person="Ama Owusu", text="Segregation of duties gap", year="2024"):
    return {
        F_ID: f"obs-{idx}",
        F_REFERENCE: f"IA--{idx:04d}",
        F_OBSERVATION: text,
        F_AUDIT_NAME: audit,
        F_DUE_DATE: due,
        F_STATUS: status,
        F_RISK: risk,
        F_PERSON: person,
        F_EMAIL: "ama@example.com",
        F_DEPARTMENT: "Finance",
        F_YEAR: year,
    }


RAW_ROWS = [
    _raw(1, "Payroll", "2024-06-01T00:00:00Z"),
    _raw(2, "Payroll", "2024-09-01T00:00:00Z", text="Payroll overrides not logged"),
    _raw(3, "Treasury", "2024-06-01T00:00:00Z", status=3, risk=1),
    _raw(4, "Treasury", None, person="Kofi Boateng", year="2023"),
    _raw(5, "Procurement", "2024-08-15T00:00:00Z", risk=4, year="2023"),
]


def _view_rows():
    return [dashboard_view_row(raw, TODAY) for raw in RAW_ROWS]


def test_dashboard_view_row_derives_status_and_defaults():
    row = dashboard_view_row({F_ID: "x", F_DUE_DATE: "2024-06-21"}, TODAY)
    assert row["status"] == "overdue"
    assert row["daysOverdue"] == 10
    assert row["reference"] == "N/A"
    assert row["auditName"] == "N/A"
    assert row["responsiblePerson"] == "N/A"
    assert row["riskLabel"] == "Low"
    assert row["dueDateISO"] == "2024-06-21"


def test_dashboard_filters_apply_in_any_order_with_same_result():
    rows = _view_rows()
    filters = DashboardFilters(due_date="2024-06-01", status="overdue", audit="Payroll", search="segregation")
    steps = dashboard_filter_steps(filters)
    assert len(steps) == 4
    expected = [row["id"] for row in apply_dashboard_filters(rows, filters)]
    assert expected == ["obs-1"]
    for order in permutations(steps):
        assert [row["id"] for row in apply_steps(rows, list(order))] == expected


def test_empty_filters_return_everything_in_original_order():
    rows = _view_rows()
    assert apply_dashboard_filters(rows, DashboardFilters()) == rows
    assert apply_tracker_filters(RAW_ROWS, TrackerFilters()) == RAW_ROWS
    assert DashboardFilters().is_empty()
    assert TrackerFilters().is_empty()


def test_dashboard_search_covers_reference_and_person():
    rows = _view_rows()
    assert [r["id"] for r in apply_dashboard_filters(rows, DashboardFilters(search="ia--0005"))] == ["obs-5"]
    assert [r["id"] for r in apply_dashboard_filters(rows, DashboardFilters(search="kofi"))] == ["obs-4"]


def test_tracker_filters_commute_and_match_codes():
    filters = TrackerFilters(search="finance", year="2023", status="1", risk="4")
    steps = tracker_filter_steps(filters)
    expected = [row[F_ID] for row in apply_tracker_filters(RAW_ROWS, filters)]
    assert expected == ["obs-5"]
    for order in permutations(steps):
        assert [row[F_ID] for row in apply_steps(RAW_ROWS, list(order))] == expected


def test_filter_options_are_sorted_and_distinct():
    options = filter_options(_view_rows())
    assert options["audits"] == ["Payroll", "Procurement", "Treasury"]
    assert options["dueDates"] == ["2024-06-01", "2024-08-15", "2024-09-01"]


def test_statistics_count_each_bucket():
    assert dashboard_statistics(_view_rows()) == {"total": 5, "overdue": 1, "pending": 3, "completed": 1}
    assert tracker_statistics(RAW_ROWS) == {"total": 5, "overdue": 0, "inProgress": 4, "closed": 1}


def test_status_code_from_param_accepts_aliases():
    assert int(status_code_from_param("closed")) == 3
    assert int(status_code_from_param("overdue")) == 2
    assert int(status_code_from_param("1")) == 1
    assert status_code_from_param("") is None
    assert status_code_from_param("whatever") is None


def test_risk_code_from_param_accepts_labels_and_codes():
    assert int(risk_code_from_param("high")) == 2
    assert int(risk_code_from_param("Critical")) == 1
    assert int(risk_code_from_param("4")) == 4
    assert risk_code_from_param("") is None
    assert risk_code_from_param("severe") is None


def test_paginate_clamps_and_reports_window():
    rows = [{"n": i} for i in range(45)]
    first = paginate(rows, 1, 20)
    assert first.total_pages == 3
    assert (first.start, first.end) == (1, 20)
    assert first.has_next and not first.has_prev

    last = paginate(rows, 9, 20)
    assert last.page == 3
    assert (last.start, last.end) == (41, 45)
    assert [r["n"] for r in last.items] == [40, 41, 42, 43, 44]

    empty = paginate([], 1, 20)
    assert (empty.total, empty.total_pages, empty.start, empty.end) == (0, 0, 0, 0)


def test_sort_rows_puts_missing_values_last_in_both_directions():
    ascending = [r[F_ID] for r in sort_rows(RAW_ROWS, F_DUE_DATE)]
    assert ascending == ["obs-1", "obs-3", "obs-5", "obs-2", "obs-4"]
    descending = [r[F_ID] for r in sort_rows(RAW_ROWS, F_DUE_DATE, descending=True)]
    assert descending == ["obs-2", "obs-5", "obs-1", "obs-3", "obs-4"]
