from __future__ import annotations

import math
from datetime import date
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from obstracker.core.codes import DashboardStatus, ObservationStatus, RiskRating, coerce_code
from obstracker.core.records import (
    F_AUDIT_NAME,
    F_AUDIT_REPORT_DATE,
    F_DEPARTMENT,
    F_DETAILS,
    F_DUE_DATE,
    F_EMAIL,
    F_ID,
    F_MANAGEMENT_RESPONSE,
    F_OBSERVATION,
    F_PERSON,
    F_REFERENCE,
    F_RISK,
    F_STATUS,
    F_YEAR,
    as_int,
    as_text,
    iso_day,
    parse_wire_datetime,
)
from obstracker.rules.aging import derive_status, effective_days_overdue

Row = Dict[str, Any]
Predicate = Callable[[Mapping[str, Any]], bool]

# URL ?status= values accepted by the client dashboard deep links.
STATUS_PARAM_CODES = {
    "in_progress": ObservationStatus.IN_PROGRESS,
    "pending": ObservationStatus.IN_PROGRESS,
    "open": ObservationStatus.IN_PROGRESS,
    "overdue": ObservationStatus.OVERDUE,
    "closed": ObservationStatus.CLOSED,
    "completed": ObservationStatus.CLOSED,
}


class DashboardFilters(BaseModel):
    due_date: str = ""
    status: str = ""
    audit: str = ""
    search: str = ""

    model_config = ConfigDict(frozen=True)

    def is_empty(self) -> bool:
        return not (self.due_date or self.status or self.audit or self.search)


class TrackerFilters(BaseModel):
    search: str = ""
    year: str = ""
    status: str = ""
    risk: str = ""

    model_config = ConfigDict(frozen=True)

    def is_empty(self) -> bool:
        return not (self.search or self.year or self.status or self.risk)


class Page(BaseModel):
    items: List[Row]
    page: int
    page_size: int
    total: int
    total_pages: int
    start: int
    end: int
    has_prev: bool
    has_next: bool


def status_code_from_param(value: Optional[str]) -> Optional[ObservationStatus]:
    token = as_text(value).lower()
    if not token:
        return None
    if token in STATUS_PARAM_CODES:
        return STATUS_PARAM_CODES[token]
    return coerce_code(ObservationStatus, token)


def risk_code_from_param(value: Optional[str]) -> Optional[RiskRating]:
    return coerce_code(RiskRating, as_text(value))


def dashboard_view_row(raw: Mapping[str, Any], today: date) -> Row:
    derived = derive_status(raw.get(F_DUE_DATE), today, raw.get(F_STATUS))
    risk = coerce_code(RiskRating, raw.get(F_RISK)) or RiskRating.LOW
    return {
        "id": as_text(raw.get(F_ID)),
        "reference": as_text(raw.get(F_REFERENCE)) or "N/A",
        "observation": as_text(raw.get(F_OBSERVATION)),
        "details": as_text(raw.get(F_DETAILS)),
        "auditName": as_text(raw.get(F_AUDIT_NAME)) or "N/A",
        "auditDate": iso_day(raw.get(F_AUDIT_REPORT_DATE)) or None,
        "responsiblePerson": as_text(raw.get(F_PERSON)) or "N/A",
        "email": as_text(raw.get(F_EMAIL)),
        "dueDateISO": iso_day(raw.get(F_DUE_DATE)),
        "daysOverdue": effective_days_overdue(raw, today) if derived.status == DashboardStatus.OVERDUE else 0,
        "riskRating": int(risk),
        "riskLabel": risk.label,
        "managementResponse": as_text(raw.get(F_MANAGEMENT_RESPONSE)),
        "statusCode": as_int(raw.get(F_STATUS)),
        "status": derived.status.value,
    }


def _contains(needle: str, *haystacks: Any) -> bool:
    return any(needle in as_text(h).lower() for h in haystacks)


def dashboard_filter_steps(filters: DashboardFilters) -> List[Predicate]:
    """One predicate per non-empty filter, in the dashboard's application order."""
    steps: List[Predicate] = []
    if filters.due_date:
        steps.append(lambda row: row.get("dueDateISO") == filters.due_date)
    if filters.status:
        steps.append(lambda row: row.get("status") == filters.status)
    if filters.audit:
        steps.append(lambda row: row.get("auditName") == filters.audit)
    if filters.search:
        needle = filters.search.lower()
        steps.append(
            lambda row: _contains(
                needle, row.get("reference"), row.get("observation"), row.get("auditName"), row.get("responsiblePerson")
            )
        )
    return steps


def tracker_filter_steps(filters: TrackerFilters) -> List[Predicate]:
    steps: List[Predicate] = []
    if filters.search:
        needle = filters.search.lower()
        steps.append(
            lambda row: _contains(
                needle, row.get(F_OBSERVATION), row.get(F_AUDIT_NAME), row.get(F_DEPARTMENT), row.get(F_PERSON)
            )
        )
    if filters.year:
        steps.append(lambda row: as_text(row.get(F_YEAR)) == filters.year)
    if filters.status:
        steps.append(lambda row: as_text(row.get(F_STATUS)) == filters.status)
    if filters.risk:
        steps.append(lambda row: as_text(row.get(F_RISK)) == filters.risk)
    return steps


def apply_steps(rows: Iterable[Row], steps: Sequence[Predicate]) -> List[Row]:
    filtered = list(rows)
    for step in steps:
        filtered = [row for row in filtered if step(row)]
    return filtered


def apply_dashboard_filters(rows: Iterable[Row], filters: DashboardFilters) -> List[Row]:
    return apply_steps(rows, dashboard_filter_steps(filters))


def apply_tracker_filters(rows: Iterable[Row], filters: TrackerFilters) -> List[Row]:
    return apply_steps(rows, tracker_filter_steps(filters))


def filter_options(rows: Iterable[Row]) -> Dict[str, List[str]]:
    rows = list(rows)
    due_dates = sorted({row["dueDateISO"] for row in rows if row.get("dueDateISO")})
    audits = sorted({row["auditName"] for row in rows if row.get("auditName") and row["auditName"] != "N/A"})
    return {"dueDates": due_dates, "audits": audits}


def paginate(rows: Sequence[Row], page: int, page_size: int) -> Page:
    page_size = max(1, page_size)
    total = len(rows)
    total_pages = math.ceil(total / page_size) if total else 0
    page = min(max(1, page), max(1, total_pages))
    offset = (page - 1) * page_size
    items = list(rows[offset : offset + page_size])
    return Page(
        items=items,
        page=page,
        page_size=page_size,
        total=total,
        total_pages=total_pages,
        start=offset + 1 if total else 0,
        end=min(page * page_size, total),
        has_prev=page > 1,
        has_next=page < total_pages,
    )


def dashboard_statistics(rows: Iterable[Row]) -> Dict[str, int]:
    rows = list(rows)
    return {
        "total": len(rows),
        "overdue": sum(1 for r in rows if r.get("status") == DashboardStatus.OVERDUE.value),
        "pending": sum(1 for r in rows if r.get("status") == DashboardStatus.PENDING.value),
        "completed": sum(1 for r in rows if r.get("status") == DashboardStatus.COMPLETED.value),
    }


def tracker_statistics(rows: Iterable[Row]) -> Dict[str, int]:
    rows = list(rows)
    codes = [coerce_code(ObservationStatus, r.get(F_STATUS)) for r in rows]
    return {
        "total": len(rows),
        "overdue": codes.count(ObservationStatus.OVERDUE),
        "inProgress": codes.count(ObservationStatus.IN_PROGRESS),
        "closed": codes.count(ObservationStatus.CLOSED),
    }


def _sort_key(value: Any) -> tuple:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (float(value), "")
    text = str(value)
    if len(text) >= 10 and text[4:5] == "-":
        parsed = parse_wire_datetime(text)
        if parsed is not None:
            return (parsed.timestamp(), "")
    return (0.0, text.lower())


def sort_rows(rows: Iterable[Row], field: str, *, descending: bool = False) -> List[Row]:
    """Stable sort on one wire field; rows without a value always go last."""
    rows = list(rows)
    present = [r for r in rows if r.get(field) not in (None, "")]
    missing = [r for r in rows if r.get(field) in (None, "")]
    ordered = sorted(present, key=lambda r: _sort_key(r.get(field)), reverse=descending)
    return ordered + missing
