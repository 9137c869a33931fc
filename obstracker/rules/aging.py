from __future__ import annotations

from datetime import date
from typing import Any, Dict, Mapping

from pydantic import BaseModel, ConfigDict

from obstracker.core.codes import AgingBucket, DashboardStatus, ObservationStatus, coerce_code
from obstracker.core.records import F_AGING, F_DAYS_OVERDUE, F_DUE_DATE, F_STATUS, as_int, parse_wire_date

# Upper bound (inclusive) of days overdue for each bucket, in order.
AGING_THRESHOLDS = (
    (0, AgingBucket.NOT_DUE),
    (180, AgingBucket.UP_TO_6M),
    (365, AgingBucket.UP_TO_1Y),
    (730, AgingBucket.UP_TO_2Y),
)


class DerivedStatus(BaseModel):
    status: DashboardStatus
    days_overdue: int

    model_config = ConfigDict(frozen=True)


def days_overdue(due_date: Any, today: date) -> int:
    due = parse_wire_date(due_date)
    if due is None:
        return 0
    return max(0, (today - due).days)


def compute_aging(days: int) -> AgingBucket:
    for upper, bucket in AGING_THRESHOLDS:
        if days <= upper:
            return bucket
    return AgingBucket.ABOVE_2Y


def derive_status(due_date: Any, today: date, status_code: Any = None) -> DerivedStatus:
    """Dashboard status inferred from the due date; a stored Closed status wins."""
    overdue_days = days_overdue(due_date, today)
    if coerce_code(ObservationStatus, status_code) == ObservationStatus.CLOSED:
        return DerivedStatus(status=DashboardStatus.COMPLETED, days_overdue=overdue_days)
    due = parse_wire_date(due_date)
    if due is None:
        return DerivedStatus(status=DashboardStatus.PENDING, days_overdue=0)
    if due < today:
        return DerivedStatus(status=DashboardStatus.OVERDUE, days_overdue=overdue_days)
    return DerivedStatus(status=DashboardStatus.PENDING, days_overdue=0)


def effective_days_overdue(record: Mapping[str, Any], today: date) -> int:
    stored = as_int(record.get(F_DAYS_OVERDUE))
    if stored is not None:
        return max(0, stored)
    return days_overdue(record.get(F_DUE_DATE), today)


def refresh_derived_fields(
    record: Mapping[str, Any],
    today: date,
    *,
    aging_touched: bool = False,
) -> Dict[str, Any]:
    current = dict(record)
    closed = coerce_code(ObservationStatus, current.get(F_STATUS)) == ObservationStatus.CLOSED
    if closed:
        current[F_AGING] = int(AgingBucket.NOT_DUE)
    due = parse_wire_date(current.get(F_DUE_DATE))
    if due is None:
        return current
    overdue_days = days_overdue(due, today)
    current[F_DAYS_OVERDUE] = overdue_days
    if not closed and not aging_touched:
        current[F_AGING] = int(compute_aging(overdue_days))
    return current
