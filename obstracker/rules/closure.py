from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from obstracker.core.codes import AgingBucket, ObservationStatus, ObservationType, RiskRating, coerce_code
from obstracker.core.errors import FieldError, ValidationFailed
from obstracker.core.records import (
    F_AGING,
    F_AUDIT_NAME,
    F_AUDIT_REPORT_DATE,
    F_CLOSING_REMARKS,
    F_COMPANY,
    F_DATE_CLOSED,
    F_DAYS_OVERDUE,
    F_DEPARTMENT,
    F_DETAILS,
    F_DUE_DATE,
    F_EMAIL,
    F_HEAD_OF_DEPARTMENT,
    F_IA_WORK,
    F_LAST_COMM_DATE,
    F_LAST_COMM_PERSON,
    F_LATEST_REVISED_MAP,
    F_MANAGEMENT_RESPONSE,
    F_MONTH,
    F_OBSERVATION,
    F_OBSERVATION_TYPE,
    F_PERSON,
    F_QUARTER,
    F_REGION,
    F_RISK,
    F_STATUS,
    F_SUPPORT_PERSON,
    F_YEAR,
    as_int,
    as_text,
    format_wire_date,
    format_wire_datetime,
    parse_wire_date,
)
from obstracker.rules.aging import compute_aging, days_overdue

CLOSURE_FIELDS = (F_DATE_CLOSED, F_CLOSING_REMARKS)

# form key -> (wire field, kind, label)
REQUIRED_FORM_FIELDS = (
    ("year", F_YEAR, "text", "Year"),
    ("quarter", F_QUARTER, "text", "Quarter"),
    ("companyName", F_COMPANY, "text", "Company Name"),
    ("region", F_REGION, "text", "Region"),
    ("auditName", F_AUDIT_NAME, "text", "Audit Name"),
    ("auditReportDate", F_AUDIT_REPORT_DATE, "date", "Audit Report Date"),
    ("observationType", F_OBSERVATION_TYPE, "text", "Observation Type"),
    ("observation", F_OBSERVATION, "text", "Observation"),
    ("details", F_DETAILS, "text", "Details"),
    ("riskRating", F_RISK, "int", "Risk Rating"),
    ("managementResponse", F_MANAGEMENT_RESPONSE, "text", "Management Response"),
    ("headOfDepartment", F_HEAD_OF_DEPARTMENT, "text", "Head of Department"),
    ("departmentResponsible", F_DEPARTMENT, "text", "Department Responsible"),
    ("personResponsible", F_PERSON, "text", "Person Responsible"),
    ("email", F_EMAIL, "text", "Email"),
    ("dueDate", F_DUE_DATE, "date", "Due Date"),
    ("status", F_STATUS, "int", "Status"),
)

OPTIONAL_FORM_FIELDS = (
    ("month", F_MONTH, "text", "Month"),
    ("supportPerson", F_SUPPORT_PERSON, "text", "Support Person"),
    ("daysOverdue", F_DAYS_OVERDUE, "int", "Days Overdue"),
    ("aging", F_AGING, "int", "Aging"),
    ("lastCommunicationDate", F_LAST_COMM_DATE, "date", "Last Communication Date"),
    ("lastPersonCommunicated", F_LAST_COMM_PERSON, "text", "Last Person Communicated"),
    ("iaWork", F_IA_WORK, "text", "IA Work"),
    ("latestRevisedMap", F_LATEST_REVISED_MAP, "text", "Latest Revised MAP"),
)

REQUIRED_RECORD_FIELDS = tuple((wire, label) for _, wire, _, label in REQUIRED_FORM_FIELDS) + ((F_AGING, "Aging"),)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def closure_field_visibility(status: Any) -> Dict[str, Dict[str, bool]]:
    """Which closure fields the form shows and requires for a given status."""
    closed = coerce_code(ObservationStatus, status) == ObservationStatus.CLOSED
    return {
        "dateClosed": {"visible": closed, "required": closed},
        "closingRemarks": {"visible": closed, "required": closed},
    }


def apply_status_transition(
    record: Mapping[str, Any],
    new_status: Any,
    *,
    now: Optional[datetime] = None,
    auto_fill_date_closed: bool = True,
) -> Dict[str, Any]:
    status = coerce_code(ObservationStatus, new_status)
    if status is None:
        raise ValidationFailed([FieldError(field=F_STATUS, message=f"Unknown status: {new_status!r}")])

    current = dict(record)
    current[F_STATUS] = int(status)
    if status == ObservationStatus.CLOSED:
        current[F_AGING] = int(AgingBucket.NOT_DUE)
        if _is_blank(current.get(F_DATE_CLOSED)) and auto_fill_date_closed:
            current[F_DATE_CLOSED] = format_wire_datetime(now or _utcnow())
    # Reopening keeps dateclosed/closingremarks; presentation hides them.
    return current


def validate(record: Mapping[str, Any]) -> List[FieldError]:
    errors: List[FieldError] = []
    for wire, label in REQUIRED_RECORD_FIELDS:
        if _is_blank(record.get(wire)):
            errors.append(FieldError(field=wire, message=f"{label} is required"))

    raw_status = record.get(F_STATUS)
    status = coerce_code(ObservationStatus, raw_status)
    if not _is_blank(raw_status) and status is None:
        errors.append(FieldError(field=F_STATUS, message=f"Invalid status: {raw_status!r}"))
    raw_risk = record.get(F_RISK)
    if not _is_blank(raw_risk) and coerce_code(RiskRating, raw_risk) is None:
        errors.append(FieldError(field=F_RISK, message=f"Invalid risk rating: {raw_risk!r}"))
    raw_aging = record.get(F_AGING)
    if not _is_blank(raw_aging) and coerce_code(AgingBucket, raw_aging) is None:
        errors.append(FieldError(field=F_AGING, message=f"Invalid aging: {raw_aging!r}"))
    raw_type = record.get(F_OBSERVATION_TYPE)
    if not _is_blank(raw_type) and coerce_code(ObservationType, raw_type) is None:
        errors.append(FieldError(field=F_OBSERVATION_TYPE, message=f"Invalid observation type: {raw_type!r}"))

    if status == ObservationStatus.CLOSED:
        if _is_blank(record.get(F_DATE_CLOSED)):
            errors.append(FieldError(field=F_DATE_CLOSED, message="Date Closed is required when Status is Closed"))
        if _is_blank(record.get(F_CLOSING_REMARKS)):
            errors.append(
                FieldError(field=F_CLOSING_REMARKS, message="Closing Remarks is required when Status is Closed")
            )
    return errors


def _convert(kind: str, value: Any) -> Any:
    if kind == "int":
        return as_int(value)
    if kind == "date":
        return format_wire_date(value)
    return as_text(value)


def build_save_payload(
    form: Mapping[str, Any],
    *,
    today: date,
    now: Optional[datetime] = None,
    auto_fill_date_closed: bool = True,
    aging_touched: bool = False,
) -> Dict[str, Any]:
    """Builds the POST/PATCH body for an auditor save, or raises ValidationFailed."""
    payload: Dict[str, Any] = {}
    errors: List[FieldError] = []

    for key, wire, kind, label in REQUIRED_FORM_FIELDS:
        raw = form.get(key)
        if _is_blank(raw):
            errors.append(FieldError(field=key, message=f"{label} is required"))
            continue
        converted = _convert(kind, raw)
        if converted is None:
            errors.append(FieldError(field=key, message=f"{label} is invalid"))
            continue
        payload[wire] = converted

    for key, wire, kind, label in OPTIONAL_FORM_FIELDS:
        raw = form.get(key)
        if _is_blank(raw):
            continue
        converted = _convert(kind, raw)
        if converted is None:
            errors.append(FieldError(field=key, message=f"{label} is invalid"))
            continue
        payload[wire] = converted

    due = parse_wire_date(payload.get(F_DUE_DATE))
    if due is not None:
        if F_DAYS_OVERDUE not in payload:
            payload[F_DAYS_OVERDUE] = days_overdue(due, today)
        if F_AGING not in payload or not aging_touched:
            payload[F_AGING] = int(compute_aging(payload[F_DAYS_OVERDUE]))

    status = coerce_code(ObservationStatus, payload.get(F_STATUS))
    if status == ObservationStatus.CLOSED:
        date_closed = form.get("dateClosed")
        if not _is_blank(date_closed):
            payload[F_DATE_CLOSED] = format_wire_date(date_closed)
        remarks = as_text(form.get("closingRemarks"))
        if remarks:
            payload[F_CLOSING_REMARKS] = remarks
        payload = apply_status_transition(
            payload,
            status,
            now=now or datetime.combine(today, datetime.min.time(), tzinfo=timezone.utc),
            auto_fill_date_closed=auto_fill_date_closed,
        )

    if errors:
        raise ValidationFailed(errors)
    record_errors = validate(payload)
    if record_errors:
        raise ValidationFailed(record_errors)
    return payload
