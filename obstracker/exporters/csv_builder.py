# obstracker/exporters/csv_builder.py

from __future__ import annotations

from datetime import date
from typing import Any, Callable, Iterable, List, Mapping, Tuple

from obstracker.api.csv_utils import csv_text_from_rows
from obstracker.core.codes import AgingBucket, ObservationStatus, RiskRating, label_for
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
    format_display_date,
)


def _text(field: str) -> Callable[[Mapping[str, Any]], Any]:
    return lambda obs: obs.get(field) or ""


def _date(field: str) -> Callable[[Mapping[str, Any]], Any]:
    return lambda obs: format_display_date(obs.get(field))


EXPORT_COLUMNS: List[Tuple[str, Callable[[Mapping[str, Any]], Any]]] = [
    ("Year", _text(F_YEAR)),
    ("Quarter", _text(F_QUARTER)),
    ("Month", _text(F_MONTH)),
    ("Company Name", _text(F_COMPANY)),
    ("Region", _text(F_REGION)),
    ("Audit Name", _text(F_AUDIT_NAME)),
    ("Observation Type", _text(F_OBSERVATION_TYPE)),
    ("Observation", _text(F_OBSERVATION)),
    ("Risk Rating", lambda obs: label_for(RiskRating, obs.get(F_RISK))),
    ("Details", _text(F_DETAILS)),
    ("Management Response", _text(F_MANAGEMENT_RESPONSE)),
    ("Head of Department", _text(F_HEAD_OF_DEPARTMENT)),
    ("Department Responsible", _text(F_DEPARTMENT)),
    ("Person Responsible", _text(F_PERSON)),
    ("Email", _text(F_EMAIL)),
    ("Support Person", _text(F_SUPPORT_PERSON)),
    ("Audit Report Date", _date(F_AUDIT_REPORT_DATE)),
    ("Due Date", _date(F_DUE_DATE)),
    ("Days Overdue", lambda obs: as_int(obs.get(F_DAYS_OVERDUE), 0)),
    ("Aging", lambda obs: label_for(AgingBucket, obs.get(F_AGING))),
    ("Date Closed", _date(F_DATE_CLOSED)),
    ("Status", lambda obs: label_for(ObservationStatus, obs.get(F_STATUS))),
    ("Last Communication Date", _date(F_LAST_COMM_DATE)),
    ("Last Person Communicated", _text(F_LAST_COMM_PERSON)),
    ("IA Work", _text(F_IA_WORK)),
    ("Closing Remarks", _text(F_CLOSING_REMARKS)),
    ("Latest Revised MAP", _text(F_LATEST_REVISED_MAP)),
]

EXPORT_HEADERS = [header for header, _ in EXPORT_COLUMNS]


def export_row(observation: Mapping[str, Any]) -> List[Any]:
    return [getter(observation) for _, getter in EXPORT_COLUMNS]


def export_rows(observations: Iterable[Mapping[str, Any]]) -> List[List[Any]]:
    return [export_row(obs) for obs in observations]


def export_filename(today: date, extension: str = "csv") -> str:
    return f"observations_complete_{today.isoformat()}.{extension}"


def build_csv_from_observations(observations: Iterable[Mapping[str, Any]]) -> str:
    return csv_text_from_rows(EXPORT_HEADERS, export_rows(observations))
