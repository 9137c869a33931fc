from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Mapping, Optional, TypedDict

from obstracker.core.codes import ObservationStatus, coerce_code

FIELD_PREFIX = "cr650_"

# Observation
F_ID = "cr650_ia_observationid"
F_REFERENCE = "cr650_name"
F_YEAR = "cr650_year"
F_QUARTER = "cr650_quarter"
F_MONTH = "cr650_month"
F_COMPANY = "cr650_companyname"
F_REGION = "cr650_region"
F_AUDIT_NAME = "cr650_auditname"
F_OBSERVATION_TYPE = "cr650_observationtype"
F_OBSERVATION = "cr650_observation"
F_RISK = "cr650_riskrating"
F_DETAILS = "cr650_details"
F_MANAGEMENT_RESPONSE = "cr650_managementresponse"
F_HEAD_OF_DEPARTMENT = "cr650_headofdepartemt"
F_DEPARTMENT = "cr650_departmentresponsible"
F_PERSON = "cr650_personresponsible"
F_EMAIL = "cr650_email"
F_SUPPORT_PERSON = "cr650_supportperson"
F_AUDIT_REPORT_DATE = "cr650_auditreportdate"
F_DUE_DATE = "cr650_duedate"
F_DAYS_OVERDUE = "cr650_daysoverdue"
F_AGING = "cr650_aging"
F_DATE_CLOSED = "cr650_dateclosed"
F_STATUS = "cr650_status"
F_LAST_COMM_DATE = "cr650_lastcommunicationdate"
F_LAST_COMM_PERSON = "cr650_lastpersoncommunicatedwith"
F_IA_WORK = "cr650_iawork"
F_CLOSING_REMARKS = "cr650_closingremarks"
F_LATEST_REVISED_MAP = "cr650_latestrevisedmap"
F_CREATED_ON = "createdon"
F_MODIFIED_ON = "modifiedon"

# ClientUpdate
U_ID = "cr650_iaclientupdateid"
U_REVISED_FEEDBACK = "cr650_revisedmanagementfeedback"
U_REVISED_DUE_DATE = "cr650_revisedduedate"
U_COMMENTS = "cr650_clientcomments"
U_SUBMITTED_DATE = "cr650_submitteddate"
U_SUBMITTED_BY = "cr650_submittedby"
U_STATUS = "cr650_updatestatus"
U_OBSERVATION_REF = "_cr650_observation_value"
U_OBSERVATION_BIND = "cr650_Observation@odata.bind"

# Document
D_ID = "cr650_ia_documentsid"
D_NAME = "cr650_documentname"
D_URL = "cr650_sharepointurl"
D_UPLOADED_BY = "cr650_uploadedby"
D_OBSERVATION_REF = "_cr650_observation_value"

OBSERVATION_ENTITY_SET = "cr650_ia_observations"


class ObservationRecord(TypedDict, total=False):
    cr650_ia_observationid: str
    cr650_name: str
    cr650_year: str
    cr650_quarter: str
    cr650_month: str
    cr650_companyname: str
    cr650_region: str
    cr650_auditname: str
    cr650_observationtype: str
    cr650_observation: str
    cr650_riskrating: int
    cr650_details: str
    cr650_managementresponse: str
    cr650_headofdepartemt: str
    cr650_departmentresponsible: str
    cr650_personresponsible: str
    cr650_email: str
    cr650_supportperson: str
    cr650_auditreportdate: str
    cr650_duedate: str
    cr650_daysoverdue: int
    cr650_aging: int
    cr650_dateclosed: str
    cr650_status: int
    cr650_lastcommunicationdate: str
    cr650_lastpersoncommunicatedwith: str
    cr650_iawork: str
    cr650_closingremarks: str
    cr650_latestrevisedmap: str
    createdon: str
    modifiedon: str


class ClientUpdateRecord(TypedDict, total=False):
    cr650_iaclientupdateid: str
    cr650_revisedmanagementfeedback: str
    cr650_revisedduedate: str
    cr650_clientcomments: str
    cr650_submitteddate: str
    cr650_submittedby: str
    cr650_updatestatus: int
    _cr650_observation_value: str


class DocumentRecord(TypedDict, total=False):
    cr650_ia_documentsid: str
    cr650_documentname: str
    cr650_sharepointurl: str
    cr650_uploadedby: str
    _cr650_observation_value: str
    createdon: str


def as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def as_int(value: Any, default: Optional[int] = None) -> Optional[int]:
    if value is None or isinstance(value, bool) or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def parse_wire_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_wire_date(value: Any) -> Optional[date]:
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    parsed = parse_wire_datetime(value)
    return parsed.date() if parsed is not None else None


def format_wire_datetime(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_wire_date(value: Any) -> Optional[str]:
    """Normalizes a date-ish input to the midnight-UTC form the data API stores."""
    if isinstance(value, datetime):
        return format_wire_datetime(value)
    parsed = parse_wire_date(value)
    if parsed is None:
        return None
    return f"{parsed.isoformat()}T00:00:00Z"


def iso_day(value: Any) -> str:
    parsed = parse_wire_date(value)
    return parsed.isoformat() if parsed is not None else ""


def format_display_date(value: Any, empty: str = "-") -> str:
    parsed = parse_wire_date(value)
    if parsed is None:
        return empty
    return f"{parsed.strftime('%b')} {parsed.day}, {parsed.year}"


def observation_id(record: Mapping[str, Any]) -> str:
    return as_text(record.get(F_ID))


def observation_reference(record: Mapping[str, Any]) -> str:
    return as_text(record.get(F_REFERENCE))


def observation_status(record: Mapping[str, Any]) -> Optional[ObservationStatus]:
    return coerce_code(ObservationStatus, record.get(F_STATUS))


def is_closed(record: Mapping[str, Any]) -> bool:
    return observation_status(record) == ObservationStatus.CLOSED


def update_observation_id(update: Mapping[str, Any]) -> str:
    return as_text(update.get(U_OBSERVATION_REF))


def observation_bind(obs_id: str) -> str:
    return f"/{OBSERVATION_ENTITY_SET}({obs_id})"
