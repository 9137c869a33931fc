from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from pydantic import BaseModel

from obstracker.core.codes import AgingBucket, ClientUpdateStatus, ObservationStatus, coerce_code
from obstracker.core.errors import FieldError, ReconcileConflict, ValidationFailed
from obstracker.core.records import (
    F_AGING,
    F_CLOSING_REMARKS,
    F_DATE_CLOSED,
    F_DUE_DATE,
    F_EMAIL,
    F_IA_WORK,
    F_LAST_COMM_DATE,
    F_LATEST_REVISED_MAP,
    F_PERSON,
    F_STATUS,
    U_COMMENTS,
    U_OBSERVATION_BIND,
    U_REVISED_DUE_DATE,
    U_REVISED_FEEDBACK,
    U_STATUS,
    U_SUBMITTED_BY,
    U_SUBMITTED_DATE,
    as_text,
    format_display_date,
    format_wire_date,
    format_wire_datetime,
    is_closed,
    observation_bind,
    observation_id,
    parse_wire_datetime,
    update_observation_id,
)

REJECTION_NOTE_SEPARATOR = "\n\n"
DEFAULT_SUBMITTER = "Client User"


class ReconcileResult(BaseModel):
    observation_patch: Dict[str, Any]
    update_patch: Optional[Dict[str, Any]] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _submitted_at(update: Mapping[str, Any]) -> datetime:
    return parse_wire_datetime(update.get(U_SUBMITTED_DATE)) or datetime.min.replace(tzinfo=timezone.utc)


def latest_client_update(updates: Iterable[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    rows = [dict(u) for u in updates if isinstance(u, Mapping)]
    if not rows:
        return None
    return max(rows, key=_submitted_at)


def update_is_pending(update: Mapping[str, Any], *, track_resolution: bool = True) -> bool:
    if not track_resolution:
        return True
    status = coerce_code(ClientUpdateStatus, update.get(U_STATUS))
    # Rows written before resolution tracking carry no flag; treat them as pending.
    return status in (None, ClientUpdateStatus.PENDING)


def pending_update_ids(updates: Iterable[Mapping[str, Any]], *, track_resolution: bool = True) -> Set[str]:
    ids: Set[str] = set()
    for update in updates:
        obs_id = update_observation_id(update)
        if obs_id and update_is_pending(update, track_resolution=track_resolution):
            ids.add(obs_id)
    return ids


def has_pending_client_update(
    obs_id: str,
    updates: Iterable[Mapping[str, Any]],
    *,
    track_resolution: bool = True,
) -> bool:
    return obs_id in pending_update_ids(updates, track_resolution=track_resolution)


def _resolution_patch(status: ClientUpdateStatus, track_resolution: bool) -> Optional[Dict[str, Any]]:
    if not track_resolution:
        return None
    return {U_STATUS: int(status)}


def accept_client_update(
    observation: Mapping[str, Any],
    update: Optional[Mapping[str, Any]],
    closing_remarks: str,
    *,
    now: Optional[datetime] = None,
    track_resolution: bool = True,
) -> ReconcileResult:
    remarks = as_text(closing_remarks)
    if not remarks:
        raise ValidationFailed(
            [FieldError(field=F_CLOSING_REMARKS, message="Closing remarks are required when accepting a client response.")]
        )
    if is_closed(observation):
        raise ReconcileConflict(f"Observation {observation_id(observation)} is already closed")

    moment = now or _utcnow()
    patch: Dict[str, Any] = {
        F_STATUS: int(ObservationStatus.CLOSED),
        F_DATE_CLOSED: format_wire_datetime(moment),
        F_CLOSING_REMARKS: remarks,
        F_AGING: int(AgingBucket.NOT_DUE),
    }
    if update:
        revised_due = format_wire_date(update.get(U_REVISED_DUE_DATE))
        if revised_due:
            patch[F_DUE_DATE] = revised_due
        revised_feedback = as_text(update.get(U_REVISED_FEEDBACK))
        if revised_feedback:
            patch[F_LATEST_REVISED_MAP] = revised_feedback
    return ReconcileResult(
        observation_patch=patch,
        update_patch=_resolution_patch(ClientUpdateStatus.ACCEPTED, track_resolution) if update else None,
    )


def rejection_note(reason: str, when: date) -> str:
    return f"[{format_display_date(when)}] Client response rejected: {reason}"


def append_note(existing: Any, note: str) -> str:
    current = "" if existing is None else str(existing)
    if current:
        return current + REJECTION_NOTE_SEPARATOR + note
    return note


def reject_client_update(
    observation: Mapping[str, Any],
    update: Optional[Mapping[str, Any]],
    reason: str,
    *,
    now: Optional[datetime] = None,
    track_resolution: bool = True,
) -> ReconcileResult:
    text = as_text(reason)
    if not text:
        raise ValidationFailed([FieldError(field="reason", message="Please provide a reason for rejection.")])
    if is_closed(observation):
        raise ReconcileConflict(f"Observation {observation_id(observation)} is already closed")

    moment = now or _utcnow()
    patch: Dict[str, Any] = {
        F_STATUS: int(ObservationStatus.IN_PROGRESS),
        F_IA_WORK: append_note(observation.get(F_IA_WORK), rejection_note(text, moment.date())),
        F_LAST_COMM_DATE: format_wire_datetime(moment),
    }
    return ReconcileResult(
        observation_patch=patch,
        update_patch=_resolution_patch(ClientUpdateStatus.REJECTED, track_resolution) if update else None,
    )


def submitter_for(observation: Mapping[str, Any]) -> str:
    return as_text(observation.get(F_PERSON)) or as_text(observation.get(F_EMAIL)) or DEFAULT_SUBMITTER


def client_access_allowed(observation: Mapping[str, Any], email: Optional[str]) -> bool:
    requested = as_text(email).lower()
    owner = as_text(observation.get(F_EMAIL)).lower()
    if not requested or not owner:
        return True
    return requested == owner


def build_client_update_payload(
    observation: Mapping[str, Any],
    form: Mapping[str, Any],
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    errors: List[FieldError] = []
    feedback = as_text(form.get("revisedFeedback"))
    if not feedback:
        errors.append(FieldError(field="revisedFeedback", message="Revised management feedback is required"))
    raw_due = form.get("revisedDueDate")
    revised_due = format_wire_date(raw_due)
    if not as_text(raw_due):
        errors.append(FieldError(field="revisedDueDate", message="Revised due date is required"))
    elif revised_due is None:
        errors.append(FieldError(field="revisedDueDate", message="Revised due date is invalid"))
    obs_id = observation_id(observation)
    if not obs_id:
        errors.append(FieldError(field="observationId", message="Observation id is missing"))
    if errors:
        raise ValidationFailed(errors)

    return {
        U_REVISED_FEEDBACK: feedback,
        U_REVISED_DUE_DATE: revised_due,
        U_COMMENTS: as_text(form.get("clientComments")),
        U_SUBMITTED_DATE: format_wire_datetime(now or _utcnow()),
        U_SUBMITTED_BY: submitter_for(observation),
        U_STATUS: int(ClientUpdateStatus.PENDING),
        U_OBSERVATION_BIND: observation_bind(obs_id),
    }
