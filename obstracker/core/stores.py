from __future__ import annotations

import copy
import re
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from obstracker.core.codes import ObservationStatus, coerce_code
from obstracker.core.config import ObsTrackerConfig, config
from obstracker.core.errors import RecordNotFoundError
from obstracker.core.records import (
    D_ID,
    D_OBSERVATION_REF,
    F_CREATED_ON,
    F_DUE_DATE,
    F_EMAIL,
    F_ID,
    F_MODIFIED_ON,
    F_REFERENCE,
    F_STATUS,
    U_ID,
    U_OBSERVATION_BIND,
    U_OBSERVATION_REF,
    U_SUBMITTED_DATE,
    as_text,
    format_wire_datetime,
    iso_day,
    update_observation_id,
)
from obstracker.rules.filters import sort_rows

GUID_PATTERN = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
BIND_PATTERN = re.compile(r"\(([^)]+)\)\s*$")
REFERENCE_PREFIX = "IA--"


def is_guid(value: Any) -> bool:
    return bool(GUID_PATTERN.match(as_text(value)))


def bound_observation_id(payload: Dict[str, Any]) -> str:
    direct = update_observation_id(payload)
    if direct:
        return direct
    match = BIND_PATTERN.search(as_text(payload.get(U_OBSERVATION_BIND)))
    return match.group(1) if match else ""


def fetch_observation(store: Any, id_or_reference: str) -> Dict[str, Any]:
    """Direct lookup for GUIDs, reference-name lookup (e.g. IA--0001) otherwise."""
    key = as_text(id_or_reference)
    if is_guid(key):
        return store.get_observation(key)
    return store.find_observation_by_reference(key)


def _utcnow_wire() -> str:
    return format_wire_datetime(datetime.now(timezone.utc))


class InMemoryRecordStore:
    """Process-local stand-in for the data API, same call surface as DataverseRecordStore."""

    def __init__(self) -> None:
        self._observations: Dict[str, Dict[str, Any]] = {}
        self._updates: Dict[str, Dict[str, Any]] = {}
        self._documents: Dict[str, Dict[str, Any]] = {}
        self._sequence = 0
        self._lock = threading.Lock()

    def list_observations(
        self,
        *,
        email: Optional[str] = None,
        due_date: Optional[str] = None,
        status: Any = None,
        order_by: str = F_DUE_DATE,
        descending: bool = False,
        top: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        status_code = coerce_code(ObservationStatus, status)
        with self._lock:
            rows = [copy.deepcopy(row) for row in self._observations.values()]
        if email:
            rows = [r for r in rows if as_text(r.get(F_EMAIL)).lower() == email.strip().lower()]
        if due_date:
            rows = [r for r in rows if iso_day(r.get(F_DUE_DATE)) == iso_day(due_date)]
        if status_code is not None:
            rows = [r for r in rows if coerce_code(ObservationStatus, r.get(F_STATUS)) == status_code]
        rows = sort_rows(rows, order_by, descending=descending)
        return rows[:top] if top else rows

    def get_observation(self, obs_id: str) -> Dict[str, Any]:
        with self._lock:
            row = self._observations.get(obs_id)
            if row is None:
                raise RecordNotFoundError("Observation", obs_id)
            return copy.deepcopy(row)

    def find_observation_by_reference(self, reference: str) -> Dict[str, Any]:
        with self._lock:
            for row in self._observations.values():
                if as_text(row.get(F_REFERENCE)) == reference:
                    return copy.deepcopy(row)
        raise RecordNotFoundError("Observation", reference)

    def create_observation(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = _utcnow_wire()
        with self._lock:
            self._sequence += 1
            row = copy.deepcopy(payload)
            obs_id = as_text(row.get(F_ID)) or str(uuid.uuid4())
            row[F_ID] = obs_id
            row.setdefault(F_REFERENCE, f"{REFERENCE_PREFIX}{self._sequence:04d}")
            row.setdefault(F_CREATED_ON, now)
            row.setdefault(F_MODIFIED_ON, row[F_CREATED_ON])
            self._observations[obs_id] = row
            return copy.deepcopy(row)

    def update_observation(self, obs_id: str, patch: Dict[str, Any]) -> None:
        with self._lock:
            row = self._observations.get(obs_id)
            if row is None:
                raise RecordNotFoundError("Observation", obs_id)
            row.update(copy.deepcopy(patch))
            row[F_MODIFIED_ON] = _utcnow_wire()

    def delete_observation(self, obs_id: str) -> None:
        with self._lock:
            if self._observations.pop(obs_id, None) is None:
                raise RecordNotFoundError("Observation", obs_id)

    def list_client_updates(
        self,
        observation_id: Optional[str] = None,
        *,
        top: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [copy.deepcopy(row) for row in self._updates.values()]
        if observation_id:
            rows = [r for r in rows if update_observation_id(r) == observation_id]
        rows = sort_rows(rows, U_SUBMITTED_DATE, descending=True)
        return rows[:top] if top else rows

    def create_client_update(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            row = copy.deepcopy(payload)
            row[U_ID] = as_text(row.get(U_ID)) or str(uuid.uuid4())
            row[U_OBSERVATION_REF] = bound_observation_id(row)
            row.pop(U_OBSERVATION_BIND, None)
            row.setdefault(F_CREATED_ON, _utcnow_wire())
            self._updates[row[U_ID]] = row
            return copy.deepcopy(row)

    def update_client_update(self, update_id: str, patch: Dict[str, Any]) -> None:
        with self._lock:
            row = self._updates.get(update_id)
            if row is None:
                raise RecordNotFoundError("ClientUpdate", update_id)
            row.update(copy.deepcopy(patch))

    def list_documents(self, observation_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = [copy.deepcopy(r) for r in self._documents.values() if as_text(r.get(D_OBSERVATION_REF)) == observation_id]
        return sort_rows(rows, F_CREATED_ON)

    def add_document(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            row = copy.deepcopy(payload)
            row[D_ID] = as_text(row.get(D_ID)) or str(uuid.uuid4())
            row.setdefault(F_CREATED_ON, _utcnow_wire())
            self._documents[row[D_ID]] = row
            return copy.deepcopy(row)


def create_record_store_from_env(settings: Optional[ObsTrackerConfig] = None):
    settings = settings or config
    if settings.record_store == "dataverse":
        from obstracker.core.dataverse import DataverseRecordStore

        return DataverseRecordStore.from_config(settings)
    return InMemoryRecordStore()
