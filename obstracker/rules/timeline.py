from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping

from obstracker.core.codes import ObservationStatus, label_for
from obstracker.core.records import (
    F_AUDIT_NAME,
    F_CREATED_ON,
    F_MODIFIED_ON,
    F_STATUS,
    U_COMMENTS,
    U_SUBMITTED_BY,
    U_SUBMITTED_DATE,
    as_text,
    parse_wire_datetime,
)

AUDITOR_ACTOR = "Internal Audit Team"


def build_timeline(observation: Mapping[str, Any], updates: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """History entries for the detail panel, newest first."""
    timeline: List[Dict[str, Any]] = []
    created = as_text(observation.get(F_CREATED_ON))
    modified = as_text(observation.get(F_MODIFIED_ON))

    if created:
        timeline.append(
            {
                "type": "observation_created",
                "actor": AUDITOR_ACTOR,
                "actorRole": "Auditor",
                "date": created,
                "action": "Created observation record",
                "description": f"Initial draft created from {as_text(observation.get(F_AUDIT_NAME)) or 'audit report'}.",
            }
        )

    for update in updates:
        timeline.append(
            {
                "type": "client_update",
                "actor": as_text(update.get(U_SUBMITTED_BY)) or "Client",
                "actorRole": "Client",
                "date": as_text(update.get(U_SUBMITTED_DATE)),
                "action": "Submitted revised feedback",
                "description": as_text(update.get(U_COMMENTS))
                or "Updated management response and requested extension.",
            }
        )

    if modified and modified != created:
        timeline.append(
            {
                "type": "status_change",
                "actor": AUDITOR_ACTOR,
                "actorRole": "Auditor",
                "date": modified,
                "action": "Updated observation",
                "description": f"Status changed to {label_for(ObservationStatus, observation.get(F_STATUS), 'Unknown')}.",
            }
        )

    floor = datetime.min.replace(tzinfo=timezone.utc)
    timeline.sort(key=lambda entry: parse_wire_datetime(entry["date"]) or floor, reverse=True)
    return timeline
