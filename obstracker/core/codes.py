from __future__ import annotations

from enum import Enum, IntEnum
from typing import Any, Optional, Type, TypeVar

E = TypeVar("E", bound=Enum)


class ObservationStatus(IntEnum):
    IN_PROGRESS = 1
    OVERDUE = 2
    CLOSED = 3

    @property
    def label(self) -> str:
        return STATUS_LABELS[self]


class RiskRating(IntEnum):
    CRITICAL = 1
    HIGH = 2
    MODERATE = 3
    LOW = 4

    @property
    def label(self) -> str:
        return RISK_LABELS[self]

    @property
    def css_class(self) -> str:
        return f"risk-{self.label.lower()}"


class AgingBucket(IntEnum):
    NOT_DUE = 1
    UP_TO_6M = 2
    UP_TO_1Y = 3
    UP_TO_2Y = 4
    ABOVE_2Y = 5

    @property
    def label(self) -> str:
        return AGING_LABELS[self]


class ObservationType(str, Enum):
    NEW = "New"
    REPEAT = "Repeat"
    FOLLOW_UP = "Follow-up"


class ClientUpdateStatus(IntEnum):
    PENDING = 1
    ACCEPTED = 2
    REJECTED = 3


class DashboardStatus(str, Enum):
    """Read-only status shown on the client dashboard."""
    PENDING = "pending"
    OVERDUE = "overdue"
    COMPLETED = "completed"


STATUS_LABELS = {
    ObservationStatus.IN_PROGRESS: "In Progress",
    ObservationStatus.OVERDUE: "Overdue",
    ObservationStatus.CLOSED: "Closed",
}

RISK_LABELS = {
    RiskRating.CRITICAL: "Critical",
    RiskRating.HIGH: "High",
    RiskRating.MODERATE: "Moderate",
    RiskRating.LOW: "Low",
}

AGING_LABELS = {
    AgingBucket.NOT_DUE: "Not due",
    AgingBucket.UP_TO_6M: "0-6M",
    AgingBucket.UP_TO_1Y: "6M-1Y",
    AgingBucket.UP_TO_2Y: "1Y-2Y",
    AgingBucket.ABOVE_2Y: "Above 2Y",
}

_LABEL_TABLES = {
    ObservationStatus: STATUS_LABELS,
    RiskRating: RISK_LABELS,
    AgingBucket: AGING_LABELS,
}


def coerce_code(enum_cls: Type[E], value: Any) -> Optional[E]:
    """Accepts a member, its value, a numeric string or a label; returns None otherwise."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return None
        labels = _LABEL_TABLES.get(enum_cls, {})
        for member, label in labels.items():
            if label.lower() == token.lower():
                return member  # type: ignore[return-value]
        for member in enum_cls:
            if str(member.value).lower() == token.lower() or member.name.lower() == token.lower():
                return member
        if token.lstrip("-").isdigit():
            value = int(token)
        else:
            return None
    try:
        return enum_cls(value)
    except ValueError:
        return None


def label_for(enum_cls: Type[E], value: Any, default: str = "") -> str:
    member = coerce_code(enum_cls, value)
    if member is None:
        return default
    labels = _LABEL_TABLES.get(enum_cls)
    if labels is not None:
        return labels[member]
    return str(member.value)
