from __future__ import annotations

import threading
from typing import Any, Callable, Dict, FrozenSet, List, Literal, Tuple

from pydantic import BaseModel, ConfigDict, Field

from obstracker.core.records import F_DUE_DATE
from obstracker.rules.filters import Page, TrackerFilters, apply_tracker_filters, paginate, sort_rows

ActionType = Literal[
    "rows_loaded",
    "filter_changed",
    "filters_cleared",
    "page_next",
    "page_prev",
    "page_set",
    "sort_changed",
]

SORTABLE_FIELDS = {
    "cr650_duedate",
    "cr650_year",
    "cr650_riskrating",
    "cr650_status",
    "cr650_auditname",
    "cr650_personresponsible",
    "cr650_daysoverdue",
    "createdon",
}


class Action(BaseModel):
    type: ActionType
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class TrackerState(BaseModel):
    rows: Tuple[Dict[str, Any], ...] = ()
    filtered: Tuple[Dict[str, Any], ...] = ()
    filters: TrackerFilters = TrackerFilters()
    pending_update_ids: FrozenSet[str] = frozenset()
    page: int = 1
    page_size: int = 20
    sort_by: str = F_DUE_DATE
    descending: bool = True

    model_config = ConfigDict(frozen=True)

    def current_page(self) -> Page:
        return paginate(list(self.filtered), self.page, self.page_size)

    def total_pages(self) -> int:
        return self.current_page().total_pages


def _refiltered(state: TrackerState, **changes: Any) -> TrackerState:
    draft = state.model_copy(update=changes)
    ordered = sort_rows(list(draft.rows), draft.sort_by, descending=draft.descending)
    filtered = apply_tracker_filters(ordered, draft.filters)
    return draft.model_copy(update={"rows": tuple(ordered), "filtered": tuple(filtered), "page": 1})


def reduce(state: TrackerState, action: Action) -> TrackerState:
    """Pure transition; returns the same instance when nothing changes."""
    payload = action.payload
    if action.type == "rows_loaded":
        return _refiltered(
            state,
            rows=tuple(payload.get("rows") or ()),
            pending_update_ids=frozenset(payload.get("pending_update_ids") or ()),
        )
    if action.type == "filter_changed":
        name = str(payload.get("name") or "")
        if name not in TrackerFilters.model_fields:
            raise ValueError(f"Unsupported filter: {name}")
        updated = state.filters.model_copy(update={name: str(payload.get("value") or "").strip()})
        if updated == state.filters:
            return state
        return _refiltered(state, filters=updated)
    if action.type == "filters_cleared":
        if state.filters.is_empty():
            return state
        return _refiltered(state, filters=TrackerFilters())
    if action.type == "sort_changed":
        sort_by = str(payload.get("sort_by") or state.sort_by)
        if sort_by not in SORTABLE_FIELDS:
            raise ValueError(f"Unsupported sort field: {sort_by}")
        descending = bool(payload.get("descending", state.descending))
        if (sort_by, descending) == (state.sort_by, state.descending):
            return state
        return _refiltered(state, sort_by=sort_by, descending=descending)
    if action.type == "page_next":
        if state.page >= state.total_pages():
            return state
        return state.model_copy(update={"page": state.page + 1})
    if action.type == "page_prev":
        if state.page <= 1:
            return state
        return state.model_copy(update={"page": state.page - 1})
    if action.type == "page_set":
        target = max(1, min(int(payload.get("page") or 1), max(1, state.total_pages())))
        if target == state.page:
            return state
        return state.model_copy(update={"page": target})
    raise ValueError(f"Unsupported action: {action.type}")


Subscriber = Callable[[TrackerState], None]


class StateStore:
    """Holds the current TrackerState; subscribers run after every effective change."""

    def __init__(self, initial: TrackerState | None = None) -> None:
        self._state = initial or TrackerState()
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()

    @property
    def state(self) -> TrackerState:
        return self._state

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def dispatch(self, action_type: ActionType, **payload: Any) -> TrackerState:
        with self._lock:
            previous = self._state
            self._state = reduce(previous, Action(type=action_type, payload=payload))
            current = self._state
        if current is not previous:
            for subscriber in list(self._subscribers):
                subscriber(current)
        return current
