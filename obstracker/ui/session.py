from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, Optional

from obstracker.rules.filters import TrackerFilters
from obstracker.ui.debounce import DEFAULT_WAIT_S, Debouncer
from obstracker.ui.state import StateStore, TrackerState


class TrackerSession:
    """Tracker screen state plus the renderer subscribed to it."""

    def __init__(
        self,
        render: Callable[[TrackerState], Any],
        *,
        page_size: int = 20,
        search_wait_s: float = DEFAULT_WAIT_S,
        timer_factory: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.store = StateStore(TrackerState(page_size=page_size))
        self.rendered: Any = None

        def _render(state: TrackerState) -> None:
            self.rendered = render(state)

        self.store.subscribe(_render)
        debounce_kwargs: Dict[str, Any] = {"timer_factory": timer_factory} if timer_factory else {}
        self._search = Debouncer(self.search_now, search_wait_s, **debounce_kwargs)

    @property
    def state(self) -> TrackerState:
        return self.store.state

    def load(self, rows: Iterable[Dict[str, Any]], pending_update_ids: Iterable[str] = ()) -> TrackerState:
        return self.store.dispatch("rows_loaded", rows=list(rows), pending_update_ids=list(pending_update_ids))

    def search(self, value: str) -> None:
        self._search(value)

    def search_now(self, value: str) -> TrackerState:
        return self.store.dispatch("filter_changed", name="search", value=value)

    def apply_filters(self, filters: TrackerFilters) -> TrackerState:
        for name, value in filters.model_dump().items():
            self.store.dispatch("filter_changed", name=name, value=value)
        return self.state

    def sort(self, sort_by: str, descending: bool) -> TrackerState:
        return self.store.dispatch("sort_changed", sort_by=sort_by, descending=descending)

    def go_to_page(self, page: int) -> TrackerState:
        return self.store.dispatch("page_set", page=page)

    def next_page(self) -> TrackerState:
        return self.store.dispatch("page_next")

    def previous_page(self) -> TrackerState:
        return self.store.dispatch("page_prev")

    def clear_filters(self) -> TrackerState:
        return self.store.dispatch("filters_cleared")
