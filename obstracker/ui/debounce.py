from __future__ import annotations

import threading
from typing import Any, Callable, Optional

DEFAULT_WAIT_S = 0.3


class Debouncer:
    """Runs fn once after `wait_s` of quiet; each call restarts the wait."""

    def __init__(
        self,
        fn: Callable[..., Any],
        wait_s: float = DEFAULT_WAIT_S,
        *,
        timer_factory: Callable[[float, Callable[[], None]], Any] = threading.Timer,
    ) -> None:
        self.fn = fn
        self.wait_s = wait_s
        self._timer_factory = timer_factory
        self._timer: Optional[Any] = None
        self._lock = threading.Lock()

    def __call__(self, *args: Any, **kwargs: Any) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = self._timer_factory(self.wait_s, lambda: self.fn(*args, **kwargs))
            self._timer.start()

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
