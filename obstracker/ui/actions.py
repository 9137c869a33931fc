from __future__ import annotations

from typing import Any, Callable, Dict, List

Handler = Callable[..., Any]


class UnknownAction(KeyError):
    pass


class ActionRegistry:
    """Maps data-action identifiers rendered into the views to handler callables."""

    def __init__(self) -> None:
        self._handlers: Dict[str, Handler] = {}

    def register(self, action_id: str) -> Callable[[Handler], Handler]:
        def decorator(fn: Handler) -> Handler:
            if action_id in self._handlers:
                raise ValueError(f"Action already registered: {action_id}")
            self._handlers[action_id] = fn
            return fn

        return decorator

    def actions(self) -> List[str]:
        return sorted(self._handlers)

    def __contains__(self, action_id: object) -> bool:
        return action_id in self._handlers

    def dispatch(self, action_id: str, **payload: Any) -> Any:
        handler = self._handlers.get(action_id)
        if handler is None:
            raise UnknownAction(action_id)
        return handler(**payload)
