"""
Minimal callback registry used for transport lifecycle notifications.
"""

import logging
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class EventHandler:
    """Ordered list of listeners invoked synchronously on the caller's thread."""

    def __init__(self, name: str = "event"):
        self._name = name
        self._callbacks: list[Callable[..., Any]] = []

    def add_listener(self, callback: Callable[..., Any]) -> Callable[[], None]:
        """Register ``callback``. Returns a function that unregisters it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            self.remove_listener(callback)

        return unsubscribe

    def remove_listener(self, callback: Callable[..., Any]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def invoke(self, *args: Any, **kwargs: Any) -> None:
        for callback in list(self._callbacks):
            try:
                callback(*args, **kwargs)
            except Exception:
                # One broken listener must not starve the rest
                logger.exception(f"Listener for '{self._name}' raised")

    def __len__(self) -> int:
        return len(self._callbacks)

    def clear(self) -> None:
        self._callbacks.clear()
