"""Instance-owned listener registries."""

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Listeners(Generic[T]):
    """Set of callbacks notified in registration order.

    Each component owns its own registries; nothing is process-wide.
    A failing listener is logged and skipped so the remaining listeners
    still receive the value.
    """

    def __init__(self, name: str = "listeners"):
        self.name = name
        self._callbacks: list[Callable[[T], None]] = []

    def subscribe(self, callback: Callable[[T], None]) -> Callable[[], None]:
        """Register a callback.

        Returns:
            Disposer that unsubscribes the callback (safe to call twice)
        """
        self._callbacks.append(callback)

        def dispose() -> None:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

        return dispose

    def emit(self, value: T) -> None:
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception:
                logger.exception("Listener in %s failed", self.name)

    def clear(self) -> None:
        self._callbacks.clear()

    def __len__(self) -> int:
        return len(self._callbacks)
