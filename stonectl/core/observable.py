"""Minimal observer used by the stores and controllers."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

T = TypeVar("T")

LOGGER = logging.getLogger(__name__)


class Observable(Generic[T]):
    """Synchronous fan-out to registered listeners.

    ``subscribe`` returns a callable that unregisters the listener. Listeners
    run in registration order in the same tick as ``emit``; a listener that
    raises is logged and skipped so later listeners still see the value.
    """

    def __init__(self) -> None:
        self._listeners: list[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: Callable[[T], None]) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def emit(self, value: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(value)
            except Exception:
                LOGGER.exception("Listener %r failed", listener)

    def __len__(self) -> int:
        return len(self._listeners)
