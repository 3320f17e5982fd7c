"""Lifecycle notifications for whatever embeds the server."""

import logging
from typing import Callable, Dict, List

logger = logging.getLogger(__name__)

STARTED = "started"  # (port: int, https: bool)
STOPPED = "stopped"  # ()
ERROR = "error"  # (message: str)
FILE_CHANGED = "file_changed"  # (relative_path: str)

EVENT_NAMES = (STARTED, STOPPED, ERROR, FILE_CHANGED)


class LifecycleEvents:
    """Observer registry for the four lifecycle events.

    Callbacks run synchronously on the emitting thread. A failing callback
    is logged and never interrupts the server or the other callbacks.
    """

    def __init__(self):
        self._callbacks: Dict[str, List[Callable]] = {name: [] for name in EVENT_NAMES}

    def on(self, event: str, callback: Callable) -> Callable[[], None]:
        """Register `callback` for `event`; returns a function that unregisters it."""
        if event not in self._callbacks:
            raise ValueError(
                f"Unknown event {event!r}; expected one of {', '.join(EVENT_NAMES)}"
            )
        self._callbacks[event].append(callback)

        def unsubscribe():
            if callback in self._callbacks[event]:
                self._callbacks[event].remove(callback)

        return unsubscribe

    def emit(self, event: str, *args) -> None:
        for callback in list(self._callbacks[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception(f"Error in {event} callback {callback!r}")
