"""Observer list for queue notifications."""

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

COMPLETED = "completed"
FAILED = "failed"
PROGRESS = "progress"
REMOVED = "removed"
ERROR = "error"

EVENTS = (COMPLETED, FAILED, PROGRESS, REMOVED, ERROR)


class QueueEvents:
    """Register callbacks per event name; sync and async callbacks are both accepted.

    A listener that raises is logged and does not affect the job.
    """

    def __init__(self):
        self._listeners: dict[str, list[Callable]] = defaultdict(list)

    def on(self, event: str, callback: Callable) -> Callable:
        if event not in EVENTS:
            raise ValueError(f"Unknown event: {event}")
        self._listeners[event].append(callback)
        return callback

    def off(self, event: str, callback: Callable) -> None:
        try:
            self._listeners[event].remove(callback)
        except ValueError:
            pass

    async def emit(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners.get(event, ())):
            try:
                outcome = callback(*args)
                if asyncio.iscoroutine(outcome):
                    await outcome
            except Exception:
                logger.exception(f"Listener for '{event}' raised")
