"""Timer service for cancellable delayed callbacks.

The dispatcher uses one timer per pending ``for`` duration check: when the watched
entity changes again before the timer expires, the timer is cancelled and the trigger
never fires. Timers are keyed by a unique id; starting a timer with an id that is
already running replaces it.
"""

import asyncio as aio
import logging
from asyncio import Task
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

logger = logging.getLogger(__name__)


@dataclass
class Timer:
    """Represents a single pending timer."""

    id: str
    duration: timedelta
    callback: Callable[[], None]
    task: Task


class TimerService:
    """Manages multiple timers with unique ids, durations and callbacks."""

    def __init__(self):
        self._timers: dict[str, Timer] = {}

    def start_timer(self, timer_id: str, duration: timedelta, callback: Callable[[], None]) -> None:
        """Start a timer which calls ``callback`` once ``duration`` has elapsed.

        Args:
            timer_id: Unique identifier for the timer, an existing timer with this id is cancelled
            duration: How long to wait before calling the callback
            callback: Called without arguments when the timer expires
        """
        self.cancel_timer(timer_id)

        async def timer_task():
            await aio.sleep(duration.total_seconds())
            # Drop the bookkeeping first so the callback may start a timer with the same id
            if self._timers.get(timer_id) is timer:
                del self._timers[timer_id]
            try:
                callback()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Timer %s callback failed", timer_id)

        timer = Timer(
            id=timer_id,
            duration=duration,
            callback=callback,
            task=aio.get_running_loop().create_task(timer_task(), name=f"timer:{timer_id}"),
        )
        self._timers[timer_id] = timer

    def cancel_timer(self, timer_id: str) -> bool:
        """Cancel a timer by its id.

        Returns:
            True if the timer was found and cancelled, False otherwise
        """
        timer = self._timers.pop(timer_id, None)
        if timer is None:
            return False
        if not timer.task.done():
            timer.task.cancel()
        return True

    def cancel_matching(self, prefix: str) -> int:
        """Cancel every timer whose id starts with ``prefix``. Returns how many were cancelled."""
        matching = [timer_id for timer_id in self._timers if timer_id.startswith(prefix)]
        for timer_id in matching:
            self.cancel_timer(timer_id)
        return len(matching)

    def cancel_all(self) -> None:
        for timer_id in list(self._timers):
            self.cancel_timer(timer_id)

    def is_pending(self, timer_id: str) -> bool:
        return timer_id in self._timers

    def __len__(self) -> int:
        return len(self._timers)
