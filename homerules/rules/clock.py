"""Wall-clock scheduling for time triggers.

Scheduled triggers live in a time-ordered heap. Each tick fires every entry whose
instant has passed and pushes its next occurrence back onto the heap. Sunrise and
sunset are computed per day from the configured location with ``astral`` rather than
being fixed times.
"""

import asyncio as aio
import heapq
import itertools
import logging
from asyncio import Task
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Optional

import pytz
from astral import Observer
from astral.sun import sunrise, sunset

from homerules.rules.model import TimeTrigger

logger = logging.getLogger(__name__)

# Give up looking for a sunrise/sunset after this many days (polar night or day)
_MAX_SEARCH_DAYS = 366


@dataclass
class SunLocation:
    """Where on earth the engine runs, used for sunrise/sunset and local time."""

    latitude: float = 0.0
    longitude: float = 0.0
    time_zone: pytz.BaseTzInfo = pytz.utc
    elevation: float = 0.0

    @property
    def observer(self) -> Observer:
        return Observer(latitude=self.latitude, longitude=self.longitude, elevation=self.elevation)

    def sun_event(self, event: str, day: date) -> Optional[datetime]:
        """The sunrise or sunset on a day, or None when the sun does not rise/set that day."""
        calculate = sunrise if event == "sunrise" else sunset
        try:
            return calculate(self.observer, date=day, tzinfo=self.time_zone)
        except ValueError:
            return None

    def now(self) -> datetime:
        return datetime.now(self.time_zone)


def next_occurrence(trigger: TimeTrigger, after: datetime, location: SunLocation) -> Optional[datetime]:
    """The first instant strictly after ``after`` at which the trigger fires."""
    local_after = after.astimezone(location.time_zone)
    # Start a day early, a positive offset can push yesterday's instant past ``after``
    start = local_after.date() - timedelta(days=1)
    for days in range(_MAX_SEARCH_DAYS + 2):
        day = start + timedelta(days=days)
        if trigger.at in ("sunrise", "sunset"):
            base = location.sun_event(trigger.at, day)
            if base is None:
                continue
        else:
            naive = datetime.combine(day, trigger.at.replace(tzinfo=None))
            base = location.time_zone.localize(naive)
        candidate = location.time_zone.normalize(base + trigger.offset)
        if candidate > after:
            return candidate
    return None


@dataclass(order=True)
class ScheduledTrigger:
    """A time trigger waiting in the schedule heap."""

    due: datetime
    sequence: int
    automation_id: str = field(compare=False)
    trigger: TimeTrigger = field(compare=False)


class ScheduleQueue:
    """Time-ordered queue of scheduled time triggers."""

    def __init__(self, location: SunLocation):
        self._location = location
        self._heap: list[ScheduledTrigger] = []
        self._counter = itertools.count()

    def add(self, automation_id: str, trigger: TimeTrigger, now: datetime) -> Optional[datetime]:
        """Schedules the next occurrence after ``now``. Returns it, or None if it never occurs."""
        due = next_occurrence(trigger, now, self._location)
        if due is None:
            logger.warning("Time trigger %s of %s never occurs, not scheduled", trigger.at, automation_id)
            return None
        heapq.heappush(self._heap, ScheduledTrigger(due, next(self._counter), automation_id, trigger))
        return due

    def remove(self, automation_id: str) -> int:
        before = len(self._heap)
        self._heap = [entry for entry in self._heap if entry.automation_id != automation_id]
        heapq.heapify(self._heap)
        return before - len(self._heap)

    @property
    def next_due(self) -> Optional[datetime]:
        return self._heap[0].due if self._heap else None

    def pop_due(self, now: datetime) -> list[ScheduledTrigger]:
        """Removes every entry due at or before ``now`` and reschedules its next occurrence."""
        fired: list[ScheduledTrigger] = []
        while self._heap and self._heap[0].due <= now:
            entry = heapq.heappop(self._heap)
            fired.append(entry)
        for entry in fired:
            # Missed occurrences are not replayed, the next one is computed from now
            self.add(entry.automation_id, entry.trigger, max(entry.due, now))
        return fired

    def entries(self) -> list[ScheduledTrigger]:
        return sorted(self._heap)

    def __len__(self) -> int:
        return len(self._heap)


class ClockService:
    """Runs the schedule queue against the wall clock."""

    def __init__(
        self,
        location: SunLocation,
        on_due: Callable[[ScheduledTrigger], None],
        clock: Optional[Callable[[], datetime]] = None,
        max_sleep: float = 60.0,
    ):
        self._location = location
        self._on_due = on_due
        self._clock = clock or location.now
        self._max_sleep = max_sleep
        self._queue = ScheduleQueue(location)
        self._wakeup = aio.Event()
        self._task: Optional[Task] = None

    @property
    def queue(self) -> ScheduleQueue:
        return self._queue

    def schedule(self, automation_id: str, trigger: TimeTrigger) -> Optional[datetime]:
        due = self._queue.add(automation_id, trigger, self._clock())
        if due is not None:
            logger.debug("Scheduled %s time trigger at %s", automation_id, due.isoformat())
        self._wakeup.set()
        return due

    def unschedule(self, automation_id: str) -> int:
        return self._queue.remove(automation_id)

    def tick(self, now: Optional[datetime] = None) -> list[ScheduledTrigger]:
        """Fires every scheduled trigger whose instant has passed."""
        fired = self._queue.pop_due(now or self._clock())
        for entry in fired:
            try:
                self._on_due(entry)
            except Exception:  # pylint: disable=broad-except
                logger.exception("Time trigger of %s failed", entry.automation_id)
        return fired

    async def _run(self):
        while True:
            now = self._clock()
            self.tick(now)
            timeout = self._max_sleep
            next_due = self._queue.next_due
            if next_due is not None:
                timeout = max(0.0, min(timeout, (next_due - now).total_seconds()))
            self._wakeup.clear()
            try:
                await aio.wait_for(self._wakeup.wait(), timeout)
            except aio.TimeoutError:
                pass

    def start(self):
        if self._task is None or self._task.done():
            self._task = aio.get_running_loop().create_task(self._run(), name="clock")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except aio.CancelledError:
            pass
        self._task = None
