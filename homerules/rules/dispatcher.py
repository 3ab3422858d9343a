"""Module for matching state changes, events and wall-clock time against registered triggers."""

import itertools
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from functools import partial
from typing import Any, Optional

from homerules.rules.clock import ClockService, ScheduledTrigger, SunLocation
from homerules.rules.condition import match_state
from homerules.rules.model import EventTrigger, StateTrigger, TimeTrigger, TriggerSpec
from homerules.rules.timers import TimerService
from homerules.states import Entity, StateChangedEvent, StateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TriggerContext:
    """Describes why an automation was triggered. Exposed to templates as ``trigger``."""

    kind: str
    automation_id: str
    now: datetime
    id: Optional[str] = None
    entity_id: Optional[str] = None
    from_state: Optional[Entity] = None
    to_state: Optional[Entity] = None
    duration: Optional[timedelta] = None
    event_type: Optional[str] = None
    event_data: Mapping[str, Any] = field(default_factory=dict)

    @property
    def description(self) -> str:
        match self.kind:
            case "state":
                return f"state of {self.entity_id}"
            case "time":
                return f"time {self.now.isoformat()}"
            case "event":
                return f"event {self.event_type}"
            case _:
                return self.kind


@dataclass(frozen=True)
class TriggerEvent:
    """Emitted to the automation runtime when one of an automation's triggers fires."""

    automation_id: str
    context: TriggerContext


@dataclass(frozen=True)
class _Registration:
    key: str
    automation_id: str
    trigger: TriggerSpec


def _watched_value(entity: Optional[Entity], attribute: Optional[str]) -> Any:
    if entity is None:
        return None
    if attribute:
        return entity.attributes.get(attribute)
    return entity.state


def _state_trigger_matches(trigger: StateTrigger, old_value: Any, new_value: Any) -> bool:
    if old_value == new_value:
        return False
    if trigger.from_ is not None and not match_state(old_value, trigger.from_):
        return False
    if trigger.to is not None and not match_state(new_value, trigger.to):
        return False
    return True


def _event_data_matches(expected: Mapping[str, Any], actual: Mapping[str, Any]) -> bool:
    return all(key in actual and actual[key] == value for key, value in expected.items())


class TriggerDispatcher:
    """Matches store mutations, fired events and clock ticks against registered triggers.

    Matching runs synchronously inside the state store's write; triggers with a ``for``
    duration start a cancellable timer instead, which any further change of the entity
    cancels.
    """

    def __init__(
        self,
        store: StateStore,
        on_trigger: Callable[[TriggerEvent], None],
        location: Optional[SunLocation] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._on_trigger = on_trigger
        self._location = location or SunLocation()
        self._clock = clock or self._location.now
        self._timer_service = TimerService()
        self._clock_service = ClockService(self._location, self._on_time_due, self._clock)
        self._keys = itertools.count()
        self._unsubscribe: Optional[Callable[[], None]] = None

        # EntityId -> state trigger registrations watching it
        self._state_triggers: dict[str, list[_Registration]] = {}
        # EventType -> event trigger registrations
        self._event_triggers: dict[str, list[_Registration]] = {}

    @property
    def clock_service(self) -> ClockService:
        return self._clock_service

    @property
    def timer_service(self) -> TimerService:
        return self._timer_service

    def register(self, trigger: TriggerSpec, automation_id: str) -> None:
        """Registers a trigger on behalf of an automation."""
        registration = _Registration(f"{automation_id}#{next(self._keys)}", automation_id, trigger)
        match trigger:
            case StateTrigger() as state_trigger:
                for entity_id in state_trigger.entity_ids:
                    self._state_triggers.setdefault(entity_id, []).append(registration)
            case EventTrigger() as event_trigger:
                self._event_triggers.setdefault(event_trigger.event_type, []).append(registration)
            case TimeTrigger() as time_trigger:
                self._clock_service.schedule(automation_id, time_trigger)
            case _:
                raise ValueError(f"Unknown trigger type: {type(trigger)}")

    def unregister(self, automation_id: str) -> None:
        """Removes every trigger of an automation, including pending duration checks."""
        for registry in (self._state_triggers, self._event_triggers):
            for key in list(registry):
                remaining = [r for r in registry[key] if r.automation_id != automation_id]
                if remaining:
                    registry[key] = remaining
                else:
                    del registry[key]
        self._timer_service.cancel_matching(f"{automation_id}#")
        self._clock_service.unschedule(automation_id)

    def watched_entities(self) -> set[str]:
        return set(self._state_triggers)

    def start(self) -> None:
        """Subscribes to the state store and starts the wall-clock loop."""
        if self._unsubscribe is None:
            self._unsubscribe = self._store.subscribe(self._on_state_changed)
        self._clock_service.start()

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._timer_service.cancel_all()
        await self._clock_service.stop()

    def _emit(self, automation_id: str, context: TriggerContext) -> None:
        logger.debug("Trigger fired for %s: %s", automation_id, context.description)
        try:
            self._on_trigger(TriggerEvent(automation_id, context))
        except Exception:  # pylint: disable=broad-except
            logger.exception("Failed to dispatch trigger of %s", automation_id)

    def _on_state_changed(self, event: StateChangedEvent) -> None:
        registrations = self._state_triggers.get(event.entity_id)
        if not registrations:
            return
        now = self._clock()
        for registration in list(registrations):
            trigger = registration.trigger
            old_value = _watched_value(event.old_state, trigger.attribute)
            new_value = _watched_value(event.new_state, trigger.attribute)
            if event.old_state is not None and old_value == new_value:
                continue

            # The watched value changed, so any pending duration check is void
            timer_id = f"{registration.key}:{event.entity_id}"
            self._timer_service.cancel_timer(timer_id)

            if not _state_trigger_matches(trigger, old_value, new_value):
                continue
            context = TriggerContext(
                kind="state",
                automation_id=registration.automation_id,
                now=now,
                id=trigger.id,
                entity_id=event.entity_id,
                from_state=event.old_state,
                to_state=event.new_state,
                duration=trigger.for_,
            )
            if trigger.for_:
                self._timer_service.start_timer(
                    timer_id, trigger.for_, partial(self._emit, registration.automation_id, context)
                )
            else:
                self._emit(registration.automation_id, context)

    def fire_event(self, event_type: str, event_data: Optional[Mapping[str, Any]] = None) -> int:
        """Fires a named event. Returns the number of triggers it matched."""
        event_data = dict(event_data or {})
        logger.debug("Event fired: %s", event_type)
        matched = 0
        now = self._clock()
        for registration in list(self._event_triggers.get(event_type, [])):
            trigger = registration.trigger
            if not _event_data_matches(trigger.event_data, event_data):
                continue
            matched += 1
            self._emit(
                registration.automation_id,
                TriggerContext(
                    kind="event",
                    automation_id=registration.automation_id,
                    now=now,
                    id=trigger.id,
                    event_type=event_type,
                    event_data=event_data,
                ),
            )
        return matched

    def tick(self, now: Optional[datetime] = None) -> list[ScheduledTrigger]:
        """Fires every time trigger whose scheduled instant has passed."""
        return self._clock_service.tick(now)

    def _on_time_due(self, entry: ScheduledTrigger) -> None:
        self._emit(
            entry.automation_id,
            TriggerContext(kind="time", automation_id=entry.automation_id, now=entry.due, id=entry.trigger.id),
        )
