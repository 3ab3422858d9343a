"""Tests for trigger matching."""

import asyncio
from datetime import timedelta

import pytest

from homerules.rules.dispatcher import TriggerDispatcher
from homerules.rules.model import EventTrigger, StateTrigger, TimeTrigger
from homerules.rules.timers import TimerService


@pytest.fixture
async def dispatched(store, clock):
    events = []
    dispatcher = TriggerDispatcher(store, events.append, clock=clock)
    dispatcher.start()
    yield dispatcher, events
    await dispatcher.stop()


class TestStateTriggers:
    async def test_fires_on_change(self, store, dispatched):
        dispatcher, events = dispatched
        dispatcher.register(StateTrigger(entity_id="light.kitchen"), "kitchen")

        store.set("light.kitchen", "on")

        assert len(events) == 1
        context = events[0].context
        assert events[0].automation_id == "kitchen"
        assert context.kind == "state"
        assert context.from_state is None
        assert context.to_state.state == "on"

    async def test_from_and_to_filters(self, store, dispatched):
        dispatcher, events = dispatched
        store.set("sensor.door", "closed")
        dispatcher.register(StateTrigger(entity_id="sensor.door", **{"from": "closed", "to": "open"}), "door")

        store.set("sensor.door", "ajar")
        store.set("sensor.door", "open")
        assert events == []

        store.set("sensor.door", "closed")
        store.set("sensor.door", "open")
        assert len(events) == 1

    async def test_yaml_boolean_to_matches_on(self, store, dispatched):
        dispatcher, events = dispatched
        store.set("switch.fan", "off")
        dispatcher.register(StateTrigger.model_validate({"entity_id": "switch.fan", "to": True}), "fan")

        store.set("switch.fan", "on")
        assert len(events) == 1

    async def test_unchanged_value_does_not_fire(self, store, dispatched):
        dispatcher, events = dispatched
        store.set("light.kitchen", "on", {"brightness": 10})
        dispatcher.register(StateTrigger(entity_id="light.kitchen"), "kitchen")

        store.set("light.kitchen", "on", {"brightness": 200})
        assert events == []

    async def test_attribute_trigger(self, store, dispatched):
        dispatcher, events = dispatched
        store.set("light.kitchen", "on", {"brightness": 10})
        dispatcher.register(StateTrigger(entity_id="light.kitchen", attribute="brightness"), "dim")

        store.set("light.kitchen", "on", {"brightness": 200})
        store.set("light.kitchen", "off", {"brightness": 200})

        assert len(events) == 1

    async def test_multiple_entities(self, store, dispatched):
        dispatcher, events = dispatched
        dispatcher.register(StateTrigger(entity_id=["light.a", "light.b"], to="on"), "lights")

        store.set("light.a", "on")
        store.set("light.b", "on")
        store.set("light.c", "on")

        assert [e.context.entity_id for e in events] == ["light.a", "light.b"]

    async def test_registration_order_is_dispatch_order(self, store, dispatched):
        dispatcher, events = dispatched
        dispatcher.register(StateTrigger(entity_id="light.a"), "first")
        dispatcher.register(StateTrigger(entity_id="light.a"), "second")

        store.set("light.a", "on")
        assert [e.automation_id for e in events] == ["first", "second"]

    async def test_unregister(self, store, dispatched):
        dispatcher, events = dispatched
        dispatcher.register(StateTrigger(entity_id="light.a"), "lights")
        dispatcher.unregister("lights")

        store.set("light.a", "on")
        assert events == []
        assert dispatcher.watched_entities() == set()


class TestDurationTriggers:
    async def test_fires_after_value_persists(self, store, dispatched):
        dispatcher, events = dispatched
        store.set("binary_sensor.motion", "on")
        dispatcher.register(
            StateTrigger(entity_id="binary_sensor.motion", to="off", **{"for": timedelta(seconds=0.1)}),
            "no_motion",
        )

        store.set("binary_sensor.motion", "off")
        assert events == []

        await asyncio.sleep(0.25)
        assert len(events) == 1
        assert events[0].context.duration == timedelta(seconds=0.1)

    async def test_change_within_duration_cancels(self, store, dispatched):
        dispatcher, events = dispatched
        store.set("binary_sensor.motion", "on")
        dispatcher.register(
            StateTrigger(entity_id="binary_sensor.motion", to="off", **{"for": timedelta(seconds=0.2)}),
            "no_motion",
        )

        store.set("binary_sensor.motion", "off")
        await asyncio.sleep(0.1)
        store.set("binary_sensor.motion", "on")
        await asyncio.sleep(0.25)

        assert events == []
        assert len(dispatcher.timer_service) == 0

    async def test_duration_mapping_syntax(self):
        trigger = StateTrigger.model_validate(
            {"entity_id": "light.a", "for": {"minutes": 5, "seconds": 30}}
        )
        assert trigger.for_ == timedelta(minutes=5, seconds=30)

    async def test_unregister_cancels_pending_timer(self, store, dispatched):
        dispatcher, events = dispatched
        dispatcher.register(StateTrigger(entity_id="light.a", **{"for": timedelta(seconds=0.1)}), "lights")

        store.set("light.a", "on")
        dispatcher.unregister("lights")
        await asyncio.sleep(0.2)

        assert events == []


class TestEventTriggers:
    async def test_event_data_subset_match(self, dispatched):
        dispatcher, events = dispatched
        dispatcher.register(EventTrigger(event_type="button", event_data={"id": "hall"}), "hall_button")

        assert dispatcher.fire_event("button", {"id": "kitchen"}) == 0
        assert dispatcher.fire_event("button", {"id": "hall", "press": "long"}) == 1
        assert dispatcher.fire_event("other") == 0

        assert events[0].context.event_data == {"id": "hall", "press": "long"}


class TestTimeTriggers:
    async def test_tick_fires_time_trigger(self, clock, dispatched):
        dispatcher, events = dispatched
        dispatcher.register(TimeTrigger(at="20:30", id="evening"), "evening_lights")

        dispatcher.tick(clock.advance(minutes=45))

        assert len(events) == 1
        assert events[0].context.kind == "time"
        assert events[0].context.id == "evening"


class TestTimerService:
    async def test_restarting_a_timer_replaces_it(self):
        fired = []
        timers = TimerService()
        timers.start_timer("t", timedelta(seconds=0.05), lambda: fired.append(1))
        timers.start_timer("t", timedelta(seconds=0.05), lambda: fired.append(2))

        await asyncio.sleep(0.15)
        assert fired == [2]
        assert not timers.is_pending("t")

    async def test_cancel_matching(self):
        timers = TimerService()
        timers.start_timer("a#0:x", timedelta(seconds=1), lambda: None)
        timers.start_timer("a#1:y", timedelta(seconds=1), lambda: None)
        timers.start_timer("b#2:x", timedelta(seconds=1), lambda: None)

        assert timers.cancel_matching("a#") == 2
        assert len(timers) == 1
        timers.cancel_all()
        assert len(timers) == 0
