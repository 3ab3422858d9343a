"""Tests for the entity state store."""

import threading

import pytest

from homerules.errors import EntityNotFoundError
from homerules.states import StateStore


class TestSetAndGet:
    def test_get_returns_what_was_set(self, store):
        store.set("sensor.temp", 21.5, {"unit": "°C"})

        entity = store.get("sensor.temp")
        assert entity.state == 21.5
        assert entity.attributes == {"unit": "°C"}
        assert entity.domain == "sensor"
        assert entity.object_id == "temp"

    def test_set_returns_previous_entity(self, store):
        assert store.set("light.kitchen", "off") is None

        previous = store.set("light.kitchen", "on")
        assert previous.state == "off"

    def test_missing_entity(self, store):
        assert store.get("light.nowhere") is None
        with pytest.raises(EntityNotFoundError):
            store.require("light.nowhere")

    def test_invalid_entity_id_rejected(self, store):
        with pytest.raises(ValueError):
            store.set("no_domain", "on")

    def test_entity_ids_by_domain(self, store):
        store.set("light.kitchen", "on")
        store.set("light.hall", "off")
        store.set("switch.fan", "on")
        store.set("lightning.sensor", "off")

        assert sorted(store.entity_ids("light")) == ["light.hall", "light.kitchen"]
        assert len(store.entity_ids()) == 4


class TestLastChanged:
    def test_advances_only_when_value_differs(self, store, clock):
        store.set("sensor.temp", "60")
        first = store.get("sensor.temp").last_changed

        clock.advance(seconds=10)
        store.set("sensor.temp", "60", {"unit": "F"})
        same = store.get("sensor.temp")
        assert same.last_changed == first
        assert same.last_updated == clock.now

        clock.advance(seconds=10)
        store.set("sensor.temp", "75")
        assert store.get("sensor.temp").last_changed == clock.now

    def test_attribute_change_keeps_last_changed(self, store, clock):
        store.set("light.kitchen", "on", {"brightness": 10})
        changed = store.get("light.kitchen").last_changed

        clock.advance(minutes=1)
        store.set("light.kitchen", "on", {"brightness": 200})

        entity = store.get("light.kitchen")
        assert entity.attributes["brightness"] == 200
        assert entity.last_changed == changed


class TestListeners:
    def test_listener_called_synchronously(self, store):
        events = []
        store.subscribe(events.append)

        store.set("switch.fan", "on")

        assert len(events) == 1
        assert events[0].old_state is None
        assert events[0].new_state.state == "on"
        assert events[0].value_changed

    def test_unsubscribe(self, store):
        events = []
        unsubscribe = store.subscribe(events.append)
        unsubscribe()

        store.set("switch.fan", "on")

        assert events == []
        assert store.listener_count == 0

    def test_failing_listener_does_not_block_others(self, store):
        events = []

        def broken(_event):
            raise RuntimeError("boom")

        store.subscribe(broken)
        store.subscribe(events.append)

        store.set("switch.fan", "on")

        assert len(events) == 1
        assert store.get("switch.fan").state == "on"


class TestAtomicWrites:
    def test_set_many_notifies_after_all_writes(self, store):
        seen = []

        def listener(event):
            # Every entity of the batch is already written when the first listener runs
            seen.append((store.get("light.a").state, store.get("light.b").state))

        store.subscribe(listener)
        store.set_many({"light.b": ("on", None), "light.a": ("on", {"brightness": 100})})

        assert seen == [("on", "on"), ("on", "on")]
        assert store.get("light.a").attributes == {"brightness": 100}

    def test_update_serializes_read_modify_write(self):
        store = StateStore()
        store.set("counter.hits", 0)

        def increment():
            for _ in range(200):
                store.update("counter.hits", lambda entity: (entity.state + 1, entity.attributes))

        threads = [threading.Thread(target=increment) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.get("counter.hits").state == 1600
