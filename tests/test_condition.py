"""Tests for condition evaluation."""

from datetime import datetime, timezone

import pytest
from pydantic import TypeAdapter

from homerules.rules.condition import check_all, check_condition, match_state
from homerules.rules.model import ConditionSpec

_conditions = TypeAdapter(ConditionSpec)


def condition(**data):
    return _conditions.validate_python(data)


class TestMatchState:
    def test_exact_and_list_matches(self):
        assert match_state("on", "on")
        assert match_state("heat", ["cool", "heat"])
        assert not match_state("off", ["cool", "heat"])

    def test_yaml_booleans_match_on_off(self):
        assert match_state("on", True)
        assert match_state("off", False)
        assert not match_state("on", False)

    def test_numbers_compare_by_text(self):
        assert match_state("20", 20)
        assert match_state(20, "20")


class TestStateConditions:
    def test_state_condition(self, store, context):
        store.set("light.kitchen", "on")
        assert check_condition(condition(kind="state", entity_id="light.kitchen", state="on"), context)
        assert not check_condition(condition(kind="state", entity_id="light.kitchen", state="off"), context)

    def test_missing_entity_is_unknown(self, context):
        assert check_condition(condition(kind="state", entity_id="light.none", state="unknown"), context)

    def test_attribute_condition(self, store, context):
        store.set("climate.hall", "heat", {"preset": "eco"})
        assert check_condition(
            condition(kind="state", entity_id="climate.hall", attribute="preset", state="eco"), context
        )

    def test_numeric_bounds_are_exclusive(self, store, context):
        store.set("sensor.temp", "70")
        assert not check_condition(
            condition(kind="numeric_state", entity_id="sensor.temp", above=70), context
        )
        store.set("sensor.temp", "70.5")
        assert check_condition(
            condition(kind="numeric_state", entity_id="sensor.temp", above=70, below=80), context
        )

    def test_numeric_of_unknown_is_false(self, store, context):
        store.set("sensor.temp", "unknown")
        assert not check_condition(
            condition(kind="numeric_state", entity_id="sensor.temp", below=100), context
        )


class TestTemplateConditions:
    def test_template_condition(self, store, context):
        store.set("sensor.temp", "75")
        assert check_condition(
            condition(kind="template", value_template="{{ states('sensor.temp')|float > 70 }}"), context
        )

    def test_failing_template_is_false(self, context):
        assert not check_condition(
            condition(kind="template", value_template="{{ states('sensor.missing')|float > 70 }}"),
            context,
        )

    def test_malformed_template_is_false(self, context):
        assert not check_condition(condition(kind="template", value_template="{{ 1 + }}"), context)

    def test_error_inside_not_is_still_false(self, context):
        negated = condition(
            kind="not",
            conditions=[{"kind": "template", "value_template": "{{ states('sensor.missing')|int }}"}],
        )
        assert not check_condition(negated, context)


class TestLogicConditions:
    @pytest.fixture(autouse=True)
    def _states(self, store):
        store.set("light.kitchen", "on")
        store.set("light.hall", "off")

    def test_and(self, context):
        both = condition(
            kind="and",
            conditions=[
                {"kind": "state", "entity_id": "light.kitchen", "state": "on"},
                {"kind": "state", "entity_id": "light.hall", "state": "on"},
            ],
        )
        assert not check_condition(both, context)

    def test_or(self, context):
        either = condition(
            kind="or",
            conditions=[
                {"kind": "state", "entity_id": "light.kitchen", "state": "on"},
                {"kind": "state", "entity_id": "light.hall", "state": "on"},
            ],
        )
        assert check_condition(either, context)

    def test_not(self, context):
        neither = condition(
            kind="not", conditions=[{"kind": "state", "entity_id": "light.hall", "state": "on"}]
        )
        assert check_condition(neither, context)

    def test_check_all_short_circuits(self, context):
        conditions = [
            condition(kind="state", entity_id="light.hall", state="on"),
            condition(kind="template", value_template="{{ states('sensor.missing')|float }}"),
        ]
        assert not check_all(conditions, context)
        assert check_all([], context)


class TestTimeConditions:
    def test_window(self, context, clock):
        # The clock reads 20:00 on a Wednesday
        assert check_condition(condition(kind="time", after="18:00", before="22:00"), context)
        assert not check_condition(condition(kind="time", after="21:00"), context)

    def test_window_over_midnight(self, context, clock):
        overnight = condition(kind="time", after="19:00", before="06:00")
        assert check_condition(overnight, context)
        clock.now = datetime(2025, 1, 16, 7, 0, tzinfo=timezone.utc)
        assert not check_condition(overnight, context)

    def test_weekday(self, context):
        assert check_condition(condition(kind="time", weekday=["wed"]), context)
        assert not check_condition(condition(kind="time", weekday=["sat", "sun"]), context)


def test_unknown_source_fails_even_an_inequality(store, context):
    store.set("sensor.temp", "unknown")
    not_fifty = condition(kind="template", value_template="{{ states('sensor.temp')|float != 50 }}")
    assert not check_condition(not_fifty, context)


class TestUnknownSources:
    @pytest.mark.parametrize("value", ["unknown", "unavailable", None])
    def test_not_equal_on_unknown_source_is_false(self, store, context, value):
        if value is not None:
            store.set("sensor.temp", value)
        not_fifty = condition(
            kind="not", conditions=[{"kind": "state", "entity_id": "sensor.temp", "state": "50"}]
        )
        assert not check_condition(not_fifty, context)

    def test_expecting_the_sentinel_still_matches(self, store, context):
        store.set("sensor.temp", "unavailable")
        assert check_condition(
            condition(kind="state", entity_id="sensor.temp", state=["unknown", "unavailable"]), context
        )

    def test_known_value_not_equal(self, store, context):
        store.set("sensor.temp", "60")
        not_fifty = condition(
            kind="not", conditions=[{"kind": "state", "entity_id": "sensor.temp", "state": "50"}]
        )
        assert check_condition(not_fifty, context)
