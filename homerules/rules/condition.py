"""Evaluation of automation conditions against the current state.

Conditions are evaluated fresh on every check. Any evaluation error (a malformed
template, a numeric coercion of 'unknown', a state condition reading an unknown or
unavailable entity that it does not expect) makes the whole condition false, even
when the error happens inside a 'not'.
"""

import logging
from collections.abc import Iterable
from typing import Any

from homerules.errors import EvaluationError, HomeRulesError, TypeConversionError
from homerules.rules.model import (
    ConditionSpec,
    LogicCondition,
    NumericStateCondition,
    StateCondition,
    TemplateCondition,
    TimeCondition,
)
from homerules.rules.template import TemplateContext, render_boolean
from homerules.states import STATE_UNAVAILABLE, STATE_UNKNOWN, StateValue

logger = logging.getLogger(__name__)

_WEEKDAYS = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]
_TRUE_STRINGS = {"on", "true"}
_FALSE_STRINGS = {"off", "false"}
_NO_VALUE = (STATE_UNKNOWN, STATE_UNAVAILABLE)


def _matches_one(actual: Any, expected: StateValue) -> bool:
    if isinstance(expected, bool) and isinstance(actual, str):
        # YAML turns unquoted on/off into booleans
        lowered = actual.lower()
        return lowered in (_TRUE_STRINGS if expected else _FALSE_STRINGS)
    return actual == expected or str(actual) == str(expected)


def match_state(actual: Any, expected: StateValue | list[StateValue]) -> bool:
    """Whether a state value equals the expected value (or one of the expected values)."""
    if isinstance(expected, list):
        return any(_matches_one(actual, item) for item in expected)
    return _matches_one(actual, expected)


def _current_value(context: TemplateContext, entity_id: str, attribute: str | None) -> Any:
    entity = context.store.get(entity_id)
    if entity is None:
        return None if attribute else STATE_UNKNOWN
    if attribute:
        return entity.attributes.get(attribute)
    return entity.state


def _evaluate(condition: ConditionSpec, context: TemplateContext) -> bool:
    match condition:
        case StateCondition() as state_condition:
            value = _current_value(context, state_condition.entity_id, state_condition.attribute)
            if match_state(value, state_condition.state):
                return True
            if value in _NO_VALUE:
                raise EvaluationError(f"{state_condition.entity_id} has no usable value ({value})")
            return False
        case NumericStateCondition() as numeric_condition:
            value = _current_value(context, numeric_condition.entity_id, numeric_condition.attribute)
            try:
                number = float(value)
            except (TypeError, ValueError) as err:
                raise TypeConversionError(
                    f"{numeric_condition.entity_id} has non-numeric value '{value}'"
                ) from err
            if numeric_condition.above is not None and number <= numeric_condition.above:
                return False
            if numeric_condition.below is not None and number >= numeric_condition.below:
                return False
            return True
        case TemplateCondition() as template_condition:
            return render_boolean(template_condition.value_template, context)
        case TimeCondition() as time_condition:
            return _check_time(time_condition, context)
        case LogicCondition(kind="and") as logic:
            return all(_evaluate(c, context) for c in logic.conditions)
        case LogicCondition(kind="or") as logic:
            return any(_evaluate(c, context) for c in logic.conditions)
        case LogicCondition(kind="not") as logic:
            return not any(_evaluate(c, context) for c in logic.conditions)
        case _:
            raise ValueError(f"Unknown condition type: {type(condition)}")


def _check_time(condition: TimeCondition, context: TemplateContext) -> bool:
    now = context.clock()
    if condition.weekday is not None and _WEEKDAYS[now.weekday()] not in condition.weekday:
        return False
    current = now.time().replace(tzinfo=None)
    after, before = condition.after, condition.before
    if after is not None and before is not None and after > before:
        # Window wraps over midnight
        return current >= after or current < before
    if after is not None and current < after:
        return False
    if before is not None and current >= before:
        return False
    return True


def check_condition(condition: ConditionSpec, context: TemplateContext) -> bool:
    """Evaluates one condition. Evaluation errors are logged and count as false."""
    try:
        return _evaluate(condition, context)
    except HomeRulesError as err:
        logger.warning("Condition %s evaluated as false: %s", condition.kind, err)
        return False


def check_all(conditions: Iterable[ConditionSpec], context: TemplateContext) -> bool:
    """Evaluates conditions in order, stopping at the first one that does not hold."""
    for index, condition in enumerate(conditions):
        if not check_condition(condition, context):
            logger.debug("Condition %d (%s) not met", index, condition.kind)
            return False
    return True
