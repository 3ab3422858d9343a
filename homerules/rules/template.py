"""Template expression evaluation.

Expressions are Jinja2 templates rendered in a sandbox against a read-only view of the
state store plus the variables of the running automation (``trigger`` and friends).

Evaluation never raises anything but EvaluationError (or its TypeConversionError
subclass): malformed syntax, undefined variables and failing filters are all reported
through it, and callers decide what an error means for them.
"""

import ast
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Optional

import jinja2
from jinja2.sandbox import ImmutableSandboxedEnvironment

from homerules.errors import EvaluationError, TypeConversionError
from homerules.states import STATE_UNAVAILABLE, STATE_UNKNOWN, Entity, StateStore, utcnow

logger = logging.getLogger(__name__)

_SENTINEL = object()
_TRUE_STRINGS = {"1", "true", "yes", "on", "enable"}


@dataclass
class TemplateContext:
    """What a template can see: the state store, variables and the current time."""

    store: StateStore
    variables: Mapping[str, Any] = field(default_factory=dict)
    clock: Callable[[], datetime] = utcnow


class _DomainStates:
    """Allows ``states.light.kitchen`` style lookups."""

    def __init__(self, store: StateStore, domain: str):
        self._store = store
        self._domain = domain

    def __getattr__(self, object_id: str) -> Optional[Entity]:
        if object_id.startswith("_"):
            raise AttributeError(object_id)
        return self._store.get(f"{self._domain}.{object_id}")

    def __iter__(self):
        return iter(
            sorted(
                (self._store.get(eid) for eid in self._store.entity_ids(self._domain)),
                key=lambda entity: entity.entity_id,
            )
        )


class _AllStates:
    """The ``states`` template global: callable for a value, attribute access for entities."""

    def __init__(self, store: StateStore):
        self._store = store

    def __call__(self, entity_id: str) -> str:
        entity = self._store.get(entity_id)
        if entity is None:
            return STATE_UNKNOWN
        return str(entity.state)

    def __getattr__(self, domain: str) -> _DomainStates:
        # The sandbox probes these markers before every call
        if domain.startswith("_") or domain in ("unsafe_callable", "alters_data"):
            raise AttributeError(domain)
        return _DomainStates(self._store, domain)


def _to_float(value: Any, default: Any = _SENTINEL) -> float:
    try:
        return float(value)
    except (ValueError, TypeError) as err:
        if default is not _SENTINEL:
            return default
        raise TypeConversionError(f"Cannot convert '{value}' to a number") from err


def _to_int(value: Any, default: Any = _SENTINEL, base: int = 10) -> int:
    try:
        if isinstance(value, str):
            return int(value, base)
        return int(value)
    except (ValueError, TypeError):
        pass
    try:
        return int(float(value))
    except (ValueError, TypeError) as err:
        if default is not _SENTINEL:
            return default
        raise TypeConversionError(f"Cannot convert '{value}' to an integer") from err


def _as_timestamp(value: Any, default: Any = _SENTINEL) -> float:
    try:
        if isinstance(value, datetime):
            return value.timestamp()
        if isinstance(value, Entity):
            value = value.state
        return datetime.fromisoformat(str(value)).timestamp()
    except (ValueError, TypeError) as err:
        if default is not _SENTINEL:
            return default
        raise TypeConversionError(f"Cannot convert '{value}' to a timestamp") from err


def _timestamp_custom(value: Any, format_string: str = "%Y-%m-%d %H:%M:%S", local: bool = True) -> str:
    ts = _to_float(value)
    if local:
        return datetime.fromtimestamp(ts).astimezone().strftime(format_string)
    return datetime.fromtimestamp(ts, timezone.utc).strftime(format_string)


@lru_cache(maxsize=1)
def _environment() -> ImmutableSandboxedEnvironment:
    env = ImmutableSandboxedEnvironment(undefined=jinja2.StrictUndefined, autoescape=False)
    env.filters["float"] = _to_float
    env.filters["int"] = _to_int
    env.filters["as_timestamp"] = _as_timestamp
    env.filters["timestamp_custom"] = _timestamp_custom
    env.globals["float"] = _to_float
    env.globals["int"] = _to_int
    env.globals["as_timestamp"] = _as_timestamp
    return env


@lru_cache(maxsize=512)
def _compile(expression: str) -> jinja2.Template:
    return _environment().from_string(expression)


def _render_globals(context: TemplateContext) -> dict[str, Any]:
    store = context.store

    def state_attr(entity_id: str, name: str) -> Any:
        entity = store.get(entity_id)
        return None if entity is None else entity.attributes.get(name)

    def is_state(entity_id: str, value: Any) -> bool:
        entity = store.get(entity_id)
        actual = STATE_UNKNOWN if entity is None else str(entity.state)
        if isinstance(value, (list, tuple)):
            return actual in [str(v) for v in value]
        return actual == str(value)

    def has_value(entity_id: str) -> bool:
        entity = store.get(entity_id)
        return entity is not None and entity.state not in (STATE_UNKNOWN, STATE_UNAVAILABLE)

    variables = dict(context.variables)
    variables.update(
        states=_AllStates(store),
        state_attr=state_attr,
        is_state=is_state,
        has_value=has_value,
        now=context.clock,
        utcnow=utcnow,
    )
    return variables


# Plain decimal numbers only. "0123", "1_000", "inf" and "nan" stay text
_NUMBER = re.compile(r"^-?(0|[1-9]\d*)(\.\d+)?([eE][-+]?\d+)?$")


def _parse_result(text: str) -> Any:
    """Turns the rendered text back into a bool, number, list or dict where it looks like one."""
    stripped = text.strip()
    if stripped[:1] in ("[", "{"):
        try:
            return ast.literal_eval(stripped)
        except (ValueError, SyntaxError, TypeError):
            return text
    if stripped in ("True", "False"):
        return stripped == "True"
    if stripped == "None":
        return None
    if _NUMBER.match(stripped):
        return int(stripped) if stripped.lstrip("-").isdigit() else float(stripped)
    return text


def evaluate(expression: str, context: TemplateContext) -> Any:
    """Renders an expression and returns its value.

    Raises:
        TypeConversionError: when a numeric coercion fails (e.g. on 'unknown')
        EvaluationError: for any other problem with the expression
    """
    try:
        template = _compile(expression)
        rendered = template.render(_render_globals(context))
    except TypeConversionError as err:
        err.expression = expression
        raise
    except EvaluationError:
        raise
    except jinja2.TemplateSyntaxError as err:
        raise EvaluationError(f"Invalid template syntax: {err}", expression) from err
    except jinja2.TemplateError as err:
        raise EvaluationError(f"Error rendering template: {err}", expression) from err
    except Exception as err:  # pylint: disable=broad-except
        raise EvaluationError(f"Error evaluating template: {err!r}", expression) from err
    return _parse_result(rendered)


def render_boolean(expression: str, context: TemplateContext) -> bool:
    """Evaluates an expression and interprets the result as a truth value."""
    result = evaluate(expression, context)
    if isinstance(result, bool):
        return result
    if isinstance(result, (int, float)):
        return result != 0
    return str(result).strip().lower() in _TRUE_STRINGS


def render_complex(value: Any, context: TemplateContext) -> Any:
    """Renders every string found in a (possibly nested) structure of dicts and lists."""
    if isinstance(value, str):
        if "{" not in value:
            return value
        return evaluate(value, context)
    if isinstance(value, Mapping):
        return {key: render_complex(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [render_complex(item, context) for item in value]
    return value
