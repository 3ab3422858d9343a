"""Exceptions raised by the automation engine.

Evaluation errors never escape a condition check (they count as "false"), and
action errors only terminate the automation instance that raised them.
"""

from typing import Optional


class HomeRulesError(Exception):
    """Base class for every error the engine raises on purpose."""


class ConfigError(HomeRulesError):
    """A rule, scene or state file could not be loaded."""


class EntityNotFoundError(HomeRulesError):
    """The requested entity does not exist in the state store."""

    def __init__(self, entity_id: str):
        super().__init__(f"Entity '{entity_id}' not found")
        self.entity_id = entity_id


class EvaluationError(HomeRulesError):
    """A template expression is malformed or failed while rendering."""

    def __init__(self, message: str, expression: Optional[str] = None):
        super().__init__(message)
        self.expression = expression


class TypeConversionError(EvaluationError):
    """A value could not be coerced to a number."""


class ActionError(HomeRulesError):
    """An action could not be executed."""


class HandlerUnavailableError(ActionError):
    """No handler is registered for the requested service name."""

    def __init__(self, service: str):
        super().__init__(f"No handler registered for service '{service}'")
        self.service = service


class ServiceCallError(ActionError):
    """A service handler failed while handling a call."""
