"""Data models for declaring automations.

Automations are loaded from YAML or JSON rule files into these Pydantic models. Every
trigger, condition and action is a tagged variant discriminated by its ``kind`` field,
so the set of supported kinds is closed and each evaluator can match on it exhaustively.

The main components are:
- Triggers: StateTrigger, TimeTrigger, EventTrigger
- Conditions: StateCondition, NumericStateCondition, TemplateCondition, TimeCondition,
  LogicCondition (and/or/not)
- Actions: CallServiceAction, DelayAction, ConditionAction, ParallelAction,
  SceneAction, EventAction
- Automation: triggers + conditions + actions + execution mode
"""

from datetime import time, timedelta
from enum import StrEnum
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from homerules.states import StateValue

MatchValue = StateValue | list[StateValue]


def _duration(value: Any) -> Any:
    """Accepts {hours: .., minutes: .., seconds: ..} mappings besides what Pydantic parses."""
    if isinstance(value, dict):
        return timedelta(**value)
    return value


class _TriggerBase(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: Optional[str] = Field(
        default=None, description="Optional identifier exposed to templates as trigger.id"
    )


class StateTrigger(_TriggerBase):
    """Fires when an entity's state (or one of its attributes) changes.

    Omitted ``from``/``to`` filters match any value. With ``for``, the trigger only fires
    once the new value has persisted unchanged for that long.
    """

    kind: Literal["state"] = Field(default="state")
    entity_id: str | list[str] = Field(description="The entity or entities to watch")
    from_: Optional[MatchValue] = Field(
        default=None, alias="from", description="Only fire when changing from this value"
    )
    to: Optional[MatchValue] = Field(
        default=None, description="Only fire when changing to this value"
    )
    for_: Optional[timedelta] = Field(
        default=None, alias="for", description="How long the new value must persist"
    )
    attribute: Optional[str] = Field(
        default=None, description="Watch this attribute instead of the state value"
    )

    @field_validator("for_", mode="before")
    @classmethod
    def parse_for(cls, value: Any) -> Any:
        return _duration(value)

    @property
    def entity_ids(self) -> list[str]:
        return [self.entity_id] if isinstance(self.entity_id, str) else list(self.entity_id)


class TimeTrigger(_TriggerBase):
    """Fires at a fixed time of day, or relative to sunrise/sunset."""

    kind: Literal["time"] = Field(default="time")
    at: Literal["sunrise", "sunset"] | time = Field(
        description="A time of day (HH:MM[:SS]) or 'sunrise'/'sunset'"
    )
    offset: timedelta = Field(
        default=timedelta(0), description="Offset applied to the time, may be negative"
    )

    @field_validator("offset", mode="before")
    @classmethod
    def parse_offset(cls, value: Any) -> Any:
        return _duration(value)


class EventTrigger(_TriggerBase):
    """Fires when a named event is fired."""

    kind: Literal["event"] = Field(default="event")
    event_type: str = Field(description="The event type to listen for")
    event_data: dict[str, Any] = Field(
        default_factory=dict, description="Only fire when the event data contains these items"
    )


TriggerSpec = Annotated[StateTrigger | TimeTrigger | EventTrigger, Field(discriminator="kind")]


class StateCondition(BaseModel):
    """Holds when an entity's state (or attribute) equals one of the expected values."""

    kind: Literal["state"] = Field(default="state")
    entity_id: str = Field(description="The entity to check")
    state: MatchValue = Field(description="The expected value or values")
    attribute: Optional[str] = Field(
        default=None, description="Check this attribute instead of the state value"
    )


class NumericStateCondition(BaseModel):
    """Holds when an entity's numeric value lies strictly between the given bounds."""

    kind: Literal["numeric_state"] = Field(default="numeric_state")
    entity_id: str
    attribute: Optional[str] = None
    above: Optional[float] = None
    below: Optional[float] = None


class TemplateCondition(BaseModel):
    """Holds when the template renders to a true value."""

    kind: Literal["template"] = Field(default="template")
    value_template: str = Field(description="A boolean template expression")


class TimeCondition(BaseModel):
    """Holds when the current time lies in a window, optionally on given weekdays.

    A window whose ``after`` is later than its ``before`` wraps over midnight.
    """

    kind: Literal["time"] = Field(default="time")
    after: Optional[time] = None
    before: Optional[time] = None
    weekday: Optional[list[Literal["mon", "tue", "wed", "thu", "fri", "sat", "sun"]]] = None


class LogicCondition(BaseModel):
    """Combines nested conditions: all of them (and), any of them (or), none of them (not)."""

    kind: Literal["and", "or", "not"]
    conditions: list["ConditionSpec"] = Field(description="The nested conditions")


ConditionSpec = Annotated[
    StateCondition | NumericStateCondition | TemplateCondition | TimeCondition | LogicCondition,
    Field(discriminator="kind"),
]


class ServiceTarget(BaseModel):
    """The entities a service call applies to: explicit ids, or every entity of a domain."""

    entity_id: Optional[str | list[str]] = None
    domain: Optional[str] = None


class CallServiceAction(BaseModel):
    """Calls a service, either a built-in state service or an external handler."""

    kind: Literal["call_service"] = Field(default="call_service")
    service: str = Field(description="The service name, e.g. 'light.turn_on' or 'notify'")
    target: Optional[ServiceTarget] = None
    data: dict[str, Any] = Field(
        default_factory=dict, description="Service data; string values are rendered as templates"
    )


class DelayAction(BaseModel):
    """Suspends the running instance for a while."""

    kind: Literal["delay"] = Field(default="delay")
    delay: timedelta

    @field_validator("delay", mode="before")
    @classmethod
    def parse_delay(cls, value: Any) -> Any:
        return _duration(value)


class ConditionAction(BaseModel):
    """Stops the remaining actions of the instance when the condition does not hold."""

    kind: Literal["condition"] = Field(default="condition")
    condition: "ConditionSpec"


class ParallelAction(BaseModel):
    """Runs each branch concurrently; the actions within a branch stay sequential."""

    kind: Literal["parallel"] = Field(default="parallel")
    branches: list[list["ActionSpec"]] = Field(min_length=1)


class SceneAction(BaseModel):
    """Activates a scene."""

    kind: Literal["scene"] = Field(default="scene")
    scene: str = Field(description="The name of the scene to activate")


class EventAction(BaseModel):
    """Fires an event that event triggers can listen for."""

    kind: Literal["event"] = Field(default="event")
    event_type: str
    event_data: dict[str, Any] = Field(default_factory=dict)


ActionSpec = Annotated[
    CallServiceAction | DelayAction | ConditionAction | ParallelAction | SceneAction | EventAction,
    Field(discriminator="kind"),
]


class AutomationMode(StrEnum):
    """How overlapping runs of one automation are handled."""

    SINGLE = "single"
    RESTART = "restart"
    QUEUED = "queued"
    PARALLEL = "parallel"


class Automation(BaseModel):
    """An automation: when any trigger fires and all conditions hold, run the actions."""

    id: str = Field(description="Unique identifier of the automation")
    alias: Optional[str] = None
    description: Optional[str] = None
    triggers: list[TriggerSpec] = Field(min_length=1)
    conditions: list[ConditionSpec] = Field(default_factory=list)
    actions: list[ActionSpec] = Field(min_length=1)
    mode: AutomationMode = AutomationMode.SINGLE
    max: Optional[int] = Field(
        default=None, ge=1, description="Maximum number of queued runs in 'queued' mode"
    )
    initial_state: bool = Field(default=True, description="Whether the automation starts enabled")

    @property
    def name(self) -> str:
        return self.alias or self.id


LogicCondition.model_rebuild()
ConditionAction.model_rebuild()
ParallelAction.model_rebuild()
