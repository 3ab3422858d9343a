"""Execution of individual automation actions.

Built-in state services (turn_on, turn_off, toggle, set_value, set_attributes and
group.set) write to the state store. Every other service name is handed to the external
handler registered for it. Errors are raised to the caller as ActionError subclasses;
nothing is retried.
"""

import asyncio as aio
import logging
from collections.abc import Callable, Mapping, Sequence
from enum import Enum
from typing import Any, Optional

from homerules.errors import ActionError, EntityNotFoundError, HomeRulesError
from homerules.rules.condition import check_condition
from homerules.rules.model import (
    ActionSpec,
    CallServiceAction,
    ConditionAction,
    DelayAction,
    EventAction,
    ParallelAction,
    SceneAction,
    ServiceTarget,
)
from homerules.rules.template import TemplateContext, render_complex
from homerules.scenes.manager import SceneManager
from homerules.services import ServiceCall, ServiceRegistry
from homerules.states import STATE_UNKNOWN, Entity, StateStore, StateValue

logger = logging.getLogger(__name__)

EventSink = Callable[[str, Mapping[str, Any]], Any]

_STATE_SERVICES = {"turn_on", "turn_off", "toggle", "set_value", "set_attributes"}
_GROUP_SET = "group.set"


class ActionResult(Enum):
    """Whether the remaining actions of the instance should run."""

    CONTINUE = "continue"
    STOP = "stop"


def _service_name(service: str) -> str:
    return service.rpartition(".")[2]


class ActionExecutor:
    """Performs the side effects of actions against the state store and service handlers."""

    def __init__(
        self,
        store: StateStore,
        services: ServiceRegistry,
        scenes: Optional[SceneManager] = None,
        fire_event: Optional[EventSink] = None,
    ):
        self._store = store
        self._services = services
        self._scenes = scenes
        self._fire_event = fire_event

    async def execute(self, action: ActionSpec, context: TemplateContext) -> ActionResult:
        """Execute a single action.

        Raises:
            ActionError: when the action cannot be carried out
            EvaluationError: when a template in the action fails to render
        """
        match action:
            case CallServiceAction() as service_action:
                data = render_complex(service_action.data, context)
                await self.call_service(service_action.service, service_action.target, data, context)
            case DelayAction() as delay_action:
                logger.debug("Delaying for %s", delay_action.delay)
                await aio.sleep(delay_action.delay.total_seconds())
            case ConditionAction() as condition_action:
                if not check_condition(condition_action.condition, context):
                    return ActionResult.STOP
            case ParallelAction() as parallel_action:
                await self._handle_parallel(parallel_action, context)
            case SceneAction() as scene_action:
                if self._scenes is None:
                    raise ActionError("No scenes are configured")
                self._scenes.activate(scene_action.scene)
            case EventAction() as event_action:
                if self._fire_event is None:
                    raise ActionError("Events cannot be fired from this executor")
                self._fire_event(event_action.event_type, render_complex(event_action.event_data, context))
            case _:
                raise NotImplementedError(f"Unsupported action type: {type(action)}")
        return ActionResult.CONTINUE

    async def execute_sequence(self, actions: Sequence[ActionSpec], context: TemplateContext) -> ActionResult:
        """Execute actions in order, stopping early when one says so."""
        for action in actions:
            if await self.execute(action, context) is ActionResult.STOP:
                return ActionResult.STOP
        return ActionResult.CONTINUE

    async def _handle_parallel(self, action: ParallelAction, context: TemplateContext):
        """Runs the branches concurrently. A failing branch cancels its siblings."""
        try:
            async with aio.TaskGroup() as group:
                for branch in action.branches:
                    group.create_task(self.execute_sequence(branch, context))
        except ExceptionGroup as eg:
            for error in eg.exceptions:
                if isinstance(error, HomeRulesError):
                    raise error from eg
            raise

    def resolve_targets(
        self, target: Optional[ServiceTarget], data: Mapping[str, Any], context: TemplateContext
    ) -> list[str]:
        """The entity ids a service call applies to.

        Explicit ids win; a domain selects every entity carrying that prefix; without a
        target an ``entity_id`` in the service data is used.
        """
        entity_ids: Any = None
        if target is not None and target.entity_id is not None:
            entity_ids = render_complex(target.entity_id, context)
        elif target is not None and target.domain is not None:
            return sorted(self._store.entity_ids(target.domain))
        elif "entity_id" in data:
            entity_ids = data["entity_id"]
        if entity_ids is None:
            return []
        if isinstance(entity_ids, str):
            return [eid.strip() for eid in entity_ids.split(",") if eid.strip()]
        return [str(eid) for eid in entity_ids]

    async def call_service(
        self,
        service: str,
        target: Optional[ServiceTarget],
        data: Mapping[str, Any],
        context: TemplateContext,
    ) -> Any:
        """Calls a service by name, external handlers first, then built-in state services."""
        entity_ids = self.resolve_targets(target, data, context)
        service_data = {key: value for key, value in data.items() if key != "entity_id"}
        logger.debug("Calling service %s on %s", service, entity_ids or "no entities")

        if self._services.has(service):
            return await self._services.call(ServiceCall(service, entity_ids, service_data))
        if service == _GROUP_SET:
            return self._set_group(service_data)
        if _service_name(service) in _STATE_SERVICES:
            if not entity_ids:
                raise ActionError(f"Service '{service}' has no target entities")
            for entity_id in entity_ids:
                self._apply_state_service(_service_name(service), entity_id, service_data)
            return None
        # Raises HandlerUnavailableError
        return await self._services.call(ServiceCall(service, entity_ids, service_data))

    def _apply_state_service(self, name: str, entity_id: str, data: Mapping[str, Any]) -> None:
        def mutate(entity: Optional[Entity]) -> tuple[StateValue, dict[str, Any]]:
            attributes = dict(entity.attributes) if entity is not None else {}
            state: StateValue = entity.state if entity is not None else STATE_UNKNOWN
            match name:
                case "turn_on":
                    attributes.update(data)
                    state = "on"
                case "turn_off":
                    state = "off"
                case "toggle":
                    if entity is None:
                        raise EntityNotFoundError(entity_id)
                    state = "off" if entity.state == "on" else "on"
                case "set_value":
                    if "value" not in data:
                        raise ActionError(f"set_value on {entity_id} requires a 'value'")
                    state = data["value"]
                case "set_attributes":
                    if entity is None:
                        raise EntityNotFoundError(entity_id)
                    attributes.update(data.get("attributes", data))
                case _:
                    raise ActionError(f"Unknown state service '{name}'")
            return state, attributes

        self._store.update(entity_id, mutate)

    def _set_group(self, data: Mapping[str, Any]) -> None:
        """Creates or replaces a group entity from a membership list.

        The group is "on" while any member is "on". Membership is recomputed by whatever
        automation calls this service, typically on any state change of a member domain.
        """
        object_id = data.get("object_id")
        if not object_id:
            raise ActionError("group.set requires an 'object_id'")
        members = data.get("entities") or []
        if isinstance(members, str):
            members = [eid.strip() for eid in members.split(",") if eid.strip()]
        members = [str(eid) for eid in members]
        is_on = any(
            (entity := self._store.get(eid)) is not None and entity.state == "on" for eid in members
        )
        attributes = {"entity_id": members}
        if "name" in data:
            attributes["friendly_name"] = data["name"]
        self._store.set(f"group.{object_id}", "on" if is_on else "off", attributes)
