"""
Automation runtime.

This module owns the installed automations and runs them when their triggers fire. It
handles:
- Installing, enabling, disabling and uninstalling automations
- Execution modes (single, restart, queued, parallel) for overlapping runs
- Condition checks and sequential action execution per running instance
- Cancellation and a bounded history of run traces
"""

import asyncio as aio
import logging
from asyncio import Task
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from functools import partial
from typing import Any, Optional

from homerules.errors import HomeRulesError
from homerules.rules.condition import check_all
from homerules.rules.dispatcher import TriggerContext, TriggerDispatcher, TriggerEvent
from homerules.rules.executor import ActionExecutor, ActionResult
from homerules.rules.model import Automation, AutomationMode
from homerules.rules.template import TemplateContext
from homerules.states import StateStore, utcnow

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_MAX = 10
DEFAULT_TRACE_HISTORY = 20


class RunState(StrEnum):
    """Where a running instance is in its lifecycle."""

    IDLE = "idle"
    CONDITION_CHECK = "condition_check"
    RUNNING = "running"
    STOPPED = "stopped"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class Trace:
    """The record of one run of an automation."""

    automation_id: str
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    state: RunState = RunState.IDLE
    outcome: Optional[str] = None
    actions_executed: int = 0
    failed_action: Optional[int] = None
    error: Optional[str] = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "automation_id": self.automation_id,
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "state": self.state.value,
            "outcome": self.outcome,
            "actions_executed": self.actions_executed,
            "failed_action": self.failed_action,
            "error": self.error,
        }


@dataclass
class _Instance:
    trace: Trace
    task: Optional[Task] = None

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()


@dataclass
class _Entry:
    automation: Automation
    enabled: bool
    queue: deque
    traces: deque
    running: list[_Instance] = field(default_factory=list)


class AutomationRuntime:
    """Manages the installation and execution of automations.

    Each run is an asyncio task, so a suspended run (a delay) never blocks trigger
    dispatching or other automations.
    """

    def __init__(
        self,
        store: StateStore,
        dispatcher: TriggerDispatcher,
        executor: ActionExecutor,
        clock: Callable[[], datetime] = utcnow,
        queue_max: int = DEFAULT_QUEUE_MAX,
        trace_history: int = DEFAULT_TRACE_HISTORY,
    ):
        self._store = store
        self._dispatcher = dispatcher
        self._executor = executor
        self._clock = clock
        self._queue_max = queue_max
        self._trace_history = trace_history
        # AutomationId -> entry, in installation order
        self._entries: dict[str, _Entry] = {}

    def install(self, automation: Automation) -> None:
        """Install an automation and register its triggers.

        Raises:
            ValueError: if an automation with the same id is already installed
        """
        if automation.id in self._entries:
            raise ValueError(f"Automation with id '{automation.id}' is already installed")
        self._entries[automation.id] = _Entry(
            automation=automation,
            enabled=automation.initial_state,
            queue=deque(maxlen=automation.max or self._queue_max),
            traces=deque(maxlen=self._trace_history),
        )
        if automation.initial_state:
            self._register(automation)
        logger.info("Installed automation %s (%s mode)", automation.name, automation.mode.value)

    def _register(self, automation: Automation) -> None:
        for trigger in automation.triggers:
            self._dispatcher.register(trigger, automation.id)

    def uninstall(self, automation_id: str) -> bool:
        """Remove an automation, cancelling any of its runs."""
        if automation_id not in self._entries:
            return False
        self.cancel(automation_id)
        self._dispatcher.unregister(automation_id)
        del self._entries[automation_id]
        logger.info("Uninstalled automation %s", automation_id)
        return True

    def enable(self, automation_id: str) -> None:
        entry = self._entry(automation_id)
        if not entry.enabled:
            entry.enabled = True
            self._register(entry.automation)

    def disable(self, automation_id: str) -> None:
        """Stops an automation from triggering and cancels its current runs."""
        entry = self._entry(automation_id)
        if entry.enabled:
            entry.enabled = False
            self._dispatcher.unregister(automation_id)
            self.cancel(automation_id)

    def get(self, automation_id: str) -> Optional[Automation]:
        entry = self._entries.get(automation_id)
        return entry.automation if entry else None

    def automations(self) -> list[Automation]:
        return [entry.automation for entry in self._entries.values()]

    def is_enabled(self, automation_id: str) -> bool:
        return self._entry(automation_id).enabled

    def running_count(self, automation_id: str) -> int:
        return len([i for i in self._entry(automation_id).running if not i.done])

    def queued_count(self, automation_id: str) -> int:
        return len(self._entry(automation_id).queue)

    def traces(self, automation_id: str) -> list[Trace]:
        return list(self._entry(automation_id).traces)

    def _entry(self, automation_id: str) -> _Entry:
        try:
            return self._entries[automation_id]
        except KeyError:
            raise KeyError(f"Automation '{automation_id}' is not installed") from None

    def handle_trigger(self, event: TriggerEvent) -> Optional[Task]:
        """Reacts to a trigger fired by the dispatcher."""
        entry = self._entries.get(event.automation_id)
        if entry is None or not entry.enabled:
            logger.debug("Ignoring trigger for inactive automation %s", event.automation_id)
            return None
        return self._start(entry, event.context)

    def trigger(
        self,
        automation_id: str,
        variables: Optional[Mapping[str, Any]] = None,
        skip_condition: bool = False,
    ) -> Optional[Task]:
        """Runs an automation on request, honouring its mode."""
        entry = self._entry(automation_id)
        context = TriggerContext(
            kind="manual", automation_id=automation_id, now=self._clock(), event_data=dict(variables or {})
        )
        return self._start(entry, context, skip_condition)

    def cancel(self, automation_id: str) -> int:
        """Cancels every run of an automation and drops its queued runs."""
        entry = self._entry(automation_id)
        entry.queue.clear()
        cancelled = 0
        for instance in entry.running:
            if instance.task is not None and not instance.task.done():
                instance.task.cancel()
                cancelled += 1
        return cancelled

    async def async_stop(self) -> None:
        """Cancels every run and waits for them to unwind."""
        tasks = []
        for automation_id, entry in self._entries.items():
            self.cancel(automation_id)
            tasks.extend(i.task for i in entry.running if i.task is not None)
        if tasks:
            await aio.gather(*tasks, return_exceptions=True)

    def _start(self, entry: _Entry, context: TriggerContext, skip_condition: bool = False) -> Optional[Task]:
        automation = entry.automation
        running = [i for i in entry.running if not i.done]
        previous: list[Task] = []

        if running:
            match automation.mode:
                case AutomationMode.SINGLE:
                    logger.warning("Automation %s already running, trigger dropped (single mode)", automation.name)
                    return None
                case AutomationMode.RESTART:
                    logger.info("Automation %s restarting, cancelling current run", automation.name)
                    for instance in running:
                        instance.task.cancel()
                        previous.append(instance.task)
                case AutomationMode.QUEUED:
                    if len(entry.queue) == entry.queue.maxlen:
                        logger.warning("Queue of automation %s is full, dropping oldest queued run", automation.name)
                    entry.queue.append((context, skip_condition))
                    return None
                case AutomationMode.PARALLEL:
                    pass

        instance = _Instance(Trace(automation.id, context.description, self._clock()))
        entry.traces.append(instance.trace)
        instance.task = aio.get_running_loop().create_task(
            self._run(entry, instance, context, skip_condition, previous),
            name=f"automation:{automation.id}",
        )
        entry.running.append(instance)
        instance.task.add_done_callback(partial(self._on_done, entry, instance))
        return instance.task

    def _on_done(self, entry: _Entry, instance: _Instance, task: Task) -> None:
        trace = instance.trace
        if task.cancelled() and trace.finished_at is None:
            # Cancelled before its first step, so _run never saw the cancellation
            logger.info("Automation %s cancelled before it started", entry.automation.name)
            trace.state = RunState.CANCELLED
            trace.outcome = "cancelled"
            trace.finished_at = self._clock()
        if instance in entry.running:
            entry.running.remove(instance)
        if entry.queue and not any(not i.done for i in entry.running):
            if self._entries.get(entry.automation.id) is not entry or not entry.enabled:
                entry.queue.clear()
                return
            context, skip_condition = entry.queue.popleft()
            self._start(entry, context, skip_condition)

    async def _run(
        self,
        entry: _Entry,
        instance: _Instance,
        context: TriggerContext,
        skip_condition: bool,
        previous: list[Task],
    ) -> None:
        automation = entry.automation
        trace = instance.trace
        template_context = TemplateContext(
            self._store, {"trigger": context, "automation_id": automation.id}, self._clock
        )
        index = 0
        try:
            if previous:
                # Let cancelled runs unwind before this one touches anything
                await aio.wait(previous)
            trace.state = RunState.CONDITION_CHECK
            if not skip_condition and not check_all(automation.conditions, template_context):
                logger.debug("Conditions of %s not met", automation.name)
                trace.outcome = "condition_failed"
                trace.state = RunState.STOPPED
                return

            trace.state = RunState.RUNNING
            logger.info("Running automation %s (%s)", automation.name, context.description)
            for index, action in enumerate(automation.actions):
                result = await self._executor.execute(action, template_context)
                trace.actions_executed += 1
                if result is ActionResult.STOP:
                    trace.outcome = "stopped"
                    trace.state = RunState.STOPPED
                    break
            else:
                trace.outcome = "finished"
                trace.state = RunState.IDLE
        except aio.CancelledError:
            logger.info("Automation %s cancelled at action %d", automation.name, index)
            trace.state = RunState.CANCELLED
            trace.outcome = "cancelled"
            raise
        except HomeRulesError as err:
            logger.error("Automation %s failed at action %d: %s", automation.name, index, err)
            self._fail(trace, index, err)
        except Exception as err:  # pylint: disable=broad-except
            logger.exception("Automation %s crashed at action %d", automation.name, index)
            self._fail(trace, index, err)
        finally:
            trace.finished_at = self._clock()

    @staticmethod
    def _fail(trace: Trace, index: int, err: Exception) -> None:
        trace.state = RunState.FAILED
        trace.outcome = "failed"
        trace.failed_action = index
        trace.error = str(err)
