"""Shared fixtures for the engine tests."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from homerules.rules.dispatcher import TriggerDispatcher
from homerules.rules.executor import ActionExecutor
from homerules.rules.manager import AutomationRuntime
from homerules.rules.template import TemplateContext
from homerules.scenes.manager import SceneManager
from homerules.services import LogNotifier, ServiceCall, ServiceRegistry
from homerules.states import StateStore


class FakeClock:
    """A controllable clock for deterministic timestamps."""

    def __init__(self, start: datetime = datetime(2025, 1, 15, 20, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingHandler:
    """Service handler which records every call it receives."""

    def __init__(self, delay: float = 0.0):
        self.calls: list[ServiceCall] = []
        self._delay = delay

    async def __call__(self, call: ServiceCall) -> None:
        if self._delay:
            await asyncio.sleep(self._delay)
        self.calls.append(call)


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Polls until the predicate holds, failing the test on timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return StateStore(clock)


@pytest.fixture
def context(store, clock):
    return TemplateContext(store, {}, clock)


@pytest.fixture
def notifier():
    return RecordingHandler()


@pytest.fixture
def services(notifier):
    registry = ServiceRegistry()
    registry.register("notify", notifier)
    registry.register("notify.log", LogNotifier())
    return registry


@pytest.fixture
def scenes(store):
    return SceneManager(store)


@pytest.fixture
async def engine(store, services, scenes, clock):
    """A dispatcher, executor and runtime wired together the way Home wires them."""
    runtime_ref = {}

    def on_trigger(event):
        runtime_ref["runtime"].handle_trigger(event)

    dispatcher = TriggerDispatcher(store, on_trigger, clock=clock)
    executor = ActionExecutor(store, services, scenes, dispatcher.fire_event)
    runtime = AutomationRuntime(store, dispatcher, executor, clock, queue_max=3)
    runtime_ref["runtime"] = runtime
    dispatcher.start()
    yield runtime, dispatcher, executor
    await dispatcher.stop()
    await runtime.async_stop()
