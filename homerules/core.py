"""Wires the state store, dispatcher, runtime, executor, services and scenes together.

Startup runs in a fixed order so that automations reacting to startup see a complete
state store and every scene:

1. initial entity states are restored from the states file, in file order
2. scenes are loaded
3. automations are installed in file order, their triggers registered in declared order
4. the dispatcher starts listening to the store and the clock
5. the ``homerules_start`` event fires, so startup automations run in file order
"""

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Optional

from homerules.config import Settings
from homerules.rules.clock import SunLocation
from homerules.rules.dispatcher import TriggerDispatcher, TriggerEvent
from homerules.rules.executor import ActionExecutor
from homerules.rules.manager import AutomationRuntime
from homerules.rules.model import Automation
from homerules.scenes.manager import SceneManager
from homerules.services import LogNotifier, ServiceRegistry, WebhookNotifier
from homerules.states import Entity, StateStore
from util import load_models, save_models

logger = logging.getLogger(__name__)

EVENT_START = "homerules_start"


class Home:
    """The assembled automation engine."""

    def __init__(self, settings: Settings, clock: Optional[Callable[[], datetime]] = None):
        self.settings = settings
        self.location = SunLocation(
            latitude=settings.latitude,
            longitude=settings.longitude,
            time_zone=settings.tzinfo,
            elevation=settings.elevation,
        )
        self._clock = clock or self.location.now
        self.store = StateStore(self._clock)
        self.services = ServiceRegistry()
        self.scenes = SceneManager(self.store, settings.scenes_file)
        self.dispatcher = TriggerDispatcher(self.store, self._on_trigger, self.location, self._clock)
        self.executor = ActionExecutor(self.store, self.services, self.scenes, self.dispatcher.fire_event)
        self.runtime = AutomationRuntime(
            self.store,
            self.dispatcher,
            self.executor,
            self._clock,
            queue_max=settings.queue_max,
            trace_history=settings.trace_history,
        )
        self._started = False
        self._register_default_services()

    @property
    def started(self) -> bool:
        return self._started

    def _register_default_services(self):
        self.services.register("notify.log", LogNotifier())
        if self.settings.notify_webhook_url:
            self.services.register("notify", WebhookNotifier(self.settings.notify_webhook_url))
        else:
            self.services.register("notify", LogNotifier())

    def _on_trigger(self, event: TriggerEvent):
        self.runtime.handle_trigger(event)

    async def load_states(self) -> int:
        if not self.settings.states_file:
            return 0
        entities = await load_models(Entity, self.settings.states_file)
        self.store.restore(entities)
        logger.info("Restored %d entity states", len(entities))
        return len(entities)

    async def load_automations(self) -> int:
        installed = 0
        for automation in await load_models(Automation, self.settings.automations_file):
            try:
                self.runtime.install(automation)
                installed += 1
            except ValueError as e:
                logger.error("Skipping automation from %s: %s", self.settings.automations_file, e)
        return installed

    async def save_automations(self):
        await save_models(self.runtime.automations(), self.settings.automations_file)

    async def install_automation(self, automation: Automation, persist: bool = True):
        self.runtime.install(automation)
        if persist:
            await self.save_automations()

    async def uninstall_automation(self, automation_id: str, persist: bool = True) -> bool:
        removed = self.runtime.uninstall(automation_id)
        if removed and persist:
            await self.save_automations()
        return removed

    async def start(self):
        """Loads configuration and starts dispatching, see the module docstring for the order."""
        if self._started:
            return
        await self.load_states()
        await self.scenes.install_saved_scenes()
        count = await self.load_automations()
        logger.info("Installed %d automations", count)
        self.dispatcher.start()
        self._started = True
        self.dispatcher.fire_event(EVENT_START)

    async def stop(self):
        if not self._started:
            return
        await self.dispatcher.stop()
        await self.runtime.async_stop()
        await self.services.close()
        self._started = False
