import asyncio as aio
import logging
from typing import Optional

from homerules.errors import ActionError
from homerules.rules.condition import match_state
from homerules.scenes.model import Scene
from homerules.states import Entity, StateStore
from util import load_models, save_models

logger = logging.getLogger(__name__)


class SceneManager:
    """Manager for scenes (multi-entity state bundles)"""

    def __init__(self, store: StateStore, scenes_file: Optional[str] = None):
        self._store = store
        self._scenes: dict[str, Scene] = {}
        self._scene_lock = aio.Lock()
        self._scenes_file = scenes_file

    async def _save_scenes(self):
        """Save all scenes to the scenes file."""
        if self._scenes_file is None:
            return
        await save_models(list(self._scenes.values()), self._scenes_file)

    async def install_saved_scenes(self):
        """Load and install all scenes from the scenes file."""
        if self._scenes_file is None:
            return
        for scene in await load_models(Scene, self._scenes_file):
            if scene.name in self._scenes:
                logger.error("Duplicate scene '%s' in %s, skipped", scene.name, self._scenes_file)
                continue
            self._scenes[scene.name] = scene
        logger.info("Loaded %d scenes", len(self._scenes))

    async def create_scene(self, scene: Scene, persist: bool = True):
        """Create a new scene"""
        if scene.name in self._scenes:
            raise ValueError(f"Scene '{scene.name}' already exists")

        async with self._scene_lock:
            self._scenes[scene.name] = scene
            if persist:
                await self._save_scenes()

    async def delete_scene(self, scene_name: str, persist: bool = True):
        """Delete a scene"""
        if scene_name not in self._scenes:
            raise ValueError(f"Scene '{scene_name}' does not exist")

        async with self._scene_lock:
            del self._scenes[scene_name]
            if persist:
                await self._save_scenes()

    def get_scene(self, scene_name: str) -> Optional[Scene]:
        """Get a scene"""
        return self._scenes.get(scene_name)

    def is_active(self, scene_name: str) -> bool:
        """Whether every entity of the scene currently has the scene's state"""
        scene = self._scenes[scene_name]
        for entity_id, target in scene.entities.items():
            entity = self._store.get(entity_id)
            if entity is None or not match_state(entity.state, target.state):
                return False
        return True

    def get_all_scenes(self) -> list[tuple[Scene, bool]]:
        """Get all scenes along with whether each one is active"""
        return [(scene, self.is_active(name)) for name, scene in self._scenes.items()]

    def activate(self, scene_name: str) -> dict[str, Optional[Entity]]:
        """Applies every entity state of a scene in one atomic store write.

        Returns the entities that were replaced."""
        scene = self._scenes.get(scene_name)
        if scene is None:
            raise ActionError(f"Scene '{scene_name}' does not exist")
        logger.info("Activating scene '%s'", scene_name)
        return self._store.set_many(
            {
                entity_id: (target.state, target.attributes)
                for entity_id, target in scene.entities.items()
            }
        )
