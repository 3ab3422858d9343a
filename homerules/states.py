"""The entity state store.

Holds the current value and attributes of every entity and notifies listeners
synchronously on each write. Writes to one entity are serialized by a lock owned
by that entity, so writers of unrelated entities never wait on each other.
"""

import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from homerules.errors import EntityNotFoundError

logger = logging.getLogger(__name__)

STATE_UNKNOWN = "unknown"
STATE_UNAVAILABLE = "unavailable"

StateValue = str | int | float | bool


def split_entity_id(entity_id: str) -> tuple[str, str]:
    """Split an entity id into its domain and object id."""
    domain, sep, object_id = entity_id.partition(".")
    if not sep or not domain or not object_id:
        raise ValueError(f"Invalid entity id: '{entity_id}'")
    return domain, object_id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Entity(BaseModel):
    """A snapshot of one entity. Instances are never mutated, only replaced."""

    model_config = ConfigDict(frozen=True)

    entity_id: str
    state: StateValue
    attributes: dict[str, Any] = Field(default_factory=dict)
    last_changed: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)

    @property
    def domain(self) -> str:
        return split_entity_id(self.entity_id)[0]

    @property
    def object_id(self) -> str:
        return split_entity_id(self.entity_id)[1]

    def __str__(self) -> str:
        return str(self.state)


class StateChangedEvent(BaseModel):
    """Delivered to store listeners after every write."""

    model_config = ConfigDict(frozen=True)

    entity_id: str
    old_state: Optional[Entity] = None
    new_state: Entity

    @property
    def value_changed(self) -> bool:
        return self.old_state is None or self.old_state.state != self.new_state.state


StateListener = Callable[[StateChangedEvent], None]


class StateStore:
    """Current state of every known entity."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._entities: dict[str, Entity] = {}
        self._listeners: list[StateListener] = []
        # EntityId -> lock guarding that entity's read-modify-write
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, entity_id: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(entity_id)
            if lock is None:
                lock = self._locks[entity_id] = threading.RLock()
            return lock

    def get(self, entity_id: str) -> Optional[Entity]:
        """Returns the entity, or None when it has never been set."""
        return self._entities.get(entity_id)

    def require(self, entity_id: str) -> Entity:
        """Returns the entity, raising EntityNotFoundError when it is absent."""
        entity = self._entities.get(entity_id)
        if entity is None:
            raise EntityNotFoundError(entity_id)
        return entity

    def all(self) -> list[Entity]:
        return list(self._entities.values())

    def entity_ids(self, domain: Optional[str] = None) -> list[str]:
        """All entity ids, optionally restricted to those carrying a domain prefix."""
        if domain is None:
            return list(self._entities)
        prefix = f"{domain}."
        return [eid for eid in self._entities if eid.startswith(prefix)]

    def set(
        self,
        entity_id: str,
        state: StateValue,
        attributes: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Entity]:
        """Writes an entity and returns the entity it replaced.

        last_changed only advances when the state value differs from the previous one;
        last_updated advances on every write.
        """
        split_entity_id(entity_id)
        with self._lock_for(entity_id):
            old, new = self._write(entity_id, state, attributes)
        self._notify(StateChangedEvent(entity_id=entity_id, old_state=old, new_state=new))
        return old

    def update(
        self,
        entity_id: str,
        mutate: Callable[[Optional[Entity]], tuple[StateValue, Optional[Mapping[str, Any]]]],
    ) -> Optional[Entity]:
        """Read-modify-write of one entity under its lock.

        ``mutate`` receives the current entity (or None) and returns the new state and
        attributes. Returns the entity that was replaced.
        """
        split_entity_id(entity_id)
        with self._lock_for(entity_id):
            state, attributes = mutate(self._entities.get(entity_id))
            old, new = self._write(entity_id, state, attributes)
        self._notify(StateChangedEvent(entity_id=entity_id, old_state=old, new_state=new))
        return old

    def set_many(
        self, updates: Mapping[str, tuple[StateValue, Optional[Mapping[str, Any]]]]
    ) -> dict[str, Optional[Entity]]:
        """Writes several entities while holding all of their locks.

        Locks are taken in sorted entity id order. Listeners run once every write has
        been applied.
        """
        entity_ids = sorted(updates)
        for entity_id in entity_ids:
            split_entity_id(entity_id)
        locks = [self._lock_for(entity_id) for entity_id in entity_ids]
        events: list[StateChangedEvent] = []
        for lock in locks:
            lock.acquire()
        try:
            for entity_id in entity_ids:
                state, attributes = updates[entity_id]
                old, new = self._write(entity_id, state, attributes)
                events.append(StateChangedEvent(entity_id=entity_id, old_state=old, new_state=new))
        finally:
            for lock in reversed(locks):
                lock.release()
        for event in events:
            self._notify(event)
        return {event.entity_id: event.old_state for event in events}

    def _write(
        self, entity_id: str, state: StateValue, attributes: Optional[Mapping[str, Any]]
    ) -> tuple[Optional[Entity], Entity]:
        now = self._clock()
        old = self._entities.get(entity_id)
        if old is not None and old.state == state:
            last_changed = old.last_changed
        else:
            last_changed = now
        new = Entity(
            entity_id=entity_id,
            state=state,
            attributes=dict(attributes or {}),
            last_changed=last_changed,
            last_updated=now,
        )
        self._entities[entity_id] = new
        return old, new

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Registers a listener for every write. Returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe():
            self.unsubscribe(listener)

        return unsubscribe

    def unsubscribe(self, listener: StateListener) -> bool:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return False
        return True

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def _notify(self, event: StateChangedEvent):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # pylint: disable=broad-except
                logger.exception("State listener %r failed for %s", listener, event.entity_id)

    def restore(self, entities: Iterable[Entity]):
        """Loads entities without notifying listeners (used before automations exist)."""
        for entity in entities:
            with self._lock_for(entity.entity_id):
                self._entities[entity.entity_id] = entity
