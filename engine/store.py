"""Actor state persistence and per-actor transactions."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Protocol

from pydantic import BaseModel, ValidationError

from engine.errors import CollaboratorError, PersistenceError, UnknownActor
from models.actors import ActorState

logger = logging.getLogger(__name__)


class StateStore(Protocol):
    """Asynchronous persistence port for actor state."""

    async def get_state(self, actor_id: str) -> ActorState: ...

    async def set_state(self, actor_id: str, update: dict[str, Any]) -> None: ...

    async def add_actor(self, actor: ActorState) -> None: ...

    async def actor_ids(self) -> list[str]: ...


def _merge(current: ActorState, update: dict[str, Any]) -> ActorState:
    """Apply a partial update, re-validating the whole actor."""
    data = current.model_dump()
    for key, value in update.items():
        if key not in ActorState.model_fields:
            raise PersistenceError(f"Unknown actor field '{key}'")
        data[key] = value.model_dump() if isinstance(value, BaseModel) else value
    try:
        return ActorState.model_validate(data)
    except ValidationError as e:
        raise PersistenceError(f"Rejected update for '{current.id}': {e}") from e


class MemoryStateStore:
    """In-process state store."""

    def __init__(self, actors: list[ActorState] | None = None):
        self._actors: dict[str, ActorState] = {}
        for actor in actors or []:
            self._actors[actor.id] = actor.model_copy(deep=True)

    async def get_state(self, actor_id: str) -> ActorState:
        actor = self._actors.get(actor_id)
        if actor is None:
            raise UnknownActor(f"Actor '{actor_id}' not found")
        return actor.model_copy(deep=True)

    async def set_state(self, actor_id: str, update: dict[str, Any]) -> None:
        current = await self.get_state(actor_id)
        self._actors[actor_id] = _merge(current, update)

    async def add_actor(self, actor: ActorState) -> None:
        if actor.id in self._actors:
            raise ValueError(f"Actor '{actor.id}' already exists")
        self._actors[actor.id] = actor.model_copy(deep=True)

    async def actor_ids(self) -> list[str]:
        return list(self._actors)


class JsonStateStore(MemoryStateStore):
    """State store persisted to a JSON file.

    Every write goes to a temporary file first, then renames for atomicity.
    The in-memory copy is only replaced after the file write succeeds.
    """

    def __init__(self, path: str):
        super().__init__()
        self.path = path
        if Path(path).exists():
            with open(path) as f:
                data = json.load(f)
            self._actors = {key: ActorState.model_validate(value) for key, value in data.items()}

    def _write(self, actors: dict[str, ActorState]) -> None:
        tmp_path = self.path + ".tmp"
        data = {key: actor.model_dump(mode="json") for key, actor in actors.items()}
        try:
            with open(tmp_path, "w") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise PersistenceError(f"Could not write {self.path}: {e}") from e

    async def set_state(self, actor_id: str, update: dict[str, Any]) -> None:
        current = await self.get_state(actor_id)
        merged = _merge(current, update)
        self._write({**self._actors, actor_id: merged})
        self._actors[actor_id] = merged

    async def add_actor(self, actor: ActorState) -> None:
        if actor.id in self._actors:
            raise ValueError(f"Actor '{actor.id}' already exists")
        self._write({**self._actors, actor.id: actor})
        self._actors[actor.id] = actor.model_copy(deep=True)


class ActorRepository:
    """Serializes read-validate-write cycles per actor over a state store."""

    def __init__(self, store: StateStore):
        self.store = store
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, actor_id: str) -> asyncio.Lock:
        return self._locks.setdefault(actor_id, asyncio.Lock())

    async def get(self, actor_id: str) -> ActorState:
        """Read a snapshot of an actor. Mutating it changes nothing."""
        return await self.store.get_state(actor_id)

    async def add(self, actor: ActorState) -> None:
        await self.store.add_actor(actor)

    async def ids(self) -> list[str]:
        return await self.store.actor_ids()

    @asynccontextmanager
    async def transaction(self, actor_id: str) -> AsyncIterator[ActorState]:
        """Yield a working copy of an actor and commit its changes on exit.

        State is re-read under the actor's lock, so a second request for the
        same actor sees the first one's result. Changed fields are written in
        a single ``set_state`` call; if the block raises, nothing is written.

        Raises:
            PersistenceError: If the store rejects or fails the write.
        """
        async with self._lock(actor_id):
            before = await self.store.get_state(actor_id)
            working = before.model_copy(deep=True)
            yield working
            update = {
                name: getattr(working, name)
                for name in ActorState.model_fields
                if getattr(working, name) != getattr(before, name)
            }
            if not update:
                return
            try:
                await self.store.set_state(actor_id, update)
            except CollaboratorError:
                logger.exception("Write failed for actor %s", actor_id)
                raise
            except Exception as e:
                logger.exception("Write failed for actor %s", actor_id)
                raise PersistenceError(f"Could not save actor '{actor_id}': {e}") from e
