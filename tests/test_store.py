"""Tests for actor state stores and per-actor transactions."""

import asyncio
import json

import pytest

from engine.errors import PersistenceError, UnknownActor
from engine.store import ActorRepository, JsonStateStore, MemoryStateStore
from models.actors import ActorState, StonePool


def _make_actor(actor_id: str = "hero") -> ActorState:
    """Helper to create a test actor."""
    return ActorState(
        id=actor_id,
        name=f"Actor_{actor_id}",
        controller_id="p1",
        stone_pools={"might": StonePool(current=3, max=5)},
    )


class FailingStore(MemoryStateStore):
    """Store whose writes always fail."""

    async def set_state(self, actor_id, update):
        raise OSError("disk full")


@pytest.mark.anyio
class TestMemoryStateStore:
    """Tests for MemoryStateStore."""

    async def test_get_returns_copy(self):
        store = MemoryStateStore([_make_actor()])
        actor = await store.get_state("hero")
        actor.name = "Changed"
        assert (await store.get_state("hero")).name == "Actor_hero"

    async def test_unknown_actor(self):
        with pytest.raises(UnknownActor):
            await MemoryStateStore().get_state("nobody")

    async def test_partial_update(self):
        store = MemoryStateStore([_make_actor()])
        await store.set_state("hero", {"initiative": 12})
        actor = await store.get_state("hero")
        assert actor.initiative == 12
        assert actor.stone_pools["might"].current == 3

    async def test_unknown_field_rejected(self):
        store = MemoryStateStore([_make_actor()])
        with pytest.raises(PersistenceError):
            await store.set_state("hero", {"hit_points": 3})

    async def test_invalid_value_rejected(self):
        store = MemoryStateStore([_make_actor()])
        with pytest.raises(PersistenceError):
            await store.set_state("hero", {"stone_pools": {"might": {"current": 9, "max": 5}}})
        assert (await store.get_state("hero")).stone_pools["might"].current == 3

    async def test_duplicate_actor_rejected(self):
        store = MemoryStateStore([_make_actor()])
        with pytest.raises(ValueError):
            await store.add_actor(_make_actor())


@pytest.mark.anyio
class TestJsonStateStore:
    """Tests for JsonStateStore."""

    async def test_persists_and_reloads(self, tmp_path):
        path = str(tmp_path / "actors.json")
        store = JsonStateStore(path)
        await store.add_actor(_make_actor())
        await store.set_state("hero", {"initiative": 7})

        reloaded = JsonStateStore(path)
        assert (await reloaded.get_state("hero")).initiative == 7
        with open(path) as f:
            assert "hero" in json.load(f)

    async def test_failed_write_leaves_memory_unchanged(self, tmp_path):
        path = str(tmp_path / "missing_dir" / "actors.json")
        store = JsonStateStore(path)
        with pytest.raises(PersistenceError):
            await store.add_actor(_make_actor())
        assert await store.actor_ids() == []


@pytest.mark.anyio
class TestTransaction:
    """Tests for ActorRepository.transaction()."""

    async def test_commits_changes(self):
        repo = ActorRepository(MemoryStateStore([_make_actor()]))
        async with repo.transaction("hero") as actor:
            actor.initiative = 9
        assert (await repo.get("hero")).initiative == 9

    async def test_exception_commits_nothing(self):
        repo = ActorRepository(MemoryStateStore([_make_actor()]))
        with pytest.raises(RuntimeError):
            async with repo.transaction("hero") as actor:
                actor.initiative = 9
                raise RuntimeError("effect failed")
        assert (await repo.get("hero")).initiative is None

    async def test_write_failure_surfaces(self):
        repo = ActorRepository(FailingStore([_make_actor()]))
        with pytest.raises(PersistenceError):
            async with repo.transaction("hero") as actor:
                actor.initiative = 9

    async def test_no_changes_no_write(self):
        repo = ActorRepository(FailingStore([_make_actor()]))
        async with repo.transaction("hero"):
            pass

    async def test_concurrent_spends_serialize(self):
        """Two rapid spends both see the result of the other."""
        repo = ActorRepository(MemoryStateStore([_make_actor()]))

        async def spend():
            async with repo.transaction("hero") as actor:
                pool = actor.stone_pools["might"]
                await asyncio.sleep(0)
                if pool.current >= 2:
                    actor.stone_pools["might"] = pool.model_copy(update={"current": pool.current - 2})
                    return True
                return False

        results = await asyncio.gather(spend(), spend())
        assert sorted(results) == [False, True]
        assert (await repo.get("hero")).stone_pools["might"].current == 1
