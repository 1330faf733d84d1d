"""Tests for combat orchestration: lifecycle, initiative, turns and rounds."""

import pytest

from engine.combat import (
    EncounterSession,
    create_encounter,
    current_actor_id,
    load_encounter,
    save_encounter,
    sort_initiative_order,
)
from engine.dice import ScriptedFaces
from engine.errors import ChoiceFailed, PersistenceError, RuleViolation, UnknownActor
from engine.ports import EventRecorder, ScriptedChoices
from models.actors import ActionCategory, ActorKind, ActorState, StonePool
from models.game_state import EncounterStatus


def _make_hero(current: int = 5) -> ActorState:
    """A rank-2 player with base initiative 5."""
    return ActorState(
        id="hero",
        name="Hero",
        controller_id="p1",
        mastery_rank=2,
        attributes={"agility": 3, "wits": 2, "might": 4, "vitality": 2},
        stone_pools={"might": StonePool(current=current, max=5)},
    )


def _make_ogre() -> ActorState:
    """A rank-1 NPC with base initiative 3."""
    return ActorState(
        id="ogre",
        name="Ogre",
        controller_id="gm",
        kind=ActorKind.NPC,
        mastery_rank=1,
        attributes={"agility": 2, "wits": 1},
        stone_pools={"might": StonePool(current=3, max=3)},
    )


class BrokenChoices:
    """Choice port whose prompts always fail."""

    async def prompt_choice(self, kind, context):
        raise ConnectionError("client went away")


class RegenOutage:
    """Declines the shop but fails every regen prompt."""

    async def prompt_choice(self, kind, context):
        if kind == "stone_regen":
            raise ConnectionError("client went away")
        return None


class SecondShopOutage:
    """Declines every prompt, except the second shop prompt fails."""

    def __init__(self):
        self.shop_prompts = 0

    async def prompt_choice(self, kind, context):
        if kind == "initiative_shop":
            self.shop_prompts += 1
            if self.shop_prompts == 2:
                raise ConnectionError("client went away")
        return None


async def _session(repo, faces, choices=None, recorder=None) -> EncounterSession:
    await repo.add(_make_hero())
    await repo.add(_make_ogre())
    session = EncounterSession(repo, faces=ScriptedFaces(faces), choices=choices, broadcaster=recorder)
    await session.add_participant("hero")
    await session.add_participant("ogre")
    return session


class TestSortInitiativeOrder:
    """Tests for sort_initiative_order()."""

    def test_highest_first(self):
        enc = create_encounter()
        enc.participants = ["a", "b", "c"]
        assert sort_initiative_order(enc, {"a": 3, "b": 9, "c": 5}) == ["b", "c", "a"]

    def test_ties_keep_join_order(self):
        enc = create_encounter()
        enc.participants = ["a", "b", "c"]
        assert sort_initiative_order(enc, {"a": 4, "b": 7, "c": 7}) == ["b", "c", "a"]

    def test_missing_initiative_sorts_last(self):
        enc = create_encounter()
        enc.participants = ["a", "b"]
        assert sort_initiative_order(enc, {"a": None, "b": 0}) == ["b", "a"]


@pytest.mark.anyio
class TestParticipants:
    """Tests for joining and leaving."""

    async def test_unknown_actor(self, repo):
        session = EncounterSession(repo)
        with pytest.raises(UnknownActor):
            await session.add_participant("ghost")

    async def test_join_is_idempotent(self, repo):
        await repo.add(_make_hero())
        session = EncounterSession(repo)
        await session.add_participant("hero")
        await session.add_participant("hero")
        assert session.encounter.participants == ["hero"]

    async def test_cannot_join_once_begun(self, repo):
        session = await _session(repo, [5, 3, 4], ScriptedChoices())
        await session.begin_encounter()
        await repo.add(ActorState(id="late", name="Late", controller_id="p2"))
        with pytest.raises(RuleViolation):
            await session.add_participant("late")
        with pytest.raises(RuleViolation):
            await session.remove_participant("hero")

    async def test_leave(self, repo):
        session = await _session(repo, [])
        await session.remove_participant("ogre")
        assert session.encounter.participants == ["hero"]


@pytest.mark.anyio
class TestBeginEncounter:
    """Tests for the round-1 initiative phase."""

    async def test_needs_participants(self, repo):
        with pytest.raises(RuleViolation):
            await EncounterSession(repo).begin_encounter()

    async def test_rolls_and_shops(self, repo):
        choices = ScriptedChoices()
        choices.queue("initiative_shop", {"extra_attack": True}, actor_id="hero")
        recorder = EventRecorder()
        session = await _session(repo, [5, 3, 4], choices, recorder)

        enc = await session.begin_encounter()
        assert enc.status == EncounterStatus.INITIATIVE
        assert session.breakdowns["hero"].total_initiative == 13
        assert session.breakdowns["ogre"].total_initiative == 7
        assert (await repo.get("hero")).initiative == 8
        assert (await repo.get("ogre")).initiative == 7
        assert sorted(enc.initiative_resolved) == ["hero", "ogre"]
        assert [kind for kind, _ in choices.prompts] == ["initiative_shop"]
        assert len(recorder.of_type("initiative_complete")) == 1

    async def test_cannot_begin_twice(self, repo):
        session = await _session(repo, [5, 3, 4], ScriptedChoices())
        await session.begin_encounter()
        with pytest.raises(RuleViolation):
            await session.begin_encounter()

    async def test_failed_prompt_leaves_player_pending(self, repo):
        session = await _session(repo, [5, 3, 4], BrokenChoices())
        with pytest.raises(ChoiceFailed):
            await session.begin_encounter()
        assert session.encounter.status == EncounterStatus.INITIATIVE
        assert session.encounter.initiative_resolved == ["ogre"]
        assert await session.pending_initiative() == ["hero"]
        with pytest.raises(RuleViolation):
            await session.start_combat()

        await session.shop.skip("hero", 1, session.breakdowns["hero"])
        await session.initiative_settled()
        enc = await session.start_combat()
        assert enc.status == EncounterStatus.ACTIVE
        assert enc.initiative_order == ["hero", "ogre"]


@pytest.mark.anyio
class TestCombatFlow:
    """Tests for start, turns and rounds."""

    async def test_start_orders_and_applies_shop(self, repo):
        choices = ScriptedChoices()
        choices.queue("initiative_shop", {"extra_attack": True}, actor_id="hero")
        recorder = EventRecorder()
        session = await _session(repo, [5, 3, 4], choices, recorder)
        await session.begin_encounter()

        enc = await session.start_combat()
        assert enc.status == EncounterStatus.ACTIVE
        assert enc.initiative_order == ["hero", "ogre"]
        assert current_actor_id(enc) == "hero"
        assert (await repo.get("hero")).round_state.attack.total == 2
        assert (await repo.get("ogre")).round_state.attack.total == 1
        assert recorder.of_type("combat_started")[0]["current"] == "hero"

    async def test_start_requires_initiative_phase(self, repo):
        session = await _session(repo, [])
        with pytest.raises(RuleViolation):
            await session.start_combat()

    async def test_turn_change_resets_used_and_purges_usage(self, repo):
        session = await _session(repo, [5, 3, 4], ScriptedChoices())
        await session.begin_encounter()
        await session.start_combat()

        assert (await session.spend_action("hero", ActionCategory.ATTACK)).success
        assert not (await session.spend_action("hero", ActionCategory.ATTACK)).success
        spent = await session.use_stone_ability("hero", "might.damagePlus2d8")
        assert spent.cost == 1

        enc = await session.advance_turn()
        assert enc.current_turn_index == 1
        assert current_actor_id(enc) == "ogre"
        hero = await repo.get("hero")
        assert hero.round_state.attack.used == 0
        assert hero.round_state.stone_bonuses.damage_dice == 2
        assert hero.stone_usage == {}
        assert (await session.use_stone_ability("hero", "might.damagePlus2d8")).cost == 1

    async def test_round_wrap_regenerates_and_reshops(self, repo):
        choices = ScriptedChoices()
        choices.queue("initiative_shop", {"extra_attack": True}, actor_id="hero")
        choices.queue("stone_regen", {"allocation": {"might": 1}})
        recorder = EventRecorder()
        session = await _session(repo, [5, 3, 4, 1, 1, 2], choices, recorder)
        await session.begin_encounter()
        await session.start_combat()
        await session.use_stone_ability("hero", "might.damagePlus2d8")

        await session.advance_turn()
        enc = await session.advance_turn()

        assert enc.round_number == 2
        assert enc.current_turn_index == 0
        assert [kind for kind, _ in choices.prompts] == ["initiative_shop", "stone_regen", "initiative_shop"]
        hero = await repo.get("hero")
        assert hero.stone_pools["might"].current == 5
        assert hero.initiative == 7
        assert hero.round_state.round == 2
        assert hero.round_state.attack.total == 1
        assert hero.round_state.stone_bonuses.damage_dice == 0
        assert (await repo.get("ogre")).initiative == 5
        assert enc.initiative_order == ["hero", "ogre"]
        assert recorder.of_type("turn_changed")[-1]["round"] == 2
        assert any(e.event_type == "stones_regenerated" for e in enc.event_log)

    async def test_regen_outage_does_not_stop_round(self, repo):
        session = await _session(repo, [5, 3, 4, 1, 1, 2], RegenOutage())
        await session.begin_encounter()
        await session.start_combat()
        await session.use_stone_ability("hero", "might.damagePlus2d8")

        await session.advance_turn()
        enc = await session.advance_turn()
        assert enc.round_number == 2
        assert any(e.event_type == "stones_regen_failed" for e in enc.event_log)
        assert (await repo.get("hero")).stone_pools["might"].current == 4

    async def test_failed_shop_on_round_change_reorders_after_resolve(self, repo):
        """Round 2: hero 5+1+1 = 7, ogre 3+8+8+5 = 24; the hero's prompt fails."""
        recorder = EventRecorder()
        session = await _session(repo, [5, 3, 4, 1, 1, 8, 8, 5], SecondShopOutage(), recorder)
        await session.begin_encounter()
        await session.start_combat()
        await session.advance_turn()

        with pytest.raises(ChoiceFailed):
            await session.advance_turn()
        enc = session.encounter
        assert enc.status == EncounterStatus.ACTIVE
        assert enc.round_number == 2
        assert await session.pending_initiative() == ["hero"]
        with pytest.raises(RuleViolation):
            await session.advance_turn()

        enc = await session.resolve_initiative("hero")
        assert (await repo.get("hero")).initiative == 7
        assert (await repo.get("ogre")).initiative == 24
        assert enc.initiative_order == ["ogre", "hero"]
        assert enc.current_turn_index == 0
        assert current_actor_id(enc) == "ogre"
        assert recorder.of_type("initiative_complete")[-1]["order"] == ["ogre", "hero"]

        enc = await session.advance_turn()
        assert current_actor_id(enc) == "hero"

    async def test_actions_require_active_combat(self, repo):
        session = await _session(repo, [])
        with pytest.raises(RuleViolation):
            await session.spend_action("hero", ActionCategory.ATTACK)
        with pytest.raises(RuleViolation):
            await session.use_stone_ability("hero", "might.damagePlus2d8")
        with pytest.raises(RuleViolation):
            await session.advance_turn()

    async def test_actions_require_participant(self, repo):
        session = await _session(repo, [5, 3, 4], ScriptedChoices())
        await repo.add(ActorState(id="bystander", name="Bystander", controller_id="p2"))
        await session.begin_encounter()
        await session.start_combat()
        with pytest.raises(RuleViolation):
            await session.spend_action("bystander", ActionCategory.MOVEMENT)


@pytest.mark.anyio
class TestEndCombat:
    """Tests for end_combat()."""

    async def test_restores_and_archives(self, repo):
        recorder = EventRecorder()
        session = await _session(repo, [5, 3, 4], ScriptedChoices(), recorder)
        await session.begin_encounter()
        await session.start_combat()
        await session.use_stone_ability("hero", "might.damagePlus2d8")

        enc = await session.end_combat()
        assert enc.status == EncounterStatus.WAITING
        assert enc.initiative_order == []
        assert enc.round_number == 1
        assert enc.event_log == []
        assert len(enc.combat_log_history) == 1
        assert enc.combat_log_history[0][-1].event_type == "stones_restored"
        hero = await repo.get("hero")
        assert hero.stone_pools["might"].current == 5
        assert hero.stone_usage == {}
        assert recorder.of_type("combat_ended")[0]["participants"] == ["hero", "ogre"]

    async def test_nothing_to_end(self, repo):
        with pytest.raises(RuleViolation):
            await EncounterSession(repo).end_combat()

    async def test_new_encounter_after_end(self, repo):
        session = await _session(repo, [5, 3, 4, 6, 6, 6], ScriptedChoices())
        await session.begin_encounter()
        await session.start_combat()
        await session.end_combat()
        enc = await session.begin_encounter()
        assert enc.status == EncounterStatus.INITIATIVE
        assert (await repo.get("hero")).initiative == 17


@pytest.mark.anyio
class TestWoundsAndChecks:
    """Tests for wound marking and checks through the session."""

    async def test_apply_wounds(self, repo):
        session = await _session(repo, [])
        levels = await session.apply_wounds("hero", 3)
        assert sum(level.damage_boxes for level in levels) == 3

    async def test_negative_wounds_rejected(self, repo):
        session = await _session(repo, [])
        with pytest.raises(RuleViolation):
            await session.apply_wounds("hero", -1)

    async def test_roll_check(self, repo):
        session = await _session(repo, [2, 7, 4, 1])
        result = await session.roll_check("hero", "might", 10)
        assert result.kept == [7, 4]
        assert result.success is True


class TestPersistence:
    """Tests for save_encounter() / load_encounter()."""

    def test_round_trip(self, tmp_path):
        path = str(tmp_path / "encounter.json")
        enc = create_encounter()
        enc.participants = ["hero", "ogre"]
        enc.round_number = 3
        save_encounter(enc, path)

        loaded = load_encounter(path)
        assert loaded.participants == ["hero", "ogre"]
        assert loaded.round_number == 3

    def test_missing_file(self, tmp_path):
        assert load_encounter(str(tmp_path / "nothing.json")) is None

    @pytest.mark.anyio
    async def test_session_saves_on_change(self, repo, tmp_path):
        path = str(tmp_path / "encounter.json")
        await repo.add(_make_hero())
        session = EncounterSession(repo, encounter_path=path)
        await session.add_participant("hero")
        assert load_encounter(path).participants == ["hero"]

    @pytest.mark.anyio
    async def test_failed_save_keeps_memory_and_file_in_step(self, repo, tmp_path):
        path = str(tmp_path / "missing_dir" / "encounter.json")
        await repo.add(_make_hero())
        session = EncounterSession(repo, encounter_path=path)
        with pytest.raises(PersistenceError):
            await session.add_participant("hero")
        assert session.encounter.participants == []

    @pytest.mark.anyio
    async def test_failed_save_rolls_back_lifecycle(self, repo, tmp_path, monkeypatch):
        path = str(tmp_path / "encounter.json")
        await repo.add(_make_hero())
        await repo.add(_make_ogre())
        session = EncounterSession(
            repo, faces=ScriptedFaces([5, 3, 4, 5, 3, 4]), choices=ScriptedChoices(), encounter_path=path,
        )
        await session.add_participant("hero")
        await session.add_participant("ogre")

        def disk_full(encounter, target):
            raise PersistenceError("Could not save encounter: disk full")

        monkeypatch.setattr("engine.combat.save_encounter", disk_full)
        with pytest.raises(PersistenceError):
            await session.begin_encounter()
        assert session.encounter.status == EncounterStatus.WAITING
        assert session.encounter.participants == ["hero", "ogre"]
        assert load_encounter(path).status == EncounterStatus.WAITING

        monkeypatch.undo()
        enc = await session.begin_encounter()
        assert enc.status == EncounterStatus.INITIATIVE
        assert load_encounter(path).status == EncounterStatus.INITIATIVE
