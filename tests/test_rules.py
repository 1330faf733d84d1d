"""Tests for checks and initiative rolls."""

from engine.dice import ScriptedFaces
from engine.health import HealthTracker, initialize_health_levels, mark_damage
from engine.rules import calculate_base_initiative, mastery_rank, roll_check, roll_initiative
from models.actors import ActorState


def _make_actor(rank: int = 2, **attributes: int) -> ActorState:
    """Helper to create a test actor."""
    return ActorState(
        id="hero",
        name="Hero",
        controller_id="p1",
        mastery_rank=rank,
        attributes=attributes or {"might": 4, "agility": 3, "wits": 2, "vitality": 1},
        skills={"combatReflexes": 1, "athletics": 2},
    )


class TestInitiative:
    """Tests for initiative rolls."""

    def test_base_initiative(self):
        assert calculate_base_initiative(_make_actor()) == 6

    def test_base_without_skill(self):
        actor = _make_actor()
        actor.skills = {}
        assert calculate_base_initiative(actor) == 5

    def test_rolls_rank_dice_and_keeps_all(self):
        breakdown = roll_initiative(_make_actor(rank=2), faces=ScriptedFaces([5, 3]))
        assert breakdown.base_initiative == 6
        assert breakdown.dice_total == 8
        assert breakdown.total_initiative == 14
        assert breakdown.mastery_rank == 2
        assert breakdown.roll.pool == 2
        assert breakdown.roll.keep == 2

    def test_initiative_dice_explode(self):
        breakdown = roll_initiative(_make_actor(rank=1), faces=ScriptedFaces([8, 4]))
        assert breakdown.dice_total == 12
        assert breakdown.total_initiative == 18

    def test_missing_rank_uses_default(self):
        assert mastery_rank(_make_actor(rank=0)) == 2


class TestRollCheck:
    """Tests for roll_check()."""

    def test_pool_is_attribute_keep_is_rank(self):
        result = roll_check(_make_actor(), "might", 10, faces=ScriptedFaces([2, 7, 4, 1]))
        assert result.pool == 4
        assert result.keep == 2
        assert result.kept == [7, 4]
        assert result.total == 11
        assert result.success is True

    def test_skill_is_flat_bonus(self):
        result = roll_check(
            _make_actor(), "might", 20, skill="athletics", situational_bonus=1,
            faces=ScriptedFaces([2, 7, 4, 1]),
        )
        assert result.flat_bonus == 3
        assert result.total == 14
        assert result.success is False
        assert result.margin == -6

    def test_declared_raises(self):
        result = roll_check(
            _make_actor(), "might", 5, declared_raises=1, faces=ScriptedFaces([2, 7, 4, 1]),
        )
        assert result.effective_tn == 9
        assert result.success is True

    def test_wound_penalty_shrinks_pool(self):
        actor = _make_actor()
        actor.health_levels = mark_damage(initialize_health_levels(1), 5)  # Hurt: -2 dice
        result = roll_check(actor, "might", 10, wounds=HealthTracker(), faces=ScriptedFaces([6, 6]))
        assert result.pool == 2

    def test_pool_never_below_one(self):
        actor = _make_actor()
        actor.health_levels = mark_damage(initialize_health_levels(1), 13)  # Crippled: -6 dice
        result = roll_check(actor, "might", 10, wounds=HealthTracker(), faces=ScriptedFaces([6]))
        assert result.pool == 1
        assert result.keep == 1
