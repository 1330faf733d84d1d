"""Stone economy: exponentially priced abilities, regeneration, and restore.

Each (attribute, ability) pair costs ``2 ** uses`` stones, where ``uses``
counts activations of that pair in the current turn. Counters are purged
at every turn change, so prices start over at 1.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable

from config import STONE_ATTRIBUTES
from engine.errors import (
    ChoiceFailed,
    InsufficientStones,
    InvalidAllocation,
    RuleViolation,
    UnknownAbility,
)
from engine.ports import Broadcaster, ChoicePort
from engine.round_state import current_round_state
from engine.store import ActorRepository
from models.actions import RegenResult, StoneSpendResult
from models.actors import ActorState, RoundState, StonePool

logger = logging.getLogger(__name__)

GENERIC = "generic"

Effect = Callable[[RoundState], None]


@dataclass(frozen=True)
class StonePower:
    """A discrete ability bought with stones."""
    id: str
    name: str
    attribute: str          # A stone attribute, or "generic" for any pool
    category: str           # "action" | "reaction"
    description: str
    apply: Effect


def _extra_attack(state: RoundState) -> None:
    state.attack.total += 1
    state.stone_bonuses.extra_attacks += 1


def _extra_reaction(state: RoundState) -> None:
    state.reaction.total += 1
    state.stone_bonuses.extra_reactions += 1


def _move_plus_8m(state: RoundState) -> None:
    state.move_bonus_meters += 8
    state.stone_bonuses.extra_move_meters += 8


def _reroll_any(state: RoundState) -> None:
    state.stone_bonuses.reroll_type = "any"


def _reroll_mind_save(state: RoundState) -> None:
    state.stone_bonuses.reroll_type = "mind_spirit"


def _damage_plus_2d8(state: RoundState) -> None:
    state.stone_bonuses.damage_dice += 2


def _ignore_armor_4(state: RoundState) -> None:
    state.stone_bonuses.armor_penetration += 4


def _evade_plus_8(state: RoundState) -> None:
    state.stone_bonuses.evade_bonus += 8


def _crit_raise(state: RoundState) -> None:
    state.stone_bonuses.crit_raises += 1


def _armor_plus_4(state: RoundState) -> None:
    state.stone_bonuses.armor_bonus += 4


def _free_raises_plus_2(state: RoundState) -> None:
    state.stone_bonuses.free_raises += 2


def _extra_spell(state: RoundState) -> None:
    _extra_attack(state)
    state.stone_bonuses.spell_only_attacks += 1


def _keep_plus_1_saves(state: RoundState) -> None:
    state.stone_bonuses.save_keep_bonus += 1


def _pool_die_spell(state: RoundState) -> None:
    # Every second activation also adds a kept die
    bonuses = state.stone_bonuses
    bonuses.spell_pool_dice += 1
    bonuses.spell_keep_dice = bonuses.spell_pool_dice // 2


STONE_POWERS: dict[str, StonePower] = {
    power.id: power
    for power in (
        StonePower("generic.extraAttack", "Extra Attack", GENERIC, "action",
                   "Make 1 additional attack action this round", _extra_attack),
        StonePower("generic.rerollAny", "Reroll (Any)", GENERIC, "action",
                   "Reroll a failed Attack, Save, or Skill roll", _reroll_any),
        StonePower("generic.movePlus8m", "+8m Move", GENERIC, "action",
                   "Gain +8m movement distance this round", _move_plus_8m),
        StonePower("generic.reactionPlus1", "+1 Reaction", GENERIC, "reaction",
                   "Gain +1 Reaction this round", _extra_reaction),
        StonePower("might.damagePlus2d8", "+2 Damage Dice", "might", "action",
                   "Add +2d8 damage to all your attacks this turn", _damage_plus_2d8),
        StonePower("might.ignoreArmor4", "Ignore 4 Armor", "might", "action",
                   "Ignore 4 Armor with all your attacks this turn", _ignore_armor_4),
        StonePower("agility.evadePlus8", "+8 Evade", "agility", "reaction",
                   "Gain +8 Evade until your next turn", _evade_plus_8),
        StonePower("agility.extraReaction", "Extra Reaction", "agility", "reaction",
                   "Gain +1 Reaction this turn", _extra_reaction),
        StonePower("agility.critX", "Crit Raise", "agility", "action",
                   "Gain 1 automatic Raise used for crits", _crit_raise),
        StonePower("vitality.armorPlus4", "+4 Armor", "vitality", "reaction",
                   "Gain 4 temporary Armor until your next turn", _armor_plus_4),
        StonePower("intellect.freeRaisesPlus2", "+2 Free Raises", "intellect", "action",
                   "Add +2 Raises to your next Spell or Skill", _free_raises_plus_2),
        StonePower("intellect.extraSpell", "Extra Spell", "intellect", "action",
                   "Gain +1 Attack action this round for Spells only", _extra_spell),
        StonePower("intellect.keepPlus1Saves", "+1 Keep on Saves", "intellect", "reaction",
                   "Gain +1 Keep on Mind and Spirit saves this round", _keep_plus_1_saves),
        StonePower("resolve.rerollMindSave", "Reroll Mind Save", "resolve", "reaction",
                   "Reroll 1 failed Mind or Spirit save", _reroll_mind_save),
        StonePower("resolve.poolDieSpell", "+1 Spell Die", "resolve", "action",
                   "Add +1d8 to your next Spell or Skill roll", _pool_die_spell),
    )
}


def stone_cost(uses_this_turn: int) -> int:
    """Price of the next activation: 1, 2, 4, 8, ..."""
    return 2 ** max(0, uses_this_turn)


def usage_key(attribute: str, ability_id: str, round_number: int, turn: int) -> str:
    return f"{attribute}:{ability_id}:{round_number}:{turn}"


def available_powers(actor: ActorState) -> list[StonePower]:
    """Stone powers the actor may activate. NPCs have none."""
    if not actor.is_player:
        return []
    return list(STONE_POWERS.values())


def resolve_attribute(ability_id: str, attribute: str | None) -> str:
    """Pick the stone pool that pays for an ability.

    Raises:
        UnknownAbility: If the ability or attribute is not recognized.
    """
    power = STONE_POWERS.get(ability_id)
    if power is not None and power.attribute != GENERIC:
        if attribute is not None and attribute != power.attribute:
            raise UnknownAbility(f"{ability_id} must be paid from {power.attribute} stones")
        attribute = power.attribute
    if attribute is None:
        raise UnknownAbility(f"{ability_id} needs an attribute pool to pay from")
    if attribute not in STONE_ATTRIBUTES:
        raise UnknownAbility(f"Unknown stone attribute '{attribute}'")
    return attribute


def validate_allocation(allocation: Any, points: int) -> dict[str, int]:
    """Check a regeneration allocation against the available points.

    Raises:
        InvalidAllocation: If the shape, an attribute, an amount, or the
            total is not acceptable.
    """
    if not isinstance(allocation, dict):
        raise InvalidAllocation("Allocation must map attributes to amounts")
    cleaned: dict[str, int] = {}
    for attribute, amount in allocation.items():
        if attribute not in STONE_ATTRIBUTES:
            raise InvalidAllocation(f"Unknown stone attribute '{attribute}'")
        if not isinstance(amount, int) or isinstance(amount, bool) or amount < 0:
            raise InvalidAllocation(f"Invalid amount for {attribute}: {amount!r}")
        if amount:
            cleaned[attribute] = amount
    if sum(cleaned.values()) > points:
        raise InvalidAllocation(f"Allocated {sum(cleaned.values())} points, only {points} available")
    return cleaned


def _pool_summary(actor: ActorState) -> dict[str, dict[str, int]]:
    return {
        attribute: {**pool.model_dump(), "effective_max": pool.effective_max}
        for attribute, pool in actor.stone_pools.items()
    }


class StoneEconomy:
    """Spends, regenerates, and restores an actor's stone pools."""

    def __init__(
        self,
        repo: ActorRepository,
        choices: ChoicePort | None = None,
        broadcaster: Broadcaster | None = None,
    ):
        self.repo = repo
        self.choices = choices
        self.broadcaster = broadcaster

    async def next_cost(
        self, actor_id: str, attribute: str, ability_id: str, round_number: int, turn: int,
    ) -> int:
        actor = await self.repo.get(actor_id)
        uses = actor.stone_usage.get(usage_key(attribute, ability_id, round_number, turn), 0)
        return stone_cost(uses)

    async def spend_ability(
        self,
        actor_id: str,
        ability_id: str,
        round_number: int,
        turn: int,
        attribute: str | None = None,
        effect: Effect | None = None,
    ) -> StoneSpendResult:
        """Pay for and apply a stone ability.

        The effect, the stone deduction, the usage increment, and the round
        ledger are committed together; if any step fails nothing changes.

        Args:
            actor_id: The actor activating the ability.
            ability_id: Registered ability ID (or a custom ID with ``effect``).
            round_number: Current combat round.
            turn: Current turn index.
            attribute: Pool to pay from; required for generic abilities.
            effect: Override for the registered effect on the round ledger.

        Returns:
            StoneSpendResult; ``success`` is False for an unknown ability, an
            NPC, or insufficient stones.
        """
        try:
            power = STONE_POWERS.get(ability_id)
            if power is None and effect is None:
                raise UnknownAbility(f"Unknown stone power: {ability_id}")
            attribute = resolve_attribute(ability_id, attribute)
            apply = effect or power.apply

            async with self.repo.transaction(actor_id) as actor:
                if not actor.is_player:
                    raise RuleViolation("NPCs cannot use stone abilities")
                key = usage_key(attribute, ability_id, round_number, turn)
                cost = stone_cost(actor.stone_usage.get(key, 0))
                pool = actor.stone_pools.get(attribute, StonePool())
                if pool.current < cost:
                    raise InsufficientStones(
                        f"Not enough {attribute} stones: need {cost}, have {pool.current}"
                    )

                state = current_round_state(actor, round_number, turn).model_copy(deep=True)
                apply(state)
                actor.round_state = state
                actor.stone_pools[attribute] = pool.model_copy(update={"current": pool.current - cost})
                actor.stone_usage[key] = actor.stone_usage.get(key, 0) + 1
                remaining = pool.current - cost
        except RuleViolation as e:
            logger.warning("Stone ability %s rejected for %s: %s", ability_id, actor_id, e)
            return StoneSpendResult(
                success=False, ability_id=ability_id, attribute=attribute, error=str(e),
            )

        logger.info(
            "%s spent %d %s stones on %s (%d remaining)",
            actor_id, cost, attribute, ability_id, remaining,
        )
        return StoneSpendResult(
            success=True,
            ability_id=ability_id,
            attribute=attribute,
            cost=cost,
            remaining=remaining,
        )

    async def purge_turn(self, actor_id: str, round_number: int, turn: int) -> int:
        """Drop usage counters for one turn. Returns how many keys were removed."""
        suffix = f":{round_number}:{turn}"
        async with self.repo.transaction(actor_id) as actor:
            stale = [key for key in actor.stone_usage if key.endswith(suffix)]
            for key in stale:
                del actor.stone_usage[key]
            return len(stale)

    async def clear_usage(self, actor_id: str) -> None:
        async with self.repo.transaction(actor_id) as actor:
            actor.stone_usage = {}

    async def regenerate_end_of_round(self, actor_id: str, points: int | None = None) -> RegenResult:
        """Ask the controller how to spread regeneration points over their pools.

        ``points`` defaults to the actor's mastery rank. Each pool is capped
        at ``max - sustained``. If every pool is already full the controller
        is not asked. A declined prompt regenerates nothing.

        Raises:
            ChoiceFailed: If the choice port itself fails.
        """
        actor = await self.repo.get(actor_id)
        points = actor.mastery_rank if points is None else points
        if not any(pool.current < pool.effective_max for pool in actor.stone_pools.values()):
            logger.info("%s stone pools already full, skipping regen", actor.name)
            return RegenResult(actor_id=actor_id)
        if self.choices is None:
            return RegenResult(actor_id=actor_id, declined=True)

        context = {
            "actor_id": actor_id,
            "controller_id": actor.controller_id,
            "points": points,
            "pools": _pool_summary(actor),
        }
        try:
            answer = await self.choices.prompt_choice("stone_regen", context)
        except Exception as e:
            logger.exception("Stone regen prompt failed for %s", actor.name)
            raise ChoiceFailed(f"Stone regen prompt failed: {e}") from e

        if answer is None:
            logger.info("%s skipped stone regen", actor.name)
            return RegenResult(actor_id=actor_id, declined=True)

        try:
            if not isinstance(answer, dict):
                raise InvalidAllocation(f"Expected an allocation object, got {type(answer).__name__}")
            allocation = validate_allocation(answer.get("allocation"), points)
        except InvalidAllocation as e:
            logger.warning("Rejected stone regen for %s: %s", actor.name, e)
            return RegenResult(actor_id=actor_id, error=str(e))

        applied: dict[str, int] = {}
        async with self.repo.transaction(actor_id) as working:
            for attribute, amount in allocation.items():
                pool = working.stone_pools.get(attribute)
                if pool is None:
                    continue
                new_current = max(pool.current, min(pool.effective_max, pool.current + amount))
                if new_current != pool.current:
                    applied[attribute] = new_current - pool.current
                    working.stone_pools[attribute] = pool.model_copy(update={"current": new_current})

        logger.info("Applied stone regen for %s: %s", actor.name, applied)
        if self.broadcaster is not None:
            await self.broadcaster.notify("stones_regenerated", {"actor_id": actor_id, "applied": applied})
        return RegenResult(actor_id=actor_id, applied=applied)

    async def restore_after_combat(self, actor_ids: list[str]) -> dict[str, dict[str, int]]:
        """Refill every pool to ``max - sustained`` for each actor.

        Returns:
            actor_id -> {attribute: new current} for the pools that changed.
        """
        restored: dict[str, dict[str, int]] = {}
        for actor_id in actor_ids:
            async with self.repo.transaction(actor_id) as actor:
                changed = {}
                for attribute, pool in actor.stone_pools.items():
                    if pool.current != pool.effective_max:
                        actor.stone_pools[attribute] = pool.model_copy(update={"current": pool.effective_max})
                        changed[attribute] = pool.effective_max
            if changed:
                logger.info("Restored stone pools for %s", actor_id)
                restored[actor_id] = changed
        return restored
