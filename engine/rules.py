"""Mastery rules built on the dice engine: checks and initiative."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from config import DEFAULT_MASTERY_RANK
from engine.dice import FaceSource, roll_pool
from models.dice import InitiativeBreakdown, RollOptions, RollResult

if TYPE_CHECKING:
    from engine.health import WoundPenaltyProvider
    from models.actors import ActorState

logger = logging.getLogger(__name__)


def mastery_rank(actor: ActorState) -> int:
    """Keep count for an actor's rolls."""
    return actor.mastery_rank or DEFAULT_MASTERY_RANK


def calculate_base_initiative(actor: ActorState) -> int:
    """Base initiative = Agility + Wits + Combat Reflexes.

    Args:
        actor: The actor rolling initiative.

    Returns:
        The flat part of the initiative total.
    """
    return (
        actor.attributes.get("agility", 0)
        + actor.attributes.get("wits", 0)
        + actor.skills.get("combatReflexes", 0)
    )


def roll_initiative(actor: ActorState, faces: FaceSource | None = None) -> InitiativeBreakdown:
    """Roll initiative: base plus mastery-rank d8, keeping all of them.

    Args:
        actor: The actor rolling initiative.
        faces: Optional face source for seeded/testing rolls.

    Returns:
        The initiative breakdown the initiative shop consumes.
    """
    rank = mastery_rank(actor)
    base = calculate_base_initiative(actor)
    result = roll_pool(rank, rank, faces=faces)
    breakdown = InitiativeBreakdown(
        base_initiative=base,
        dice_total=result.total,
        total_initiative=base + result.total,
        mastery_rank=rank,
        roll=result,
    )
    logger.info(
        "Initiative for %s: %d + %d = %d",
        actor.name, base, result.total, breakdown.total_initiative,
    )
    return breakdown


def roll_check(
    actor: ActorState,
    attribute: str,
    target_number: int,
    *,
    skill: str | None = None,
    declared_raises: int = 0,
    advantage: bool = False,
    disadvantage: bool = False,
    situational_bonus: int = 0,
    wounds: WoundPenaltyProvider | None = None,
    faces: FaceSource | None = None,
) -> RollResult:
    """Roll an attribute or skill check.

    The pool is the attribute value less the wound penalty (never below one
    die), the keep is the mastery rank, and the flat bonus is the skill value
    plus any situational bonus.

    Args:
        actor: The actor making the check.
        attribute: Attribute whose value is the pool (e.g. "might").
        target_number: Base TN before raises.
        skill: Optional skill added as a flat bonus.
        declared_raises: Raises declared before the roll.
        advantage: Reroll 1s once.
        disadvantage: Only the highest die explodes.
        situational_bonus: Extra flat bonus.
        wounds: Wound penalty provider; no penalty when omitted.
        faces: Optional face source for seeded/testing rolls.

    Returns:
        The RollResult, evaluated against the TN.
    """
    pool = actor.attributes.get(attribute, 0)
    penalty = wounds.wound_penalty(actor) if wounds is not None else 0
    if penalty > 0:
        logger.info("Wound penalty for %s: -%d dice", actor.name, penalty)
    flat = (actor.skills.get(skill, 0) if skill else 0) + situational_bonus

    options = RollOptions(
        flat_bonus=flat,
        advantage=advantage,
        disadvantage=disadvantage,
        target_number=target_number,
        declared_raises=declared_raises,
    )
    return roll_pool(max(1, pool - penalty), mastery_rank(actor), options, faces=faces)
