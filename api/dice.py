"""Stateless dice endpoints."""

from fastapi import APIRouter

from engine.dice import RandomFaces, count_max_faces, roll_damage, roll_pool
from models.actions import DamageRequest, RollRequest
from models.dice import DamageResult, RollOptions, RollResult

router = APIRouter()


@router.post("/roll", response_model=RollResult)
def roll(body: RollRequest) -> RollResult:
    """Roll an exploding d8 pool and keep the highest dice.

    Pool and keep are clamped rather than rejected. Pass ``seed`` for a
    reproducible roll.
    """
    options = RollOptions(
        flat_bonus=body.flat_bonus,
        advantage=body.advantage,
        disadvantage=body.disadvantage,
        target_number=body.target_number,
        declared_raises=body.declared_raises,
    )
    return roll_pool(body.pool, body.keep, options, faces=RandomFaces(seed=body.seed))


@router.post("/damage")
def damage(body: DamageRequest) -> dict:
    """Roll non-exploding damage dice from a formula such as ``2d8+3``."""
    result: DamageResult = roll_damage(body.formula, body.bonus_dice, faces=RandomFaces(seed=body.seed))
    return {**result.model_dump(), "max_faces": count_max_faces(result.rolls)}
