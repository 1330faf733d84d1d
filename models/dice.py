"""Dice roll result models for Mastery Server."""

from pydantic import BaseModel


class RollOptions(BaseModel):
    """Modifiers applied to a Roll & Keep pool roll."""
    flat_bonus: int = 0
    advantage: bool = False         # Reroll dice whose first face was 1
    disadvantage: bool = False      # Only the highest die may explode
    target_number: int | None = None
    declared_raises: int = 0


class RollDie(BaseModel):
    """One logical d8 position in a pool."""
    index: int                      # Original position in the pool (0-based)
    faces: list[int]                # Initial face plus explosion continuations
    total: int
    exploded: bool = False
    rerolled: bool = False          # Rerolled by advantage


class RollResult(BaseModel):
    """Outcome of one Roll & Keep pool roll."""
    pool: int                       # Pool size after clamping
    keep: int                       # Keep count after clamping
    all_dice: list[RollDie]
    kept: list[int]                 # Kept die totals, highest first
    dropped: list[int]
    kept_sum: int
    flat_bonus: int
    total: int
    base_tn: int | None = None
    declared_raises: int = 0
    effective_tn: int | None = None
    success: bool | None = None     # None when no TN was given
    margin: int | None = None
    formula: str                    # e.g. "8k3 + 4 (Advantage)"
    exploded_count: int = 0
    advantage_used: bool = False
    disadvantage_used: bool = False


class DamageResult(BaseModel):
    """Result of a non-exploding damage roll."""
    rolls: list[int]
    flat_bonus: int = 0
    total: int
    formula: str
    valid: bool = True              # False when the formula could not be parsed


class InitiativeBreakdown(BaseModel):
    """How a combatant's initiative total was produced."""
    base_initiative: int
    dice_total: int
    total_initiative: int
    mastery_rank: int
    roll: RollResult | None = None
