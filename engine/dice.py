"""Roll & Keep d8 dice engine for Mastery Server.

Pools of exploding d8 are rolled, the highest ``keep`` dice are summed and
the total is compared to a target number raised by declared raises.
"""

from __future__ import annotations

import logging
import random
import re
from typing import Iterable, Protocol

from config import DIE_FACES, MAX_KEEP, MAX_POOL, RAISE_STEP
from models.dice import DamageResult, RollDie, RollOptions, RollResult

logger = logging.getLogger(__name__)

_DAMAGE_PATTERN = re.compile(r"^(\d+)d(\d+)([+-]\d+)?$")


class FaceSource(Protocol):
    """Produces single d8 faces in the range 1..8."""

    def roll_face(self) -> int: ...


class RandomFaces:
    """Face source backed by ``random.Random``."""

    def __init__(self, rng: random.Random | None = None, seed: int | None = None):
        self.rng = rng or random.Random(seed)

    def roll_face(self) -> int:
        return self.rng.randint(1, DIE_FACES)


class ScriptedFaces:
    """Face source that replays a fixed list of faces, for tests and replays."""

    def __init__(self, faces: Iterable[int]):
        self._faces = list(faces)
        self._position = 0

    def roll_face(self) -> int:
        if self._position >= len(self._faces):
            raise RuntimeError("Scripted face source exhausted")
        face = self._faces[self._position]
        self._position += 1
        return face

    @property
    def remaining(self) -> int:
        return len(self._faces) - self._position


def roll_chain(faces: FaceSource, explode: bool = True) -> list[int]:
    """Roll one die, appending another face each time the last one was an 8.

    Args:
        faces: Source of d8 faces.
        explode: Whether a maximum face triggers another roll.

    Returns:
        The face sequence for the die (initial roll first).
    """
    chain = [faces.roll_face()]
    while explode and chain[-1] == DIE_FACES:
        chain.append(faces.roll_face())
    return chain


def _make_die(index: int, chain: list[int], rerolled: bool = False) -> RollDie:
    return RollDie(
        index=index,
        faces=chain,
        total=sum(chain),
        exploded=len(chain) > 1,
        rerolled=rerolled,
    )


def _apply_disadvantage(dice: list[RollDie]) -> list[RollDie]:
    """Cap every exploded die except the single highest at a flat 8."""
    highest = min(dice, key=lambda d: (-d.total, d.index))
    capped = []
    for die in dice:
        if die.index != highest.index and die.exploded:
            die = _make_die(die.index, [DIE_FACES], rerolled=die.rerolled)
        capped.append(die)
    return capped


def clamp_pool(pool_size: int, keep: int) -> tuple[int, int]:
    """Clamp a requested pool/keep pair to the legal ranges."""
    pool = max(1, min(pool_size, MAX_POOL))
    keep = max(1, min(keep, pool, MAX_KEEP))
    return pool, keep


def evaluate_target(
    total: int,
    target_number: int,
    declared_raises: int = 0,
) -> tuple[int, bool, int]:
    """Compare a total against a target number raised by declared raises.

    Returns:
        (effective_tn, success, margin) tuple.
    """
    effective_tn = target_number + RAISE_STEP * declared_raises
    return effective_tn, total >= effective_tn, total - effective_tn


def _formula(pool: int, keep: int, options: RollOptions) -> str:
    formula = f"{pool}k{keep}"
    if options.flat_bonus > 0:
        formula += f" + {options.flat_bonus}"
    elif options.flat_bonus < 0:
        formula += f" - {-options.flat_bonus}"
    if options.advantage:
        formula += " (Advantage)"
    if options.disadvantage:
        formula += " (Disadvantage)"
    return formula


def roll_pool(
    pool_size: int,
    keep: int,
    options: RollOptions | None = None,
    faces: FaceSource | None = None,
) -> RollResult:
    """Roll a pool of exploding d8 and keep the highest dice.

    Pool and keep are clamped rather than rejected. Advantage rerolls (once)
    every die whose first face was 1; disadvantage lets only the highest die
    keep its explosion chain. Kept dice are ordered by total descending,
    ties by ascending original index.

    Args:
        pool_size: Number of dice to roll (clamped to 1..40).
        keep: Number of dice to keep (clamped to 1..min(pool, 8)).
        options: Flat bonus, advantage/disadvantage, TN and raises.
        faces: Face source; a fresh RandomFaces when omitted.

    Returns:
        The completed RollResult.
    """
    options = options or RollOptions()
    faces = faces or RandomFaces()
    pool, keep = clamp_pool(pool_size, keep)

    dice = [_make_die(i, roll_chain(faces)) for i in range(pool)]

    if options.advantage:
        dice = [
            _make_die(die.index, roll_chain(faces), rerolled=True)
            if die.faces[0] == 1 else die
            for die in dice
        ]

    if options.disadvantage:
        dice = _apply_disadvantage(dice)

    ordered = sorted(dice, key=lambda d: (-d.total, d.index))
    kept = [d.total for d in ordered[:keep]]
    dropped = [d.total for d in ordered[keep:]]
    kept_sum = sum(kept)
    total = kept_sum + options.flat_bonus

    effective_tn = success = margin = None
    if options.target_number is not None:
        effective_tn, success, margin = evaluate_target(
            total, options.target_number, options.declared_raises
        )

    result = RollResult(
        pool=pool,
        keep=keep,
        all_dice=dice,
        kept=kept,
        dropped=dropped,
        kept_sum=kept_sum,
        flat_bonus=options.flat_bonus,
        total=total,
        base_tn=options.target_number,
        declared_raises=options.declared_raises,
        effective_tn=effective_tn,
        success=success,
        margin=margin,
        formula=_formula(pool, keep, options),
        exploded_count=sum(1 for d in dice if d.exploded),
        advantage_used=options.advantage,
        disadvantage_used=options.disadvantage,
    )

    logger.info("Rolled %s = %d (kept %s)", result.formula, total, kept)
    if effective_tn is not None:
        logger.info(
            "  vs TN %d -> %s (margin %d)",
            effective_tn, "success" if success else "failure", margin,
        )
    return result


def roll_damage(
    formula: str,
    bonus_dice: int = 0,
    faces: FaceSource | None = None,
) -> DamageResult:
    """Roll non-exploding damage dice from notation like '2d8' or '3d8+4'.

    A bare integer formula is treated as flat damage. Anything else that
    does not parse yields an empty, zero-total result marked invalid.

    Args:
        formula: Damage notation; only d8 dice are supported.
        bonus_dice: Extra d8 added to the pool (e.g. from raises).
        faces: Face source; a fresh RandomFaces when omitted.

    Returns:
        DamageResult with individual rolls and total.
    """
    faces = faces or RandomFaces()
    notation = formula.strip().lower().replace(" ", "")

    match = _DAMAGE_PATTERN.match(notation)
    if not match or int(match.group(2)) != DIE_FACES:
        try:
            flat = int(notation)
        except ValueError:
            logger.warning("Invalid damage formula: %s", formula)
            return DamageResult(rolls=[], total=0, formula=formula, valid=False)
        return DamageResult(rolls=[], flat_bonus=flat, total=flat, formula=notation)

    base_dice = int(match.group(1))
    flat = int(match.group(3)) if match.group(3) else 0
    rolls = [faces.roll_face() for _ in range(base_dice + max(0, bonus_dice))]

    final_formula = notation
    if bonus_dice > 0:
        final_formula = f"{base_dice}d8 + {bonus_dice}d8"
        if flat:
            final_formula += f" {'+' if flat > 0 else '-'} {abs(flat)}"

    total = sum(rolls) + flat
    logger.info("Damage roll %s = %d", final_formula, total)
    return DamageResult(rolls=rolls, flat_bonus=flat, total=total, formula=final_formula)


def count_max_faces(rolls: Iterable[int]) -> int:
    """Count faces showing the die maximum (8) in a flat roll set."""
    return sum(1 for r in rolls if r == DIE_FACES)
