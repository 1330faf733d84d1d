"""Health levels and wound penalties.

Each level holds ``vitality * 2`` damage boxes. Damage fills boxes from the
top level down, and the pool penalty is that of the lowest level holding
damage.
"""

from __future__ import annotations

from typing import Protocol

from models.actors import ActorState, HealthLevel

LEVELS = (
    ("Healthy", 0),
    ("Bruised", 1),
    ("Hurt", 2),
    ("Injured", 3),
    ("Wounded", 4),
    ("Mauled", 5),
    ("Crippled", 6),
    ("Incapacitated", 999),
)


class WoundPenaltyProvider(Protocol):
    """Supplies the dice-pool reduction caused by accumulated damage."""

    def wound_penalty(self, actor: ActorState) -> int: ...


def initialize_health_levels(vitality: int) -> list[HealthLevel]:
    """Build an undamaged health track for a vitality score."""
    boxes = max(1, vitality) * 2
    return [HealthLevel(name=name, boxes=boxes, penalty=penalty) for name, penalty in LEVELS]


def health_levels_for(actor: ActorState) -> list[HealthLevel]:
    """Return the actor's track, building a fresh one when none is stored."""
    if actor.health_levels:
        return actor.health_levels
    return initialize_health_levels(actor.attributes.get("vitality", 2))


def current_penalty(levels: list[HealthLevel]) -> int:
    penalty = 0
    for level in levels:
        if level.damage_boxes > 0:
            penalty = level.penalty
    return penalty


def mark_damage(levels: list[HealthLevel], amount: int) -> list[HealthLevel]:
    """Fill damage boxes in order. Overflow past the last level is discarded.

    Returns:
        A new list of levels; the input is not modified.
    """
    updated = [level.model_copy() for level in levels]
    left = max(0, amount)
    for level in updated:
        if left == 0:
            break
        free = level.boxes - level.damage_boxes
        taken = min(free, left)
        level.damage_boxes += taken
        left -= taken
    return updated


def is_incapacitated(levels: list[HealthLevel]) -> bool:
    return bool(levels) and levels[-1].damage_boxes > 0


def current_level_name(levels: list[HealthLevel]) -> str:
    for level in reversed(levels):
        if level.damage_boxes > 0:
            return level.name
    return "Healthy"


class HealthTracker:
    """Default wound penalty provider reading the actor's health track."""

    def wound_penalty(self, actor: ActorState) -> int:
        return current_penalty(health_levels_for(actor))
