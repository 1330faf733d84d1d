"""Request and result models for Mastery Server operations."""

from pydantic import BaseModel

from config import DEFAULT_MASTERY_RANK
from models.actors import (
    ActionCategory,
    ActorKind,
    InitiativeShopPurchase,
    ShopStatus,
    StonePool,
)


class SpendResult(BaseModel):
    """Outcome of spending one action from a round budget."""
    success: bool
    category: ActionCategory
    remaining: int
    error: str | None = None        # If the spend was rejected


class StoneSpendResult(BaseModel):
    """Outcome of activating a stone ability."""
    success: bool
    ability_id: str
    attribute: str | None = None
    cost: int = 0
    remaining: int | None = None    # Stones left in the pool
    error: str | None = None


class RegenResult(BaseModel):
    """Outcome of end-of-round stone regeneration for one actor."""
    actor_id: str
    applied: dict[str, int] = {}    # attribute -> stones actually regenerated
    declined: bool = False
    error: str | None = None


class ShopDraftView(BaseModel):
    """Current view of an initiative shop interaction."""
    actor_id: str
    round: int
    total_initiative: int
    purchase: InitiativeShopPurchase
    total_cost: int
    remaining_initiative: int
    movement_bonus_m: int
    status: ShopStatus | None = None    # None while drafting
    error: str | None = None            # Set when the last request was rejected


class RollRequest(BaseModel):
    """A request to roll a Roll & Keep pool."""
    pool: int
    keep: int
    flat_bonus: int = 0
    advantage: bool = False
    disadvantage: bool = False
    target_number: int | None = None
    declared_raises: int = 0
    seed: int | None = None


class CheckRequest(BaseModel):
    """A request for an attribute/skill check by an actor."""
    attribute: str
    target_number: int
    skill: str | None = None
    declared_raises: int = 0
    advantage: bool = False
    disadvantage: bool = False
    situational_bonus: int = 0


class DamageRequest(BaseModel):
    """A request to roll damage dice."""
    formula: str
    bonus_dice: int = 0
    seed: int | None = None


class SpendRequest(BaseModel):
    """Spend one action of a category."""
    category: ActionCategory


class StoneAbilityRequest(BaseModel):
    """Activate a stone ability."""
    ability_id: str
    attribute: str | None = None    # Required for generic abilities


class ShopRequest(BaseModel):
    """One drafting step in the initiative shop."""
    item: str                       # "movement" | "swap" | "extra_attack"
    remove: bool = False            # Step a movement purchase back down


class ChoiceAnswer(BaseModel):
    """A participant's answer to a pending choice; None declines."""
    result: dict | None = None


class WoundRequest(BaseModel):
    """Damage boxes to mark on an actor's health track."""
    amount: int


class ActorCreate(BaseModel):
    """Request body for registering an actor."""
    id: str | None = None           # Generated when omitted
    name: str
    controller_id: str
    kind: ActorKind = ActorKind.CHARACTER
    mastery_rank: int = DEFAULT_MASTERY_RANK
    attributes: dict[str, int] = {}
    skills: dict[str, int] = {}
    speed_m: int = 8
    stone_pools: dict[str, StonePool] = {}


class ParticipantRequest(BaseModel):
    """Add an actor to the encounter."""
    actor_id: str
