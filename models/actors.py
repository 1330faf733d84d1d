"""Actor, resource, and round-ledger models for Mastery Server."""

from enum import Enum

from pydantic import BaseModel, model_validator

from config import BASE_ACTIONS, DEFAULT_MASTERY_RANK


class ActorKind(str, Enum):
    """Who controls an actor."""
    CHARACTER = "character"         # Player-controlled
    NPC = "npc"


class ActionCategory(str, Enum):
    """The three per-round action budgets."""
    MOVEMENT = "movement"
    ATTACK = "attack"               # Shared by attacks, buffs and utilities
    REACTION = "reaction"


class ActionBudget(BaseModel):
    """How many actions of one category are allowed and spent."""
    total: int = BASE_ACTIONS
    used: int = 0

    @model_validator(mode="after")
    def _check_bounds(self) -> "ActionBudget":
        if not 0 <= self.used <= self.total:
            raise ValueError(f"used must be within 0..{self.total}, got {self.used}")
        return self

    @property
    def remaining(self) -> int:
        return self.total - self.used


class StoneBonuses(BaseModel):
    """Bonuses bought with stones during the current round."""
    extra_attacks: int = 0
    extra_reactions: int = 0
    extra_move_meters: int = 0
    damage_dice: int = 0
    armor_penetration: int = 0
    armor_bonus: int = 0
    evade_bonus: int = 0
    free_raises: int = 0
    crit_raises: int = 0
    save_keep_bonus: int = 0
    spell_pool_dice: int = 0
    spell_keep_dice: int = 0
    spell_only_attacks: int = 0
    reroll_type: str | None = None      # "any" or "mind_spirit" once bought


class InitiativeShopPurchase(BaseModel):
    """What a combatant bought in the initiative shop for one round."""
    round: int
    extra_movement: int = 0         # Number of movement purchases
    initiative_swap: bool = False
    extra_attack: bool = False


class ShopStatus(str, Enum):
    """Terminal outcomes of an initiative shop interaction."""
    CONFIRMED = "confirmed"
    SKIPPED = "skipped"


class ShopRecord(BaseModel):
    """Persisted outcome of one (combatant, round) shop interaction."""
    round: int
    status: ShopStatus
    purchase: InitiativeShopPurchase
    total_initiative: int
    total_cost: int = 0
    final_initiative: int


class RoundState(BaseModel):
    """Per-actor, per-round action ledger."""
    round: int
    turn: int = 0
    movement: ActionBudget = ActionBudget()
    attack: ActionBudget = ActionBudget()
    reaction: ActionBudget = ActionBudget()
    move_bonus_meters: int = 0
    initiative_shop: InitiativeShopPurchase | None = None
    stone_bonuses: StoneBonuses = StoneBonuses()

    def budget(self, category: ActionCategory) -> ActionBudget:
        """Return the budget for an action category."""
        return getattr(self, ActionCategory(category).value)


class StonePool(BaseModel):
    """Spendable stones for one attribute."""
    current: int = 0
    max: int = 0
    sustained: int = 0              # Reserved by ongoing effects

    @model_validator(mode="after")
    def _check_bounds(self) -> "StonePool":
        if self.max < 0 or self.sustained < 0:
            raise ValueError("max and sustained must be non-negative")
        if not 0 <= self.current <= self.max:
            raise ValueError(f"current must be within 0..{self.max}, got {self.current}")
        return self

    @property
    def effective_max(self) -> int:
        """Ceiling for regeneration and restore."""
        return max(0, self.max - self.sustained)


class HealthLevel(BaseModel):
    """One wound level on the health track."""
    name: str
    boxes: int
    damage_boxes: int = 0
    penalty: int = 0                # Dice removed from pools while this level is damaged


class ActorState(BaseModel):
    """Everything persisted for one actor."""
    id: str
    name: str
    controller_id: str              # The participant allowed to act for this actor
    kind: ActorKind = ActorKind.CHARACTER
    mastery_rank: int = DEFAULT_MASTERY_RANK
    attributes: dict[str, int] = {}   # e.g. {"might": 4, "agility": 3, "wits": 2}
    skills: dict[str, int] = {}       # e.g. {"combatReflexes": 2}
    speed_m: int = 8                  # Base movement distance in meters
    health_levels: list[HealthLevel] = []
    stone_pools: dict[str, StonePool] = {}
    round_state: RoundState | None = None
    stone_usage: dict[str, int] = {}  # "attribute:ability:round:turn" -> uses
    shop_record: ShopRecord | None = None
    initiative: int | None = None     # Current turn-order key

    @property
    def is_player(self) -> bool:
        return self.kind == ActorKind.CHARACTER
