"""Per-round action budgets: movement, attack, and reaction."""

from __future__ import annotations

import logging

from engine.store import ActorRepository
from models.actions import SpendResult
from models.actors import (
    ActionBudget,
    ActionCategory,
    ActorState,
    InitiativeShopPurchase,
    RoundState,
    ShopStatus,
)
from config import SHOP_MOVEMENT_INCREMENT_M

logger = logging.getLogger(__name__)


def default_round_state(round_number: int, turn: int = 0) -> RoundState:
    """A fresh ledger: one action of each category, no bonuses."""
    return RoundState(
        round=round_number,
        turn=turn,
        movement=ActionBudget(),
        attack=ActionBudget(),
        reaction=ActionBudget(),
    )


def current_round_state(actor: ActorState, round_number: int, turn: int = 0) -> RoundState:
    """The actor's ledger for ``round_number``; a default one if it is stale or missing."""
    if actor.round_state is not None and actor.round_state.round == round_number:
        return actor.round_state
    return default_round_state(round_number, turn)


def add_bonus(state: RoundState, category: ActionCategory, amount: int) -> None:
    """Grant extra budget: more actions for attack/reaction, meters for movement."""
    category = ActionCategory(category)
    if category == ActionCategory.MOVEMENT:
        state.move_bonus_meters += amount
    else:
        state.budget(category).total += amount


def apply_shop_purchase(state: RoundState, purchase: InitiativeShopPurchase) -> bool:
    """Apply initiative shop bonuses to a round ledger, at most once.

    Returns:
        True if the bonuses were applied, False if the purchase is for a
        different round or was already applied.
    """
    if purchase.round != state.round:
        return False
    if state.initiative_shop is not None and state.initiative_shop.round == purchase.round:
        return False
    if purchase.extra_attack:
        state.attack.total += 1
    if purchase.extra_movement > 0:
        state.move_bonus_meters += purchase.extra_movement * SHOP_MOVEMENT_INCREMENT_M
    state.initiative_shop = purchase.model_copy()
    return True


def apply_confirmed_purchase(actor: ActorState, state: RoundState) -> bool:
    """Apply the actor's confirmed shop purchase, if it targets this round.

    Only player characters ever receive shop bonuses.
    """
    record = actor.shop_record
    if not actor.is_player or record is None or record.status != ShopStatus.CONFIRMED:
        return False
    return apply_shop_purchase(state, record.purchase)


def movement_allowance(state: RoundState, speed_m: int) -> int:
    """Meters the actor may cover with one movement action this round."""
    return speed_m + state.move_bonus_meters


class RoundStateTracker:
    """Spends and resets an actor's per-round action budgets."""

    def __init__(self, repo: ActorRepository):
        self.repo = repo

    async def get_or_create(self, actor_id: str, round_number: int, turn: int = 0) -> RoundState:
        """Read the actor's ledger for a round, or a default one. Nothing is written."""
        actor = await self.repo.get(actor_id)
        return current_round_state(actor, round_number, turn)

    async def spend(
        self,
        actor_id: str,
        category: ActionCategory,
        round_number: int,
        turn: int = 0,
    ) -> SpendResult:
        """Spend one action of a category if any budget remains.

        Args:
            actor_id: The acting actor.
            category: movement, attack or reaction.
            round_number: Current combat round.
            turn: Current turn index, used if a fresh ledger is created.

        Returns:
            SpendResult; ``success`` is False (and nothing changes) when the
            budget is exhausted.
        """
        category = ActionCategory(category)
        async with self.repo.transaction(actor_id) as actor:
            state = current_round_state(actor, round_number, turn).model_copy(deep=True)
            budget = state.budget(category)
            if budget.used >= budget.total:
                logger.warning("%s has no %s actions remaining", actor.name, category.value)
                return SpendResult(
                    success=False,
                    category=category,
                    remaining=0,
                    error=f"No {category.value} actions remaining",
                )
            budget.used += 1
            actor.round_state = state
            logger.info("%s spent a %s action (%d left)", actor.name, category.value, budget.remaining)
            return SpendResult(success=True, category=category, remaining=budget.remaining)

    async def apply_bonus(
        self,
        actor_id: str,
        category: ActionCategory,
        amount: int,
        round_number: int,
        turn: int = 0,
    ) -> RoundState:
        """Grant extra budget from an external effect."""
        async with self.repo.transaction(actor_id) as actor:
            state = current_round_state(actor, round_number, turn).model_copy(deep=True)
            add_bonus(state, category, amount)
            actor.round_state = state
            return state

    async def reset_turn(self, actor_id: str, round_number: int, turn: int) -> RoundState:
        """Zero every ``used`` counter. Totals and bonuses are kept."""
        async with self.repo.transaction(actor_id) as actor:
            state = current_round_state(actor, round_number, turn).model_copy(deep=True)
            state.turn = turn
            for category in ActionCategory:
                state.budget(category).used = 0
            actor.round_state = state
            return state

    async def reset_round(self, actor_id: str, round_number: int, turn: int = 0) -> RoundState:
        """Replace the ledger with a default one, then re-apply this round's shop purchase."""
        async with self.repo.transaction(actor_id) as actor:
            state = default_round_state(round_number, turn)
            apply_confirmed_purchase(actor, state)
            actor.round_state = state
            return state
