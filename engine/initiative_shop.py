"""Initiative shop: trade rolled initiative for tactical bonuses once per round.

Per (combatant, round) the shop moves Unopened -> Drafting -> Confirmed, or
Unopened -> Skipped. Whatever initiative is left after purchases becomes the
combatant's turn-order value.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel

from config import (
    SHOP_EXTRA_ATTACK_COST,
    SHOP_MOVEMENT_COST,
    SHOP_MOVEMENT_INCREMENT_M,
    SHOP_SWAP_COST,
)
from engine.errors import ChoiceFailed, InvalidPurchase
from engine.ports import Broadcaster, ChoicePort
from engine.round_state import apply_shop_purchase, current_round_state
from engine.store import ActorRepository
from models.actions import ShopDraftView
from models.actors import InitiativeShopPurchase, ShopRecord, ShopStatus
from models.dice import InitiativeBreakdown

logger = logging.getLogger(__name__)


class ShopDraft(BaseModel):
    """An open, unconfirmed shop interaction."""
    actor_id: str
    round: int
    total_initiative: int
    purchase: InitiativeShopPurchase


def purchase_cost(purchase: InitiativeShopPurchase) -> int:
    """Total initiative spent on a purchase."""
    cost = purchase.extra_movement * SHOP_MOVEMENT_COST
    if purchase.initiative_swap:
        cost += SHOP_SWAP_COST
    if purchase.extra_attack:
        cost += SHOP_EXTRA_ATTACK_COST
    return cost


def _draft_view(draft: ShopDraft, error: str | None = None) -> ShopDraftView:
    cost = purchase_cost(draft.purchase)
    return ShopDraftView(
        actor_id=draft.actor_id,
        round=draft.round,
        total_initiative=draft.total_initiative,
        purchase=draft.purchase.model_copy(),
        total_cost=cost,
        remaining_initiative=draft.total_initiative - cost,
        movement_bonus_m=draft.purchase.extra_movement * SHOP_MOVEMENT_INCREMENT_M,
        error=error,
    )


def _record_view(actor_id: str, record: ShopRecord) -> ShopDraftView:
    return ShopDraftView(
        actor_id=actor_id,
        round=record.round,
        total_initiative=record.total_initiative,
        purchase=record.purchase.model_copy(),
        total_cost=record.total_cost,
        remaining_initiative=record.final_initiative,
        movement_bonus_m=record.purchase.extra_movement * SHOP_MOVEMENT_INCREMENT_M,
        status=record.status,
    )


class InitiativeShop:
    """Runs initiative shop interactions for every combatant."""

    def __init__(
        self,
        repo: ActorRepository,
        choices: ChoicePort | None = None,
        broadcaster: Broadcaster | None = None,
    ):
        self.repo = repo
        self.choices = choices
        self.broadcaster = broadcaster
        self._drafts: dict[tuple[str, int], ShopDraft] = {}

    async def outcome(self, actor_id: str, round_number: int) -> ShopRecord | None:
        """The terminal record for this round, if there is one."""
        actor = await self.repo.get(actor_id)
        record = actor.shop_record
        if record is not None and record.round == round_number:
            return record
        return None

    def draft(self, actor_id: str, round_number: int) -> ShopDraft | None:
        return self._drafts.get((actor_id, round_number))

    def clear_drafts(self) -> None:
        """Abandon every open draft. Nothing is committed from them."""
        self._drafts.clear()

    async def open(
        self,
        actor_id: str,
        round_number: int,
        breakdown: InitiativeBreakdown | None = None,
    ) -> ShopDraftView:
        """Start drafting with the rolled total as the budget.

        Re-opening after a confirm or skip for the same round changes
        nothing and returns the existing record; re-opening an open draft
        returns that draft.

        Raises:
            InvalidPurchase: If there is nothing to re-open and no roll.
        """
        record = await self.outcome(actor_id, round_number)
        if record is not None:
            return _record_view(actor_id, record)
        draft = self._drafts.get((actor_id, round_number))
        if draft is None:
            if breakdown is None:
                raise InvalidPurchase(f"No initiative roll for {actor_id} in round {round_number}")
            draft = ShopDraft(
                actor_id=actor_id,
                round=round_number,
                total_initiative=breakdown.total_initiative,
                purchase=InitiativeShopPurchase(round=round_number),
            )
            self._drafts[(actor_id, round_number)] = draft
            logger.info("Opened initiative shop for %s with %d initiative", actor_id, breakdown.total_initiative)
        return _draft_view(draft)

    def _open_draft(self, actor_id: str, round_number: int) -> ShopDraft:
        draft = self._drafts.get((actor_id, round_number))
        if draft is None:
            raise InvalidPurchase(f"No open initiative shop for {actor_id} in round {round_number}")
        return draft

    def _try(self, draft: ShopDraft, candidate: InitiativeShopPurchase) -> ShopDraftView:
        if purchase_cost(candidate) > draft.total_initiative:
            logger.warning("Not enough initiative for %s's purchase", draft.actor_id)
            return _draft_view(draft, error="Not enough initiative points")
        draft.purchase = candidate
        return _draft_view(draft)

    def buy_movement(self, actor_id: str, round_number: int) -> ShopDraftView:
        draft = self._open_draft(actor_id, round_number)
        candidate = draft.purchase.model_copy(update={"extra_movement": draft.purchase.extra_movement + 1})
        return self._try(draft, candidate)

    def remove_movement(self, actor_id: str, round_number: int) -> ShopDraftView:
        draft = self._open_draft(actor_id, round_number)
        if draft.purchase.extra_movement > 0:
            draft.purchase = draft.purchase.model_copy(
                update={"extra_movement": draft.purchase.extra_movement - 1}
            )
        return _draft_view(draft)

    def toggle_swap(self, actor_id: str, round_number: int) -> ShopDraftView:
        draft = self._open_draft(actor_id, round_number)
        candidate = draft.purchase.model_copy(update={"initiative_swap": not draft.purchase.initiative_swap})
        return self._try(draft, candidate)

    def toggle_extra_attack(self, actor_id: str, round_number: int) -> ShopDraftView:
        draft = self._open_draft(actor_id, round_number)
        candidate = draft.purchase.model_copy(update={"extra_attack": not draft.purchase.extra_attack})
        return self._try(draft, candidate)

    def purchase(self, actor_id: str, round_number: int, item: str, remove: bool = False) -> ShopDraftView:
        """Dispatch one drafting step by item name."""
        if item == "movement":
            if remove:
                return self.remove_movement(actor_id, round_number)
            return self.buy_movement(actor_id, round_number)
        if item == "swap":
            return self.toggle_swap(actor_id, round_number)
        if item == "extra_attack":
            return self.toggle_extra_attack(actor_id, round_number)
        raise InvalidPurchase(f"Unknown shop item '{item}'")

    async def confirm(self, actor_id: str, round_number: int) -> ShopDraftView:
        """Commit the draft: set turn order, persist the record, apply bonuses."""
        record = await self.outcome(actor_id, round_number)
        if record is not None:
            return _record_view(actor_id, record)
        draft = self._open_draft(actor_id, round_number)
        async with self.repo.transaction(actor_id) as actor:
            existing = actor.shop_record
            if existing is not None and existing.round == round_number:
                self._drafts.pop((actor_id, round_number), None)
                return _record_view(actor_id, existing)
            cost = purchase_cost(draft.purchase)
            record = ShopRecord(
                round=round_number,
                status=ShopStatus.CONFIRMED,
                purchase=draft.purchase.model_copy(),
                total_initiative=draft.total_initiative,
                total_cost=cost,
                final_initiative=draft.total_initiative - cost,
            )
            actor.shop_record = record
            actor.initiative = record.final_initiative
            if actor.is_player:
                state = current_round_state(actor, round_number).model_copy(deep=True)
                apply_shop_purchase(state, record.purchase)
                actor.round_state = state

        self._drafts.pop((actor_id, round_number), None)
        logger.info(
            "%s confirmed initiative shop: spent %d, initiative now %d",
            actor_id, record.total_cost, record.final_initiative,
        )
        await self._notify("initiative_confirmed", actor_id, record)
        return _record_view(actor_id, record)

    async def skip(
        self,
        actor_id: str,
        round_number: int,
        breakdown: InitiativeBreakdown | None = None,
    ) -> ShopDraftView:
        """Leave the shop without buying anything; the rolled total is kept.

        Also discards an open draft, which commits nothing from it. Skipping
        after a confirm or skip for the same round returns that record.
        """
        draft = self._drafts.pop((actor_id, round_number), None)
        record = await self.outcome(actor_id, round_number)
        if record is not None:
            return _record_view(actor_id, record)
        if draft is not None:
            total = draft.total_initiative
        elif breakdown is not None:
            total = breakdown.total_initiative
        else:
            raise InvalidPurchase(f"No initiative roll to keep for {actor_id}")

        async with self.repo.transaction(actor_id) as actor:
            existing = actor.shop_record
            if existing is not None and existing.round == round_number:
                return _record_view(actor_id, existing)
            record = ShopRecord(
                round=round_number,
                status=ShopStatus.SKIPPED,
                purchase=InitiativeShopPurchase(round=round_number),
                total_initiative=total,
                final_initiative=total,
            )
            actor.shop_record = record
            actor.initiative = total

        logger.info("%s skipped the initiative shop (initiative %d)", actor_id, total)
        await self._notify("initiative_skipped", actor_id, record)
        return _record_view(actor_id, record)

    async def run(self, actor_id: str, round_number: int, breakdown: InitiativeBreakdown) -> ShopDraftView:
        """Drive a whole shop interaction through the choice port.

        The answer is ``{"extra_movement": n, "initiative_swap": bool,
        "extra_attack": bool}``; None skips. An unaffordable answer is sent
        back with an ``error`` until it is valid or declined.

        Raises:
            ChoiceFailed: If the choice port itself fails. The draft is dropped.
        """
        view = await self.open(actor_id, round_number, breakdown)
        if view.status is not None:
            return view
        if self.choices is None:
            return await self.skip(actor_id, round_number)

        actor = await self.repo.get(actor_id)
        error = None
        while True:
            context = {
                "actor_id": actor_id,
                "controller_id": actor.controller_id,
                "round": round_number,
                "total_initiative": breakdown.total_initiative,
                "breakdown": breakdown.model_dump(exclude={"roll"}),
                "costs": {
                    "movement": SHOP_MOVEMENT_COST,
                    "movement_increment_m": SHOP_MOVEMENT_INCREMENT_M,
                    "swap": SHOP_SWAP_COST,
                    "extra_attack": SHOP_EXTRA_ATTACK_COST,
                },
                "error": error,
            }
            try:
                answer = await self.choices.prompt_choice("initiative_shop", context)
            except Exception as e:
                self._drafts.pop((actor_id, round_number), None)
                logger.exception("Initiative shop prompt failed for %s", actor_id)
                raise ChoiceFailed(f"Initiative shop prompt failed: {e}") from e

            # Confirmed or skipped some other way while we were waiting
            record = await self.outcome(actor_id, round_number)
            if record is not None:
                return _record_view(actor_id, record)
            if answer is None:
                return await self.skip(actor_id, round_number, breakdown)

            try:
                candidate = InitiativeShopPurchase(round=round_number, **answer)
            except (TypeError, ValueError) as e:
                error = f"Invalid purchase: {e}"
                continue
            if candidate.extra_movement < 0:
                error = "Movement purchases cannot be negative"
                continue
            draft = self._open_draft(actor_id, round_number)
            view = self._try(draft, candidate)
            if view.error is None:
                return await self.confirm(actor_id, round_number)
            error = view.error

    async def _notify(self, event_type: str, actor_id: str, record: ShopRecord) -> None:
        if self.broadcaster is None:
            return
        await self.broadcaster.notify(event_type, {
            "actor_id": actor_id,
            "round": record.round,
            "final_initiative": record.final_initiative,
            "purchase": record.purchase.model_dump(),
        })
