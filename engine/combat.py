"""Combat orchestration: encounter lifecycle, initiative, turns and rounds."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from config import ENCOUNTER_ID, ENCOUNTER_NAME
from engine.dice import FaceSource, RandomFaces
from engine.errors import CollaboratorError, PersistenceError, RuleViolation
from engine.health import HealthTracker, WoundPenaltyProvider, health_levels_for, mark_damage
from engine.initiative_shop import InitiativeShop
from engine.ports import Broadcaster, ChoicePort, PendingChoices
from engine.round_state import RoundStateTracker
from engine.rules import roll_check, roll_initiative
from engine.stones import StoneEconomy
from engine.store import ActorRepository
from models.actions import RegenResult, SpendResult, StoneSpendResult
from models.actors import ActionCategory, ActorState, HealthLevel
from models.dice import InitiativeBreakdown, RollResult
from models.game_state import Encounter, EncounterEvent, EncounterStatus

logger = logging.getLogger(__name__)


def create_encounter(encounter_id: str = ENCOUNTER_ID, name: str = ENCOUNTER_NAME) -> Encounter:
    """Initialize an empty encounter waiting for participants."""
    return Encounter(encounter_id=encounter_id, name=name)


def sort_initiative_order(encounter: Encounter, initiative: dict[str, int | None]) -> list[str]:
    """Order participants by initiative, highest first; ties keep join order.

    Args:
        encounter: The encounter whose participants are ordered.
        initiative: Actor ID -> current initiative value (None sorts last).

    Returns:
        Actor IDs in turn order.
    """
    joined = {actor_id: i for i, actor_id in enumerate(encounter.participants)}

    def key(actor_id: str) -> tuple[int, int, int]:
        value = initiative.get(actor_id)
        if value is None:
            return (1, 0, joined[actor_id])
        return (0, -value, joined[actor_id])

    return sorted(encounter.participants, key=key)


def current_actor_id(encounter: Encounter) -> str | None:
    """The actor whose turn it is, or None if combat isn't active."""
    if encounter.status != EncounterStatus.ACTIVE or not encounter.initiative_order:
        return None
    return encounter.initiative_order[encounter.current_turn_index]


class EncounterSession:
    """One running encounter and the services acting on it.

    Lifecycle transitions (begin, start, advance, end) are serialized
    through a single lock so no actor observes a mixed round/turn state.
    Per-actor mutations go through the repository's per-actor transactions.
    """

    def __init__(
        self,
        repo: ActorRepository,
        encounter: Encounter | None = None,
        *,
        faces: FaceSource | None = None,
        choices: ChoicePort | None = None,
        broadcaster: Broadcaster | None = None,
        wounds: WoundPenaltyProvider | None = None,
        encounter_path: str | None = None,
    ):
        self.repo = repo
        self.encounter = encounter or create_encounter()
        self.faces = faces or RandomFaces()
        self.choices = choices
        self.wounds = wounds or HealthTracker()
        self.encounter_path = encounter_path
        self.tracker = RoundStateTracker(repo)
        self.stones = StoneEconomy(repo, choices, broadcaster)
        self.shop = InitiativeShop(repo, choices, broadcaster)
        self.breakdowns: dict[str, InitiativeBreakdown] = {}
        self.attach_broadcaster(broadcaster)
        # Last copy known to match the encounter file
        self._saved = self.encounter.model_copy(deep=True)
        self._lock = asyncio.Lock()

    def attach_broadcaster(self, broadcaster: Broadcaster | None) -> None:
        """Route every event this session produces to ``broadcaster``."""
        self.broadcaster = broadcaster
        self.stones.broadcaster = broadcaster
        self.shop.broadcaster = broadcaster
        if isinstance(self.choices, PendingChoices):
            self.choices.broadcaster = broadcaster

    # ------------------------------------------------------------------
    # Participants
    # ------------------------------------------------------------------

    async def add_participant(self, actor_id: str) -> Encounter:
        """Add a registered actor to the encounter.

        Raises:
            UnknownActor: If the actor is not registered.
            RuleViolation: If combat is already underway.
        """
        async with self._lock:
            actor = await self.repo.get(actor_id)
            if actor_id in self.encounter.participants:
                return self.encounter
            if self.encounter.status not in (EncounterStatus.WAITING, EncounterStatus.COMPLETED):
                raise RuleViolation("Cannot join an encounter that has already begun")
            self.encounter.participants.append(actor_id)
            self._log("joined", f"{actor.name} joins the encounter.", actor_id)
            await self._save()
            return self.encounter

    async def remove_participant(self, actor_id: str) -> Encounter:
        async with self._lock:
            if self.encounter.status not in (EncounterStatus.WAITING, EncounterStatus.COMPLETED):
                raise RuleViolation("Cannot leave an encounter that has already begun")
            if actor_id in self.encounter.participants:
                self.encounter.participants.remove(actor_id)
                self._log("left", f"{actor_id} leaves the encounter.", actor_id)
                await self._save()
            return self.encounter

    async def _participants(self) -> list[ActorState]:
        return [await self.repo.get(actor_id) for actor_id in self.encounter.participants]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def begin_encounter(self) -> Encounter:
        """Roll initiative for round 1 and run every player's initiative shop.

        NPCs keep their rolled total. Players are asked through the choice
        port; declining skips the shop.
        """
        async with self._lock:
            if self.encounter.status not in (EncounterStatus.WAITING, EncounterStatus.COMPLETED):
                raise RuleViolation("Encounter has already begun")
            if not self.encounter.participants:
                raise RuleViolation("Need at least one participant to begin")
            self.encounter.status = EncounterStatus.INITIATIVE
            self.encounter.round_number = 1
            self.encounter.current_turn_index = 0
            self._log("encounter_begun", "Initiative is rolled.")
            await self._notify("encounter_begun", {"round": 1})
            try:
                await self._initiative_phase()
            finally:
                await self._save()
            return self.encounter

    async def start_combat(self) -> Encounter:
        """Start round 1 once every player has confirmed or skipped the shop.

        Raises:
            RuleViolation: If the encounter isn't in its initiative phase or a
                player still has an open shop.
        """
        async with self._lock:
            if self.encounter.status != EncounterStatus.INITIATIVE:
                raise RuleViolation("Combat can only start after initiative is rolled")
            waiting = await self.pending_initiative()
            if waiting:
                raise RuleViolation(f"Waiting on initiative for: {', '.join(waiting)}")

            await self._sort_order()
            await self.on_combat_start()
            self.encounter.status = EncounterStatus.ACTIVE
            self.encounter.current_turn_index = 0
            self._log("combat_started", "Combat begins.", details={"order": self.encounter.initiative_order})
            await self._notify("combat_started", {
                "order": self.encounter.initiative_order,
                "current": current_actor_id(self.encounter),
            })
            await self._save()
            return self.encounter

    async def advance_turn(self) -> Encounter:
        """End the current turn; wrapping past the last actor starts a new round."""
        async with self._lock:
            self._require_active()
            waiting = await self.pending_initiative()
            if waiting:
                raise RuleViolation(f"Waiting on initiative for: {', '.join(waiting)}")
            enc = self.encounter
            ending_turn = enc.current_turn_index
            next_turn = (ending_turn + 1) % len(enc.initiative_order)
            await self.on_turn_change(enc.round_number, ending_turn, next_turn)
            enc.current_turn_index = next_turn

            if next_turn == 0:
                enc.round_number += 1
                try:
                    await self.on_round_change(enc.round_number)
                finally:
                    await self._save()

            current = current_actor_id(enc)
            self._log("turn_changed", f"Turn passes to {current}.", current,
                      details={"turn": enc.current_turn_index})
            await self._notify("turn_changed", {
                "round": enc.round_number,
                "turn": enc.current_turn_index,
                "current": current,
            })
            await self._save()
            return enc

    async def end_combat(self) -> Encounter:
        """Restore stones, archive the combat log, and return to WAITING."""
        async with self._lock:
            if self.encounter.status not in (EncounterStatus.INITIATIVE, EncounterStatus.ACTIVE):
                raise RuleViolation("No combat to end")
            self.encounter.status = EncounterStatus.COMPLETED
            self._log("combat_ended", "Combat ends.")
            await self.on_combat_end()

            enc = self.encounter
            if enc.event_log:
                enc.combat_log_history.append(list(enc.event_log))
                enc.event_log = []
            enc.initiative_order = []
            enc.initiative_resolved = []
            enc.current_turn_index = 0
            enc.round_number = 1
            enc.status = EncounterStatus.WAITING
            self.breakdowns = {}
            await self._notify("combat_ended", {"participants": list(enc.participants)})
            await self._save()
            return enc

    # ------------------------------------------------------------------
    # Boundary hooks
    # ------------------------------------------------------------------

    async def on_combat_start(self) -> None:
        """Fresh round-1 ledgers and usage for everyone; shop bonuses for players."""
        for actor_id in self.encounter.participants:
            await self.stones.clear_usage(actor_id)
            await self.tracker.reset_round(actor_id, 1)
        logger.info("Combat started with %d participants", len(self.encounter.participants))

    async def on_turn_change(self, round_number: int, ending_turn: int, next_turn: int) -> None:
        """Reset used counters and drop the ending turn's stone usage."""
        for actor_id in self.encounter.participants:
            await self.tracker.reset_turn(actor_id, round_number, next_turn)
            await self.stones.purge_turn(actor_id, round_number, ending_turn)
        logger.info("Turn %d of round %d ended", ending_turn, round_number)

    async def on_round_change(self, round_number: int) -> None:
        """New ledgers, player stone regeneration, and a fresh initiative shop."""
        actors = await self._participants()
        for actor in actors:
            await self.tracker.reset_round(actor.id, round_number)

        players = [actor for actor in actors if actor.is_player]
        results = await asyncio.gather(
            *(self.stones.regenerate_end_of_round(actor.id) for actor in players),
            return_exceptions=True,
        )
        for actor, result in zip(players, results):
            if isinstance(result, CollaboratorError):
                # A failed prompt regenerates nothing; the round still starts
                logger.error("Stone regen failed for %s: %s", actor.name, result)
                self._log("stones_regen_failed", str(result), actor.id)
            elif isinstance(result, BaseException):
                raise result
            else:
                self._log_regen(result)

        self._log("round_started", f"Round {round_number} begins.")
        await self._initiative_phase()
        await self._sort_order()
        logger.info("Round %d started", round_number)

    async def on_combat_end(self) -> None:
        """Refill every participant's stones and clear usage, shop records and drafts."""
        restored = await self.stones.restore_after_combat(self.encounter.participants)
        for actor_id in self.encounter.participants:
            await self.stones.clear_usage(actor_id)
            async with self.repo.transaction(actor_id) as actor:
                actor.shop_record = None
                actor.round_state = None
                actor.initiative = None
        self.shop.clear_drafts()
        if restored:
            self._log("stones_restored", "Stone pools restored.", details=restored)

    # ------------------------------------------------------------------
    # Initiative
    # ------------------------------------------------------------------

    async def _initiative_phase(self) -> None:
        round_number = self.encounter.round_number
        self.encounter.initiative_resolved = []
        self.breakdowns = {}
        players = []
        for actor in await self._participants():
            breakdown = roll_initiative(actor, faces=self.faces)
            self.breakdowns[actor.id] = breakdown
            self._log("initiative_rolled",
                      f"{actor.name} rolls {breakdown.total_initiative} initiative.",
                      actor.id, details=breakdown.model_dump(exclude={"roll"}))
            if actor.is_player:
                players.append(actor.id)
            else:
                await self.shop.skip(actor.id, round_number, breakdown)

        results = await asyncio.gather(
            *(self.shop.run(actor_id, round_number, self.breakdowns[actor_id]) for actor_id in players),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        for result in results:
            if not isinstance(result, BaseException) and result.status is not None:
                self._log("initiative_shop", f"{result.actor_id} {result.status.value} the initiative shop.",
                          result.actor_id, details=result.model_dump(mode="json"))

        await self._refresh_resolved()
        if failures:
            raise failures[0]
        if not await self.pending_initiative():
            await self._notify("initiative_complete", {"round": round_number})

    async def resolve_initiative(self, actor_id: str) -> Encounter:
        """Re-run one player's initiative shop, e.g. after a failed prompt."""
        breakdown = self.breakdowns.get(actor_id)
        if breakdown is None:
            raise RuleViolation(f"No initiative roll for {actor_id} this round")
        await self.shop.run(actor_id, self.encounter.round_number, breakdown)
        await self.initiative_settled()
        return self.encounter

    async def initiative_settled(self) -> None:
        """Record shop outcomes made outside the lifecycle (e.g. direct confirms).

        Mid-combat, once the last player settles, the turn order is rebuilt
        from this round's values. Turns cannot advance until then, so the
        round is still on its first turn.
        """
        await self._refresh_resolved()
        if not await self.pending_initiative():
            if self.encounter.status == EncounterStatus.ACTIVE:
                await self._sort_order()
                self.encounter.current_turn_index = 0
                self._log("initiative_order", "Turn order settled.",
                          details={"order": self.encounter.initiative_order})
            await self._notify("initiative_complete", {
                "round": self.encounter.round_number,
                "order": self.encounter.initiative_order,
                "current": current_actor_id(self.encounter),
            })
        await self._save()

    def cancel_prompts(self, actor_id: str, kind: str) -> int:
        """Decline an actor's waiting prompts of one kind. Returns how many."""
        if not isinstance(self.choices, PendingChoices):
            return 0
        cancelled = 0
        for prompt in self.choices.pending(actor_id):
            if prompt["kind"] == kind and self.choices.cancel(prompt["choice_id"]):
                cancelled += 1
        return cancelled

    async def pending_initiative(self) -> list[str]:
        """Players without a confirmed or skipped shop for the current round."""
        round_number = self.encounter.round_number
        waiting = []
        for actor in await self._participants():
            if actor.is_player and await self.shop.outcome(actor.id, round_number) is None:
                waiting.append(actor.id)
        return waiting

    async def _refresh_resolved(self) -> None:
        round_number = self.encounter.round_number
        self.encounter.initiative_resolved = [
            actor_id for actor_id in self.encounter.participants
            if await self.shop.outcome(actor_id, round_number) is not None
        ]

    async def _sort_order(self) -> None:
        initiative = {actor.id: actor.initiative for actor in await self._participants()}
        self.encounter.initiative_order = sort_initiative_order(self.encounter, initiative)

    # ------------------------------------------------------------------
    # Actions during combat
    # ------------------------------------------------------------------

    def _require_active(self) -> None:
        if self.encounter.status != EncounterStatus.ACTIVE:
            raise RuleViolation("Combat is not active")

    def _require_participant(self, actor_id: str) -> None:
        if actor_id not in self.encounter.participants:
            raise RuleViolation(f"{actor_id} is not in this encounter")

    async def spend_action(self, actor_id: str, category: ActionCategory) -> SpendResult:
        self._require_active()
        self._require_participant(actor_id)
        result = await self.tracker.spend(
            actor_id, category, self.encounter.round_number, self.encounter.current_turn_index,
        )
        if result.success:
            self._log("action_spent", f"{actor_id} uses a {result.category.value} action.", actor_id,
                      details={"remaining": result.remaining})
        return result

    async def use_stone_ability(
        self, actor_id: str, ability_id: str, attribute: str | None = None,
    ) -> StoneSpendResult:
        self._require_active()
        self._require_participant(actor_id)
        result = await self.stones.spend_ability(
            actor_id,
            ability_id,
            self.encounter.round_number,
            self.encounter.current_turn_index,
            attribute=attribute,
        )
        if result.success:
            self._log("stone_ability", f"{actor_id} activates {ability_id} for {result.cost} stones.",
                      actor_id, details=result.model_dump())
            await self._notify("stone_ability_used", result.model_dump() | {"actor_id": actor_id})
        return result

    async def roll_check(self, actor_id: str, attribute: str, target_number: int, **kwargs) -> RollResult:
        """Roll a check for an actor with their wound penalty applied."""
        actor = await self.repo.get(actor_id)
        result = roll_check(actor, attribute, target_number, wounds=self.wounds, faces=self.faces, **kwargs)
        if self.encounter.status == EncounterStatus.ACTIVE and actor_id in self.encounter.participants:
            self._log("check", f"{actor.name} rolls {result.formula}: {result.total}.", actor_id,
                      details={"attribute": attribute, "total": result.total, "success": result.success})
        return result

    async def apply_wounds(self, actor_id: str, amount: int) -> list[HealthLevel]:
        """Mark damage boxes on an actor's health track."""
        if amount < 0:
            raise RuleViolation("Damage cannot be negative")
        async with self.repo.transaction(actor_id) as actor:
            actor.health_levels = mark_damage(health_levels_for(actor), amount)
            levels = actor.health_levels
        self._log("wounded", f"{actor_id} takes {amount} damage.", actor_id, details={"amount": amount})
        return levels

    # ------------------------------------------------------------------
    # Event log, broadcast, persistence
    # ------------------------------------------------------------------

    def _log(self, event_type: str, description: str, actor_id: str | None = None, details: dict | None = None) -> None:
        self.encounter.event_log.append(EncounterEvent(
            round=self.encounter.round_number,
            actor_id=actor_id,
            event_type=event_type,
            description=description,
            details=details or {},
            timestamp=datetime.now(timezone.utc),
        ))

    def _log_regen(self, result: RegenResult) -> None:
        if result.applied:
            self._log("stones_regenerated", f"{result.actor_id} regenerates stones.",
                      result.actor_id, details=result.applied)
        elif result.error:
            self._log("stones_regen_rejected", result.error, result.actor_id)

    async def _notify(self, event_type: str, payload: dict) -> None:
        if self.broadcaster is not None:
            await self.broadcaster.notify(event_type, payload)

    async def _save(self) -> None:
        """Write the encounter, or roll memory back to the last saved copy."""
        if not self.encounter_path:
            return
        try:
            save_encounter(self.encounter, self.encounter_path)
        except PersistenceError:
            self.encounter = self._saved.model_copy(deep=True)
            raise
        self._saved = self.encounter.model_copy(deep=True)


def save_encounter(encounter: Encounter, path: str) -> None:
    """Persist an encounter to a JSON file.

    Writes to a temporary file first, then renames for atomicity.

    Raises:
        PersistenceError: If the file can't be written.
    """
    tmp_path = path + ".tmp"
    data = encounter.model_dump(mode="json")
    try:
        with open(tmp_path, "w") as f:
            json.dump(data, f, default=str)
        os.replace(tmp_path, path)
    except OSError as e:
        logger.exception("Failed to save encounter to %s", path)
        raise PersistenceError(f"Could not save encounter: {e}") from e


def load_encounter(path: str) -> Encounter | None:
    """Load an encounter from a JSON file.

    Returns:
        The loaded Encounter, or None if the file doesn't exist.
    """
    if not Path(path).exists():
        return None
    with open(path) as f:
        data = json.load(f)
    return Encounter.model_validate(data)
