"""Facilitator lifecycle endpoints, encounter state and logs."""

from fastapi import APIRouter, Depends, Request

from auth import Caller, require_facilitator
from engine.combat import EncounterSession, current_actor_id
from models.actions import ParticipantRequest
from models.game_state import Encounter

router = APIRouter()


def _get_session(request: Request) -> EncounterSession:
    """Get the encounter session from app state."""
    return request.app.state.session


def _summary(encounter: Encounter) -> dict:
    return {
        "encounter_id": encounter.encounter_id,
        "name": encounter.name,
        "status": encounter.status.value,
        "round_number": encounter.round_number,
        "current_turn_index": encounter.current_turn_index,
        "current_actor_id": current_actor_id(encounter),
        "participants": encounter.participants,
        "initiative_order": encounter.initiative_order,
        "initiative_resolved": encounter.initiative_resolved,
        "past_combats": len(encounter.combat_log_history),
    }


@router.get("")
async def get_encounter(request: Request) -> dict:
    """Current encounter status and turn order."""
    session = _get_session(request)
    summary = _summary(session.encounter)
    summary["pending_initiative"] = await session.pending_initiative()
    return summary


@router.post("/participants")
async def add_participant(
    body: ParticipantRequest,
    request: Request,
    caller: Caller = Depends(require_facilitator),
) -> dict:
    """Add a registered actor to the encounter."""
    encounter = await _get_session(request).add_participant(body.actor_id)
    return _summary(encounter)


@router.delete("/participants/{actor_id}")
async def remove_participant(
    actor_id: str,
    request: Request,
    caller: Caller = Depends(require_facilitator),
) -> dict:
    encounter = await _get_session(request).remove_participant(actor_id)
    return _summary(encounter)


@router.post("/begin")
async def begin_encounter(request: Request, caller: Caller = Depends(require_facilitator)) -> dict:
    """Roll initiative and run the initiative shop for round 1.

    Responds once every player has confirmed or skipped their shop.
    """
    encounter = await _get_session(request).begin_encounter()
    return _summary(encounter)


@router.post("/start")
async def start_combat(request: Request, caller: Caller = Depends(require_facilitator)) -> dict:
    """Start combat once initiative is settled for every player."""
    encounter = await _get_session(request).start_combat()
    return _summary(encounter)


@router.post("/advance")
async def advance_turn(request: Request, caller: Caller = Depends(require_facilitator)) -> dict:
    """End the current turn.

    When the round wraps this also waits for stone regeneration and the
    next round's initiative shop.
    """
    encounter = await _get_session(request).advance_turn()
    return _summary(encounter)


@router.post("/end")
async def end_combat(request: Request, caller: Caller = Depends(require_facilitator)) -> dict:
    """End combat: restore stones and archive the log."""
    encounter = await _get_session(request).end_combat()
    return _summary(encounter)


@router.post("/initiative/{actor_id}")
async def resolve_initiative(
    actor_id: str,
    request: Request,
    caller: Caller = Depends(require_facilitator),
) -> dict:
    """Re-prompt one player's initiative shop after a failed prompt."""
    encounter = await _get_session(request).resolve_initiative(actor_id)
    return _summary(encounter)


@router.get("/log")
def get_encounter_log(request: Request) -> list[dict]:
    """Get the event log for the current or most recent combat."""
    encounter = _get_session(request).encounter
    return [event.model_dump(mode="json") for event in encounter.event_log]


@router.get("/history")
def get_combat_history(request: Request) -> list[list[dict]]:
    """Get archived logs from all past combats."""
    encounter = _get_session(request).encounter
    return [
        [event.model_dump(mode="json") for event in combat]
        for combat in encounter.combat_log_history
    ]
