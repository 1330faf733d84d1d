"""Pending choice prompts (initiative shop, stone regeneration)."""

from fastapi import APIRouter, Depends, HTTPException, Request

from auth import Caller, get_caller
from engine.combat import EncounterSession
from engine.ports import PendingChoices
from models.actions import ChoiceAnswer

router = APIRouter()


def _get_choices(request: Request) -> PendingChoices:
    session: EncounterSession = request.app.state.session
    if not isinstance(session.choices, PendingChoices):
        raise HTTPException(status_code=409, detail="Choices are not answered over the API")
    return session.choices


def _visible(prompt: dict, caller: Caller) -> bool:
    return caller.is_facilitator or prompt.get("controller_id") == caller.controller_id


@router.get("")
async def list_choices(request: Request, caller: Caller = Depends(get_caller)) -> list[dict]:
    """Prompts waiting on the caller (all of them for the facilitator)."""
    return [prompt for prompt in _get_choices(request).pending() if _visible(prompt, caller)]


@router.post("/{choice_id}")
async def answer_choice(
    choice_id: str,
    body: ChoiceAnswer,
    request: Request,
    caller: Caller = Depends(get_caller),
) -> dict:
    """Answer a pending prompt. A null ``result`` declines it."""
    choices = _get_choices(request)
    prompt = next((p for p in choices.pending() if p["choice_id"] == choice_id), None)
    if prompt is None:
        raise HTTPException(status_code=404, detail=f"Choice '{choice_id}' is not pending")
    if not _visible(prompt, caller):
        raise HTTPException(status_code=403, detail="This choice belongs to another participant")
    if not choices.answer(choice_id, body.result):
        raise HTTPException(status_code=409, detail=f"Choice '{choice_id}' was already answered")
    return {"choice_id": choice_id, "accepted": True}
