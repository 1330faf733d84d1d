"""Initiative shop drafting endpoints."""

from fastapi import APIRouter, Depends, HTTPException, Request

from auth import Caller, authorize, get_caller
from engine.combat import EncounterSession
from models.actions import ShopDraftView, ShopRequest
from models.game_state import EncounterStatus

router = APIRouter()


def _get_session(request: Request) -> EncounterSession:
    return request.app.state.session


async def _authorized_session(actor_id: str, request: Request, caller: Caller) -> EncounterSession:
    session = _get_session(request)
    authorize(caller, await session.repo.get(actor_id))
    if session.encounter.status not in (EncounterStatus.INITIATIVE, EncounterStatus.ACTIVE):
        raise HTTPException(status_code=409, detail="No initiative phase in progress")
    return session


@router.get("/{actor_id}/shop", response_model=ShopDraftView)
async def get_shop(actor_id: str, request: Request, caller: Caller = Depends(get_caller)) -> ShopDraftView:
    """Open (or re-open) the actor's shop for the current round.

    Returns the existing record if the shop was already confirmed or skipped.
    """
    session = await _authorized_session(actor_id, request, caller)
    round_number = session.encounter.round_number
    return await session.shop.open(actor_id, round_number, session.breakdowns.get(actor_id))


@router.post("/{actor_id}/shop", response_model=ShopDraftView)
async def draft_purchase(
    actor_id: str,
    body: ShopRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
) -> ShopDraftView:
    """Add (or step back) one purchase on the open draft.

    A purchase the actor can't afford comes back with ``error`` set and the
    draft unchanged.
    """
    session = await _authorized_session(actor_id, request, caller)
    return session.shop.purchase(actor_id, session.encounter.round_number, body.item, remove=body.remove)


@router.post("/{actor_id}/shop/confirm", response_model=ShopDraftView)
async def confirm_shop(actor_id: str, request: Request, caller: Caller = Depends(get_caller)) -> ShopDraftView:
    """Confirm the draft: spend initiative and apply the bonuses."""
    session = await _authorized_session(actor_id, request, caller)
    view = await session.shop.confirm(actor_id, session.encounter.round_number)
    await _release_prompt(session, actor_id)
    return view


@router.post("/{actor_id}/shop/skip", response_model=ShopDraftView)
async def skip_shop(actor_id: str, request: Request, caller: Caller = Depends(get_caller)) -> ShopDraftView:
    """Keep the rolled initiative and buy nothing."""
    session = await _authorized_session(actor_id, request, caller)
    view = await session.shop.skip(
        actor_id, session.encounter.round_number, session.breakdowns.get(actor_id),
    )
    await _release_prompt(session, actor_id)
    return view


async def _release_prompt(session: EncounterSession, actor_id: str) -> None:
    """Cancel the actor's waiting shop prompt, then record the outcome.

    During combat this also rebuilds the turn order once every player has
    settled a round's shop.
    """
    session.cancel_prompts(actor_id, "initiative_shop")
    if session.encounter.status in (EncounterStatus.INITIATIVE, EncounterStatus.ACTIVE):
        await session.initiative_settled()
