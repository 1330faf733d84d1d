"""Actor registration, state, checks and per-round resource endpoints."""

from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request

from auth import Caller, authorize, get_caller, require_facilitator
from engine.combat import EncounterSession
from engine.health import (
    current_level_name,
    current_penalty,
    health_levels_for,
    initialize_health_levels,
    is_incapacitated,
)
from engine.round_state import current_round_state, movement_allowance
from engine.stones import available_powers, stone_cost, usage_key
from models.actions import (
    ActorCreate,
    CheckRequest,
    SpendRequest,
    SpendResult,
    StoneAbilityRequest,
    StoneSpendResult,
    WoundRequest,
)
from models.actors import ActorState
from models.dice import RollResult

router = APIRouter()


def _get_session(request: Request) -> EncounterSession:
    """Get the encounter session from app state."""
    return request.app.state.session


def _actor_view(actor: ActorState, session: EncounterSession) -> dict:
    levels = health_levels_for(actor)
    round_state = current_round_state(
        actor, session.encounter.round_number, session.encounter.current_turn_index,
    )
    return {
        **actor.model_dump(mode="json"),
        "health": {
            "level": current_level_name(levels),
            "wound_penalty": current_penalty(levels),
            "incapacitated": is_incapacitated(levels),
        },
        "round": {
            **round_state.model_dump(mode="json"),
            "remaining": {
                "movement": round_state.movement.remaining,
                "attack": round_state.attack.remaining,
                "reaction": round_state.reaction.remaining,
            },
            "movement_allowance_m": movement_allowance(round_state, actor.speed_m),
        },
    }


@router.post("", status_code=201)
async def register_actor(
    body: ActorCreate,
    request: Request,
    caller: Caller = Depends(require_facilitator),
) -> dict:
    """Register a character or NPC.

    A fresh health track is built from the actor's vitality.
    Requires the X-Facilitator-Secret header.
    """
    session = _get_session(request)
    actor = ActorState(
        id=body.id or uuid4().hex[:12],
        name=body.name,
        controller_id=body.controller_id,
        kind=body.kind,
        mastery_rank=body.mastery_rank,
        attributes=body.attributes,
        skills=body.skills,
        speed_m=body.speed_m,
        stone_pools=body.stone_pools,
        health_levels=initialize_health_levels(body.attributes.get("vitality", 2)),
    )
    try:
        await session.repo.add(actor)
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return _actor_view(actor, session)


@router.get("")
async def list_actors(request: Request) -> list[dict]:
    session = _get_session(request)
    actors = [await session.repo.get(actor_id) for actor_id in await session.repo.ids()]
    return [{"id": a.id, "name": a.name, "kind": a.kind.value, "controller_id": a.controller_id} for a in actors]


@router.get("/{actor_id}")
async def get_actor(actor_id: str, request: Request) -> dict:
    """Full actor state with derived health and round values."""
    session = _get_session(request)
    return _actor_view(await session.repo.get(actor_id), session)


@router.post("/{actor_id}/check", response_model=RollResult)
async def roll_check(
    actor_id: str,
    body: CheckRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
) -> RollResult:
    """Roll an attribute check with the actor's wound penalty applied."""
    session = _get_session(request)
    authorize(caller, await session.repo.get(actor_id))
    return await session.roll_check(
        actor_id,
        body.attribute,
        body.target_number,
        skill=body.skill,
        declared_raises=body.declared_raises,
        advantage=body.advantage,
        disadvantage=body.disadvantage,
        situational_bonus=body.situational_bonus,
    )


@router.post("/{actor_id}/wounds")
async def apply_wounds(
    actor_id: str,
    body: WoundRequest,
    request: Request,
    caller: Caller = Depends(require_facilitator),
) -> dict:
    """Mark damage on an actor's health track.

    Requires the X-Facilitator-Secret header.
    """
    session = _get_session(request)
    levels = await session.apply_wounds(actor_id, body.amount)
    return {
        "level": current_level_name(levels),
        "wound_penalty": current_penalty(levels),
        "incapacitated": is_incapacitated(levels),
        "health_levels": [level.model_dump() for level in levels],
    }


@router.post("/{actor_id}/actions", response_model=SpendResult)
async def spend_action(
    actor_id: str,
    body: SpendRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
) -> SpendResult:
    """Spend one movement, attack or reaction action this round."""
    session = _get_session(request)
    authorize(caller, await session.repo.get(actor_id))
    result = await session.spend_action(actor_id, body.category)
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)
    return result


@router.get("/{actor_id}/stones")
async def list_stone_powers(actor_id: str, request: Request) -> dict:
    """Stone pools and the next price of every available power."""
    session = _get_session(request)
    actor = await session.repo.get(actor_id)
    round_number = session.encounter.round_number
    turn = session.encounter.current_turn_index

    powers = []
    for power in available_powers(actor):
        entry = {
            "id": power.id,
            "name": power.name,
            "attribute": power.attribute,
            "category": power.category,
            "description": power.description,
        }
        if power.attribute in actor.stone_pools:
            uses = actor.stone_usage.get(usage_key(power.attribute, power.id, round_number, turn), 0)
            entry["next_cost"] = stone_cost(uses)
        powers.append(entry)

    return {
        "pools": {
            attribute: {**pool.model_dump(), "effective_max": pool.effective_max}
            for attribute, pool in actor.stone_pools.items()
        },
        "powers": powers,
    }


@router.post("/{actor_id}/stones", response_model=StoneSpendResult)
async def use_stone_ability(
    actor_id: str,
    body: StoneAbilityRequest,
    request: Request,
    caller: Caller = Depends(get_caller),
) -> StoneSpendResult:
    """Activate a stone ability, paying 2^uses stones this turn."""
    session = _get_session(request)
    authorize(caller, await session.repo.get(actor_id))
    result = await session.use_stone_ability(actor_id, body.ability_id, body.attribute)
    if not result.success:
        raise HTTPException(status_code=400, detail=result.error)
    return result
