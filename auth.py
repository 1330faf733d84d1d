"""Caller identification for Mastery Server.

Participants identify themselves with ``X-Controller-Id``; the facilitator
proves the privileged role with ``X-Facilitator-Secret``.
"""

import secrets

from fastapi import Header, HTTPException
from pydantic import BaseModel

import config
from engine.errors import NotAuthorized
from models.actors import ActorState


class Caller(BaseModel):
    """Who is making a request."""
    controller_id: str | None = None
    is_facilitator: bool = False


def is_facilitator_secret(secret: str | None) -> bool:
    if not secret:
        return False
    return secrets.compare_digest(secret, config.FACILITATOR_SECRET)


def get_caller(
    x_controller_id: str | None = Header(None, alias="X-Controller-Id"),
    x_facilitator_secret: str | None = Header(None, alias="X-Facilitator-Secret"),
) -> Caller:
    """FastAPI dependency: identify the caller from request headers.

    Usage:
        @router.post("/endpoint")
        def endpoint(caller: Caller = Depends(get_caller)):
            ...

    Raises:
        HTTPException 401: If neither header is present.
        HTTPException 403: If a facilitator secret is sent but wrong.
    """
    if x_facilitator_secret is not None:
        if not is_facilitator_secret(x_facilitator_secret):
            raise HTTPException(status_code=403, detail="Invalid facilitator secret")
        return Caller(controller_id=x_controller_id, is_facilitator=True)
    if not x_controller_id:
        raise HTTPException(status_code=401, detail="Missing X-Controller-Id header")
    return Caller(controller_id=x_controller_id)


def require_facilitator(
    x_facilitator_secret: str = Header(..., alias="X-Facilitator-Secret"),
) -> Caller:
    """FastAPI dependency for facilitator-only endpoints."""
    if not is_facilitator_secret(x_facilitator_secret):
        raise HTTPException(status_code=403, detail="Invalid facilitator secret")
    return Caller(is_facilitator=True)


def authorize(caller: Caller, actor: ActorState) -> None:
    """Only the actor's controller or the facilitator may act for an actor.

    Raises:
        NotAuthorized: If the caller controls a different actor.
    """
    if caller.is_facilitator:
        return
    if caller.controller_id != actor.controller_id:
        raise NotAuthorized(f"You do not control {actor.name}")
