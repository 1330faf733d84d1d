"""FastAPI app entry point for Mastery Server."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import config
from api.actors import router as actors_router
from api.choices import router as choices_router
from api.dice import router as dice_router
from api.encounter import router as encounter_router
from api.shop import router as shop_router
from api.ws import WebSocketBroadcaster, router as ws_router
from config import ENCOUNTER_FILE, STATE_FILE
from engine.combat import EncounterSession, load_encounter, save_encounter
from engine.errors import CollaboratorError, NotAuthorized, RuleViolation, UnknownActor
from engine.ports import PendingChoices
from engine.store import ActorRepository, JsonStateStore
from models.game_state import EncounterStatus

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_session(broadcaster: WebSocketBroadcaster) -> EncounterSession:
    """Load or create the encounter session backed by the JSON data files."""
    repo = ActorRepository(JsonStateStore(STATE_FILE))
    encounter = load_encounter(ENCOUNTER_FILE)
    # If the server restarts while in COMPLETED state, transition to WAITING
    if encounter is not None and encounter.status == EncounterStatus.COMPLETED:
        encounter.status = EncounterStatus.WAITING
        save_encounter(encounter, ENCOUNTER_FILE)
    return EncounterSession(
        repo,
        encounter,
        choices=PendingChoices(broadcaster),
        broadcaster=broadcaster,
        encounter_path=ENCOUNTER_FILE,
    )


def create_app(session: EncounterSession | None = None) -> FastAPI:
    """Build the app around a session (a file-backed one by default)."""
    app = FastAPI(
        title="Mastery Server",
        description="Roll & Keep dice resolution and per-round combat economy",
        version="0.1.0",
    )

    if session is None:
        broadcaster = WebSocketBroadcaster()
        session = build_session(broadcaster)
    elif isinstance(session.broadcaster, WebSocketBroadcaster):
        broadcaster = session.broadcaster
    else:
        # /ws clients only hear events that go through the app's broadcaster
        broadcaster = WebSocketBroadcaster()
        session.attach_broadcaster(broadcaster)
    app.state.session = session
    app.state.broadcaster = broadcaster

    @app.exception_handler(RuleViolation)
    async def rule_violation_handler(request: Request, exc: RuleViolation) -> JSONResponse:
        status_code = 400
        if isinstance(exc, UnknownActor):
            status_code = 404
        elif isinstance(exc, NotAuthorized):
            status_code = 403
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.exception_handler(CollaboratorError)
    async def collaborator_error_handler(request: Request, exc: CollaboratorError) -> JSONResponse:
        logger.error("Collaborator failure on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    app.include_router(dice_router, prefix="/dice", tags=["Dice"])
    app.include_router(actors_router, prefix="/actors", tags=["Actors"])
    app.include_router(shop_router, prefix="/actors", tags=["Initiative Shop"])
    app.include_router(encounter_router, prefix="/encounter", tags=["Encounter"])
    app.include_router(choices_router, prefix="/choices", tags=["Choices"])
    app.include_router(ws_router, tags=["WebSocket"])

    @app.get("/")
    def root() -> dict:
        """Root endpoint returning server info."""
        return {"name": "Mastery Server", "version": "0.1.0", "status": "running"}

    @app.get("/health")
    def health() -> dict:
        """Health check endpoint."""
        return {"healthy": True}

    return app


app = create_app()
