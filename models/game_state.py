"""Encounter and event models for Mastery Server."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class EncounterStatus(str, Enum):
    """Possible states for an encounter."""
    WAITING = "waiting"             # Gathering participants
    INITIATIVE = "initiative"       # Initiative phase for round 1 in progress
    ACTIVE = "active"               # Combat in progress
    COMPLETED = "completed"         # Combat over


class EncounterEvent(BaseModel):
    """A logged event from the encounter."""
    round: int
    actor_id: str | None = None
    event_type: str
    description: str
    details: dict = {}
    timestamp: datetime


class Encounter(BaseModel):
    """The full state of an encounter (actor resources live in the state store)."""
    encounter_id: str
    name: str = "Encounter"
    status: EncounterStatus = EncounterStatus.WAITING
    participants: list[str] = []        # Actor IDs in join order
    initiative_order: list[str] = []    # Actor IDs, highest initiative first
    current_turn_index: int = 0
    round_number: int = 1
    initiative_resolved: list[str] = [] # Actors with a terminal shop outcome this round
    event_log: list[EncounterEvent] = []
    combat_log_history: list[list[EncounterEvent]] = []
