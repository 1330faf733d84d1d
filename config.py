"""Server-wide configuration constants for Mastery Server."""

import os

DIE_FACES = 8            # Every die in the system is a d8
MAX_POOL = 40            # Largest pool a single roll may use
MAX_KEEP = 8             # Largest number of kept dice
RAISE_STEP = 4           # TN increase per declared raise
DEFAULT_MASTERY_RANK = 2
BASE_ACTIONS = 1         # Default total for movement/attack/reaction budgets

# Initiative shop prices (in initiative points)
SHOP_MOVEMENT_COST = 1
SHOP_MOVEMENT_INCREMENT_M = 2   # Meters gained per movement purchase
SHOP_SWAP_COST = 3
SHOP_EXTRA_ATTACK_COST = 5

STONE_ATTRIBUTES = ("might", "agility", "vitality", "intellect", "resolve", "influence")

DATA_DIR = os.environ.get("DATA_DIR", ".")  # Persistent data directory
STATE_FILE = os.path.join(DATA_DIR, "actor_state.json")
ENCOUNTER_FILE = os.path.join(DATA_DIR, "encounter.json")
ENCOUNTER_ID = "mastery"        # Fixed encounter ID
ENCOUNTER_NAME = "Mastery Encounter"
FACILITATOR_SECRET = os.environ.get("FACILITATOR_SECRET", "change-me-in-production")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
