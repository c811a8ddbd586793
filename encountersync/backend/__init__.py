"""Backend package for EncounterSync."""

from .broadcast import DeltaBroadcaster, SubscriptionDirectory
from .config import EngineSettings, load_settings
from .engine import EncounterEngine, EngineStores
from .errors import EngineError, NotFoundError, NotPreservedError, StateConflictError, ValidationError
from .state import build_battlefield_state
from .store import (
    CharacterStore,
    InMemoryCharacterStore,
    JsonCharacterStore,
    PostgresCharacterStore,
    create_character_store,
)

__all__ = [
    "build_battlefield_state",
    "CharacterStore",
    "create_character_store",
    "DeltaBroadcaster",
    "EncounterEngine",
    "EngineError",
    "EngineSettings",
    "EngineStores",
    "InMemoryCharacterStore",
    "JsonCharacterStore",
    "load_settings",
    "NotFoundError",
    "NotPreservedError",
    "PostgresCharacterStore",
    "StateConflictError",
    "SubscriptionDirectory",
    "ValidationError",
]
