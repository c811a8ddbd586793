"""Death-save sub-state machine for participants at 0 hp.

- natural 20: revive at 1 hp, the record is deleted
- natural 1: two failures
- total >= 10: one success, otherwise one failure
- 3 successes: stable; 3 failures: dead; both are terminal
- damage taken at 0 hp: one failure, two on a critical hit
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

DEATH_SAVE_DC = 10
MAX_MARKS = 3


class DeathSaveOutcome(str, Enum):
    CONTINUE = "continue"
    STABILIZED = "stabilized"
    REVIVED = "revived"
    DEAD = "dead"
    NO_OP = "no_op"


@dataclass
class DeathSaveState:
    successes: int = 0
    failures: int = 0
    is_stable: bool = False
    is_dead: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.is_stable or self.is_dead

    def to_dict(self) -> dict[str, Any]:
        return {
            "successes": self.successes,
            "failures": self.failures,
            "isStable": self.is_stable,
            "isDead": self.is_dead,
        }


@dataclass(frozen=True)
class DeathSaveResult:
    participant_id: str
    natural: int | None
    total: int | None
    rolls: list[int]
    outcome: DeathSaveOutcome
    state: DeathSaveState
    hp: int
    description: str
    deltas: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "participantId": self.participant_id,
            "natural": self.natural,
            "total": self.total,
            "rolls": list(self.rolls),
            "outcome": self.outcome.value,
            "state": self.state.to_dict(),
            "hp": self.hp,
            "description": self.description,
        }


def evaluate_death_save(state: DeathSaveState, natural: int, modifier: int = 0) -> tuple[DeathSaveOutcome, str]:
    """Apply one roll to `state` in place and return the outcome with a short description."""
    if state.is_terminal:
        return DeathSaveOutcome.NO_OP, "Already stable" if state.is_stable else "Already dead"

    if natural == 20:
        state.successes = 0
        state.failures = 0
        return DeathSaveOutcome.REVIVED, "Natural 20! Regains 1 hp and consciousness"

    if natural == 1:
        state.failures = min(MAX_MARKS, state.failures + 2)
        if state.failures >= MAX_MARKS:
            state.is_dead = True
            return DeathSaveOutcome.DEAD, "Natural 1! Two failures, the character dies"
        return DeathSaveOutcome.CONTINUE, f"Natural 1! Two failures ({state.failures}/3)"

    if natural + modifier >= DEATH_SAVE_DC:
        state.successes += 1
        if state.successes >= MAX_MARKS:
            state.is_stable = True
            return DeathSaveOutcome.STABILIZED, "Third success, the character is stable"
        return DeathSaveOutcome.CONTINUE, f"Success ({state.successes}/3)"

    state.failures += 1
    if state.failures >= MAX_MARKS:
        state.is_dead = True
        return DeathSaveOutcome.DEAD, "Third failure, the character dies"
    return DeathSaveOutcome.CONTINUE, f"Failure ({state.failures}/3)"


def apply_damage_at_zero(state: DeathSaveState, critical: bool = False) -> DeathSaveOutcome:
    """Damage to a dying creature counts as failed saves."""
    if state.is_dead:
        return DeathSaveOutcome.NO_OP
    # a stable creature that takes damage starts dying again
    state.is_stable = False
    state.successes = 0 if state.successes >= MAX_MARKS else state.successes
    state.failures = min(MAX_MARKS, state.failures + (2 if critical else 1))
    if state.failures >= MAX_MARKS:
        state.is_dead = True
        return DeathSaveOutcome.DEAD
    return DeathSaveOutcome.CONTINUE


class DeathSaveStore:
    """Death-save records keyed by (encounter_id, participant_id)."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], DeathSaveState] = {}

    def get(self, encounter_id: str, participant_id: str) -> DeathSaveState | None:
        return self._records.get((encounter_id, participant_id))

    def get_or_create(self, encounter_id: str, participant_id: str) -> DeathSaveState:
        key = (encounter_id, participant_id)
        state = self._records.get(key)
        if state is None:
            state = DeathSaveState()
            self._records[key] = state
        return state

    def delete(self, encounter_id: str, participant_id: str) -> None:
        self._records.pop((encounter_id, participant_id), None)

    def clear_encounter(self, encounter_id: str) -> None:
        for key in [key for key in self._records if key[0] == encounter_id]:
            del self._records[key]

    def clear(self) -> None:
        self._records.clear()
