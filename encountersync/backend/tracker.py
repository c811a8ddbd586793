"""Per-turn action economy for each actor."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from .errors import StateConflictError


class ActionCost(str, Enum):
    ACTION = "action"
    BONUS_ACTION = "bonus_action"
    REACTION = "reaction"
    FREE = "free"
    MOVEMENT = "movement"


@dataclass
class TurnActionTracker:
    actor_id: str
    action_used: bool = False
    bonus_action_used: bool = False
    reaction_used: bool = False
    movement_used: int = 0
    has_dashed: bool = False
    disengaged_this_turn: bool = False
    is_dodging: bool = False

    def movement_budget(self, speed: int) -> int:
        return (2 * speed if self.has_dashed else speed) - self.movement_used

    def ensure_available(self, cost: ActionCost) -> None:
        if cost == ActionCost.ACTION and self.action_used:
            raise StateConflictError("Action already used this turn", details={"actorId": self.actor_id})
        if cost == ActionCost.BONUS_ACTION and self.bonus_action_used:
            raise StateConflictError("Bonus action already used this turn", details={"actorId": self.actor_id})
        if cost == ActionCost.REACTION and self.reaction_used:
            raise StateConflictError("Reaction already used", details={"actorId": self.actor_id})

    def spend(self, cost: ActionCost) -> None:
        if cost == ActionCost.ACTION:
            self.action_used = True
        elif cost == ActionCost.BONUS_ACTION:
            self.bonus_action_used = True
        elif cost == ActionCost.REACTION:
            self.reaction_used = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "actorId": self.actor_id,
            "actionUsed": self.action_used,
            "bonusActionUsed": self.bonus_action_used,
            "reactionUsed": self.reaction_used,
            "movementUsed": self.movement_used,
            "hasDashed": self.has_dashed,
            "disengagedThisTurn": self.disengaged_this_turn,
            "isDodging": self.is_dodging,
        }


class TurnActionStore:
    """Trackers keyed by (encounter_id, actor_id); created lazily, dropped when that actor's turn ends."""

    def __init__(self) -> None:
        self._trackers: dict[tuple[str, str], TurnActionTracker] = {}

    def peek(self, encounter_id: str, actor_id: str) -> TurnActionTracker | None:
        return self._trackers.get((encounter_id, actor_id))

    def get_or_create(self, encounter_id: str, actor_id: str) -> TurnActionTracker:
        key = (encounter_id, actor_id)
        tracker = self._trackers.get(key)
        if tracker is None:
            tracker = TurnActionTracker(actor_id=actor_id)
            self._trackers[key] = tracker
        return tracker

    def is_dodging(self, encounter_id: str, actor_id: str) -> bool:
        tracker = self._trackers.get((encounter_id, actor_id))
        return tracker is not None and tracker.is_dodging

    def end_turn(self, encounter_id: str, actor_id: str) -> None:
        self._trackers.pop((encounter_id, actor_id), None)

    def clear_encounter(self, encounter_id: str) -> None:
        for key in [key for key in self._trackers if key[0] == encounter_id]:
            del self._trackers[key]

    def clear(self) -> None:
        self._trackers.clear()
