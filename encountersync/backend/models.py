"""Domain models for encounter state and persistence contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class EncounterStatus(str, Enum):
    ACTIVE = "active"
    ENDED = "ended"


class EncounterOutcome(str, Enum):
    VICTORY = "victory"
    DEFEAT = "defeat"
    FLED = "fled"
    NEGOTIATED = "negotiated"
    OTHER = "other"


class Lighting(str, Enum):
    BRIGHT = "bright"
    DIM = "dim"
    DARKNESS = "darkness"
    MAGICAL_DARKNESS = "magical_darkness"


@dataclass(frozen=True)
class Position:
    x: int
    y: int
    z: int = 0

    def to_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "z": self.z}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Position":
        return cls(x=int(data["x"]), y=int(data["y"]), z=int(data.get("z", 0)))


@dataclass
class Terrain:
    width: int = 20
    height: int = 20
    obstacles: list[Position] = field(default_factory=list)
    difficult_terrain: list[Position] = field(default_factory=list)
    water: list[Position] = field(default_factory=list)
    hazards: list[dict[str, Any]] = field(default_factory=list)

    def in_bounds(self, position: Position) -> bool:
        return 0 <= position.x < self.width and 0 <= position.y < self.height

    def is_obstacle(self, position: Position) -> bool:
        return any(o.x == position.x and o.y == position.y for o in self.obstacles)

    def is_difficult(self, position: Position) -> bool:
        return any(d.x == position.x and d.y == position.y for d in self.difficult_terrain)

    def to_dict(self) -> dict[str, Any]:
        return {
            "width": self.width,
            "height": self.height,
            "obstacles": [o.to_dict() for o in self.obstacles],
            "difficultTerrain": [d.to_dict() for d in self.difficult_terrain],
            "water": [w.to_dict() for w in self.water],
            "hazards": [dict(h) for h in self.hazards],
        }


@dataclass
class ResourcePool:
    current: int
    max: int

    def to_dict(self) -> dict[str, int]:
        return {"current": self.current, "max": self.max}


@dataclass
class CombatStats:
    damage_dealt: int = 0
    damage_taken: int = 0
    healing_done: int = 0
    attacks_made: int = 0
    attacks_hit: int = 0
    conditions_applied: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "damageDealt": self.damage_dealt,
            "damageTaken": self.damage_taken,
            "healingDone": self.healing_done,
            "attacksMade": self.attacks_made,
            "attacksHit": self.attacks_hit,
            "conditionsApplied": self.conditions_applied,
        }


@dataclass
class ParticipantInput:
    id: str
    name: str
    hp: int
    max_hp: int
    position: Position
    ac: int = 10
    initiative_bonus: int = 0
    is_enemy: bool = False
    size: str = "medium"
    speed: int = 30
    character_id: str | None = None
    resistances: list[str] = field(default_factory=list)
    immunities: list[str] = field(default_factory=list)
    vulnerabilities: list[str] = field(default_factory=list)
    condition_immunities: list[str] = field(default_factory=list)
    resource_slots: dict[str, ResourcePool] = field(default_factory=dict)


@dataclass
class Participant:
    id: str
    name: str
    hp: int
    max_hp: int
    ac: int
    initiative: int
    initiative_bonus: int
    position: Position
    is_enemy: bool = False
    size: str = "medium"
    speed: int = 30
    character_id: str | None = None
    surprised: bool = False
    resistances: list[str] = field(default_factory=list)
    immunities: list[str] = field(default_factory=list)
    vulnerabilities: list[str] = field(default_factory=list)
    condition_immunities: list[str] = field(default_factory=list)
    resource_slots: dict[str, ResourcePool] = field(default_factory=dict)
    stats: CombatStats = field(default_factory=CombatStats)

    @property
    def is_linked(self) -> bool:
        return self.character_id is not None

    def is_hostile_to(self, other: "Participant") -> bool:
        return self.is_enemy != other.is_enemy


@dataclass
class Encounter:
    id: str
    participants: list[Participant]
    terrain: Terrain
    lighting: Lighting = Lighting.BRIGHT
    round: int = 1
    current_turn_index: int = 0
    status: EncounterStatus = EncounterStatus.ACTIVE
    outcome: EncounterOutcome | None = None
    notes: str | None = None
    preserved: bool = False
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def current_participant(self) -> Participant:
        return self.participants[self.current_turn_index]

    @property
    def turn_order(self) -> list[str]:
        return [p.id for p in self.participants]

    def find_participant(self, participant_id: str) -> Participant | None:
        for participant in self.participants:
            if participant.id == participant_id:
                return participant
        return None

    def find_by_character(self, character_id: str) -> Participant | None:
        for participant in self.participants:
            if participant.character_id == character_id:
                return participant
        return None

    def occupant_at(self, position: Position, exclude: str | None = None) -> Participant | None:
        for participant in self.participants:
            if participant.id == exclude or participant.hp <= 0:
                continue
            if participant.position.x == position.x and participant.position.y == position.y:
                return participant
        return None


@dataclass
class CharacterRecord:
    id: str
    name: str
    hp: int
    max_hp: int
    conditions: list[dict[str, Any]] = field(default_factory=list)
    resource_slots: dict[str, ResourcePool] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "hp": self.hp,
            "maxHp": self.max_hp,
            "conditions": [dict(c) for c in self.conditions],
            "resourceSlots": {slot: pool.to_dict() for slot, pool in self.resource_slots.items()},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CharacterRecord":
        slots = data.get("resourceSlots") or {}
        return cls(
            id=str(data["id"]),
            name=str(data.get("name", "")),
            hp=int(data["hp"]),
            max_hp=int(data.get("maxHp", data["hp"])),
            conditions=[dict(c) for c in data.get("conditions") or []],
            resource_slots={
                str(slot): ResourcePool(current=int(pool["current"]), max=int(pool["max"]))
                for slot, pool in slots.items()
            },
        )


@dataclass(frozen=True)
class EncounterSummary:
    encounter_id: str
    status: EncounterStatus
    round: int
    current_turn_id: str
    participant_count: int
    preserved: bool
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "encounterId": self.encounter_id,
            "status": self.status.value,
            "round": self.round,
            "currentTurnId": self.current_turn_id,
            "participantCount": self.participant_count,
            "preserved": self.preserved,
            "createdAt": self.created_at,
        }
