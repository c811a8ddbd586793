"""Battlefield state builders for observers and the HTTP surface."""

from __future__ import annotations

from typing import Any

from .conditions import ConditionStore, resolve_condition_target
from .death_saves import DeathSaveStore
from .models import Encounter, EncounterSummary, Participant


def entity_status(participant: Participant, encounter_id: str, death_saves: DeathSaveStore) -> str:
    if participant.hp > 0:
        return "alive"
    record = death_saves.get(encounter_id, participant.id)
    if record is not None and record.is_dead:
        return "dead"
    if record is not None and record.is_stable:
        return "stable"
    return "unconscious"


def entity_symbol(name: str, is_enemy: bool) -> str:
    """Allies get an uppercase initial, enemies a lowercase one."""
    initial = name[:1] or "?"
    return initial.lower() if is_enemy else initial.upper()


def build_battlefield_state(
    encounter: Encounter,
    conditions: ConditionStore,
    death_saves: DeathSaveStore,
) -> dict[str, Any]:
    """Return the full observer state sent on subscribe."""
    current_turn_id = encounter.current_participant.id if encounter.participants else ""
    entities = []
    for participant in encounter.participants:
        key = resolve_condition_target(participant.id, encounter)
        entities.append(
            {
                "id": participant.id,
                "name": participant.name,
                "symbol": entity_symbol(participant.name, participant.is_enemy),
                "position": participant.position.to_dict(),
                "hp": participant.hp,
                "maxHp": participant.max_hp,
                "ac": participant.ac,
                "speed": participant.speed,
                "initiative": participant.initiative,
                "isEnemy": participant.is_enemy,
                "isCurrentTurn": participant.id == current_turn_id,
                "conditions": [active.condition for active in conditions.get(key)],
                "status": entity_status(participant, encounter.id, death_saves),
            }
        )

    state: dict[str, Any] = {
        "encounterId": encounter.id,
        "round": encounter.round,
        "currentTurnId": current_turn_id,
        "turnOrder": encounter.turn_order,
        "status": encounter.status.value,
        "terrain": encounter.terrain.to_dict(),
        "entities": entities,
        "lighting": encounter.lighting.value,
    }
    if encounter.outcome is not None:
        state["outcome"] = encounter.outcome.value
    return state


def build_encounter_summary(encounter: Encounter) -> EncounterSummary:
    return EncounterSummary(
        encounter_id=encounter.id,
        status=encounter.status,
        round=encounter.round,
        current_turn_id=encounter.current_participant.id if encounter.participants else "",
        participant_count=len(encounter.participants),
        preserved=encounter.preserved,
        created_at=encounter.created_at,
    )
