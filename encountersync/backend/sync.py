"""Snapshot, diff and commit of linked participants back to character records."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any

from .conditions import ActiveCondition
from .death_saves import DeathSaveState
from .models import CharacterRecord, CombatStats, Participant, ResourcePool
from .store import CharacterStore

logger = logging.getLogger(__name__)


@dataclass
class ParticipantSnapshot:
    participant_id: str
    character_id: str
    name: str
    hp: int
    max_hp: int
    conditions: list[ActiveCondition] = field(default_factory=list)
    resource_slots: dict[str, ResourcePool] = field(default_factory=dict)


def capture_snapshot(participant: Participant, conditions: list[ActiveCondition]) -> ParticipantSnapshot:
    if participant.character_id is None:
        raise ValueError(f"Participant {participant.id} is not linked to a character")
    return ParticipantSnapshot(
        participant_id=participant.id,
        character_id=participant.character_id,
        name=participant.name,
        hp=participant.hp,
        max_hp=participant.max_hp,
        conditions=copy.deepcopy(conditions),
        resource_slots=copy.deepcopy(participant.resource_slots),
    )


class SnapshotStore:
    """Snapshots keyed by encounter id, then participant id."""

    def __init__(self) -> None:
        self._snapshots: dict[str, dict[str, ParticipantSnapshot]] = {}

    def capture(self, encounter_id: str, snapshot: ParticipantSnapshot) -> None:
        self._snapshots.setdefault(encounter_id, {})[snapshot.participant_id] = snapshot

    def get(self, encounter_id: str) -> dict[str, ParticipantSnapshot]:
        return dict(self._snapshots.get(encounter_id, {}))

    def has(self, encounter_id: str) -> bool:
        return bool(self._snapshots.get(encounter_id))

    def discard(self, encounter_id: str, participant_id: str) -> None:
        entries = self._snapshots.get(encounter_id)
        if entries is None:
            return
        entries.pop(participant_id, None)
        if not entries:
            self._snapshots.pop(encounter_id, None)

    def clear_encounter(self, encounter_id: str) -> None:
        self._snapshots.pop(encounter_id, None)

    def clear(self) -> None:
        self._snapshots.clear()


@dataclass
class ParticipantStateDiff:
    participant_id: str
    character_id: str
    name: str
    hp_initial: int
    hp_final: int
    max_hp: int
    conditions_initial: list[str]
    conditions_final: list[str]
    conditions_added: list[str]
    conditions_removed: list[str]
    conditions_changed: list[str]
    resource_slots_initial: dict[str, ResourcePool]
    resource_slots_final: dict[str, ResourcePool]
    resource_slots_expended: dict[str, int]
    stats: CombatStats
    death_saves: DeathSaveState | None = None

    @property
    def hp_delta(self) -> int:
        return self.hp_final - self.hp_initial

    @property
    def has_changes(self) -> bool:
        return bool(
            self.hp_delta
            or self.conditions_added
            or self.conditions_removed
            or self.conditions_changed
            or any(self.resource_slots_expended.values())
            or _pools_to_dict(self.resource_slots_initial) != _pools_to_dict(self.resource_slots_final)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "participantId": self.participant_id,
            "characterId": self.character_id,
            "name": self.name,
            "hp": {"initial": self.hp_initial, "final": self.hp_final, "delta": self.hp_delta, "max": self.max_hp},
            "conditions": {
                "initial": list(self.conditions_initial),
                "final": list(self.conditions_final),
                "added": list(self.conditions_added),
                "removed": list(self.conditions_removed),
                "changed": list(self.conditions_changed),
            },
            "resourceSlots": {
                "initial": _pools_to_dict(self.resource_slots_initial),
                "final": _pools_to_dict(self.resource_slots_final),
                "expended": dict(self.resource_slots_expended),
            },
            "combat": self.stats.to_dict(),
            "deathSaves": self.death_saves.to_dict() if self.death_saves is not None else None,
            "hasChanges": self.has_changes,
        }


def _pools_to_dict(pools: dict[str, ResourcePool]) -> dict[str, dict[str, int]]:
    return {slot: pool.to_dict() for slot, pool in pools.items()}


def _persisted_form(active: ActiveCondition) -> dict[str, Any]:
    return active.to_dict()


def compute_diff(
    snapshot: ParticipantSnapshot,
    participant: Participant,
    final_conditions: list[ActiveCondition],
    death_saves: DeathSaveState | None = None,
) -> ParticipantStateDiff:
    initial_by_name = {c.condition: c for c in snapshot.conditions}
    final_by_name = {c.condition: c for c in final_conditions}
    changed = [
        name
        for name, active in final_by_name.items()
        if name in initial_by_name and _persisted_form(active) != _persisted_form(initial_by_name[name])
    ]
    expended = {
        slot: max(0, pool.current - participant.resource_slots[slot].current)
        for slot, pool in snapshot.resource_slots.items()
        if slot in participant.resource_slots
    }
    return ParticipantStateDiff(
        participant_id=participant.id,
        character_id=snapshot.character_id,
        name=participant.name,
        hp_initial=snapshot.hp,
        hp_final=participant.hp,
        max_hp=participant.max_hp,
        conditions_initial=list(initial_by_name),
        conditions_final=list(final_by_name),
        conditions_added=[name for name in final_by_name if name not in initial_by_name],
        conditions_removed=[name for name in initial_by_name if name not in final_by_name],
        conditions_changed=changed,
        resource_slots_initial=copy.deepcopy(snapshot.resource_slots),
        resource_slots_final=copy.deepcopy(participant.resource_slots),
        resource_slots_expended=expended,
        stats=copy.deepcopy(participant.stats),
        death_saves=copy.deepcopy(death_saves),
    )


def merge_into_record(
    record: CharacterRecord,
    diff: ParticipantStateDiff,
    final_conditions: list[ActiveCondition],
    exclude_resource_slots: bool = False,
) -> None:
    """Overwrite hp, reconcile conditions by name and overwrite resource totals."""
    record.hp = diff.hp_final
    removed = set(diff.conditions_removed)
    merged: dict[str, dict[str, Any]] = {}
    for stored in record.conditions:
        name = str(stored.get("condition", ""))
        if name and name not in removed:
            merged[name] = dict(stored)
    for active in final_conditions:
        merged[active.condition] = _persisted_form(active)
    record.conditions = list(merged.values())
    if not exclude_resource_slots:
        record.resource_slots = copy.deepcopy(diff.resource_slots_final)


@dataclass
class CommitEntry:
    participant_id: str
    name: str
    status: str
    character_id: str | None = None
    hp_before: int | None = None
    hp_after: int | None = None
    conditions_applied: list[str] = field(default_factory=list)
    conditions_removed: list[str] = field(default_factory=list)
    resource_slots: dict[str, dict[str, int]] | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "participantId": self.participant_id,
            "characterId": self.character_id,
            "name": self.name,
            "status": self.status,
        }
        if self.hp_before is not None:
            data["hp"] = {"before": self.hp_before, "after": self.hp_after}
        if self.conditions_applied or self.conditions_removed:
            data["conditions"] = {"applied": list(self.conditions_applied), "removed": list(self.conditions_removed)}
        if self.resource_slots is not None:
            data["resourceSlots"] = self.resource_slots
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class CommitReport:
    encounter_id: str
    dry_run: bool
    committed: list[CommitEntry] = field(default_factory=list)
    excluded: list[CommitEntry] = field(default_factory=list)
    skipped: list[CommitEntry] = field(default_factory=list)
    failed: list[CommitEntry] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "encounterId": self.encounter_id,
            "dryRun": self.dry_run,
            "committed": [entry.to_dict() for entry in self.committed],
            "excluded": [entry.to_dict() for entry in self.excluded],
            "skipped": [entry.to_dict() for entry in self.skipped],
            "failed": [entry.to_dict() for entry in self.failed],
            "summary": {
                "committed": len(self.committed),
                "excluded": len(self.excluded),
                "skipped": len(self.skipped),
                "failed": len(self.failed),
            },
        }


def commit_participant(
    store: CharacterStore,
    diff: ParticipantStateDiff,
    final_conditions: list[ActiveCondition],
    dry_run: bool = False,
    exclude_resource_slots: bool = False,
) -> CommitEntry:
    """Apply one diff inside the character's transactional boundary.

    Engine errors and store failures are reported on the entry, never raised.
    """
    entry = CommitEntry(
        participant_id=diff.participant_id,
        character_id=diff.character_id,
        name=diff.name,
        status="dry_run" if dry_run else "committed",
        conditions_applied=[c.condition for c in final_conditions],
        conditions_removed=list(diff.conditions_removed),
        resource_slots=None if exclude_resource_slots else _pools_to_dict(diff.resource_slots_final),
    )
    if dry_run:
        record = store.get(diff.character_id)
        entry.hp_before = record.hp if record is not None else diff.hp_initial
        entry.hp_after = diff.hp_final
        return entry

    try:
        with store.transaction(diff.character_id) as record:
            entry.hp_before = record.hp
            merge_into_record(record, diff, final_conditions, exclude_resource_slots=exclude_resource_slots)
            entry.hp_after = record.hp
    except Exception as exc:
        logger.warning(f"Commit of character {diff.character_id} rolled back: {exc}")
        entry.status = "failed"
        entry.error = str(exc)
    return entry
