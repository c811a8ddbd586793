"""Encounter engine: the synchronous facade over encounter state and its trackers."""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from typing import Any

from .actions import ActionOutcome, ActionRequest, ActionResolver
from .conditions import (
    MAX_BATCH_SIZE,
    ActiveCondition,
    ConditionOperation,
    ConditionOperationResult,
    ConditionStore,
    apply_condition_operation,
    resolve_condition_target,
)
from .death_saves import DeathSaveOutcome, DeathSaveResult, DeathSaveStore, evaluate_death_save
from .deltas import ConditionAdded, ConditionRemoved, TurnChanged
from .dice import Dice, RandomDice, RollMode, roll_d20_with_mode
from .errors import EngineError, NotFoundError, NotPreservedError, StateConflictError, ValidationError
from .geometry import Geometry, GridGeometry
from .models import (
    CharacterRecord,
    Encounter,
    EncounterOutcome,
    EncounterStatus,
    EncounterSummary,
    Lighting,
    Participant,
    ParticipantInput,
    Terrain,
)
from .state import build_battlefield_state, build_encounter_summary, entity_status
from .store import CharacterStore, InMemoryCharacterStore
from .sync import (
    CommitEntry,
    CommitReport,
    ParticipantStateDiff,
    SnapshotStore,
    capture_snapshot,
    commit_participant,
    compute_diff,
)
from .tracker import TurnActionStore

logger = logging.getLogger(__name__)

MAX_DISCARDED_IDS = 1024


@dataclass
class EngineStores:
    """Every piece of mutable engine state, owned by one engine instance."""

    encounters: dict[str, Encounter] = field(default_factory=dict)
    conditions: ConditionStore = field(default_factory=ConditionStore)
    death_saves: DeathSaveStore = field(default_factory=DeathSaveStore)
    trackers: TurnActionStore = field(default_factory=TurnActionStore)
    snapshots: SnapshotStore = field(default_factory=SnapshotStore)
    # recently discarded ids, oldest first, so a late commit still reports "not preserved"
    discarded: dict[str, None] = field(default_factory=dict)
    committed: set[str] = field(default_factory=set)

    def remember_discarded(self, encounter_id: str) -> None:
        self.discarded[encounter_id] = None
        while len(self.discarded) > MAX_DISCARDED_IDS:
            del self.discarded[next(iter(self.discarded))]

    def clear(self) -> None:
        self.encounters.clear()
        self.conditions.clear()
        self.death_saves.clear()
        self.trackers.clear()
        self.snapshots.clear()
        self.discarded.clear()
        self.committed.clear()


@dataclass(frozen=True)
class CreatedEncounter:
    encounter_id: str
    turn_order: list[dict[str, Any]]
    state: dict[str, Any]


@dataclass(frozen=True)
class TurnAdvanceResult:
    encounter_id: str
    previous_id: str
    current_id: str
    round: int
    expired: list[str]
    death_save_reminder: str | None
    all_down: bool
    deltas: list[Any] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "encounterId": self.encounter_id,
            "previousId": self.previous_id,
            "currentId": self.current_id,
            "round": self.round,
            "expired": list(self.expired),
            "deathSaveReminder": self.death_save_reminder,
            "allDown": self.all_down,
        }


@dataclass
class ConditionResult:
    results: list[ConditionOperationResult]
    batch: bool = False
    deltas: dict[str, list[Any]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        if not self.batch:
            return self.results[0].to_dict()
        succeeded = sum(1 for result in self.results if result.success)
        return {
            "results": [result.to_dict() for result in self.results],
            "summary": {
                "total": len(self.results),
                "succeeded": succeeded,
                "failed": len(self.results) - succeeded,
            },
        }


@dataclass(frozen=True)
class DiffReport:
    encounter_id: str
    diffs: list[ParticipantStateDiff]
    ephemeral: list[str]

    @property
    def commit_required(self) -> bool:
        return any(diff.has_changes for diff in self.diffs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "encounterId": self.encounter_id,
            "commitRequired": self.commit_required,
            "participantUpdates": [diff.to_dict() for diff in self.diffs],
            "ephemeral": list(self.ephemeral),
        }


@dataclass(frozen=True)
class EncounterEndResult:
    encounter_id: str
    outcome: EncounterOutcome
    notes: str | None
    rounds: int
    preserved: bool
    participants: list[dict[str, Any]]
    diff: DiffReport

    @property
    def commit_required(self) -> bool:
        return self.diff.commit_required

    def to_dict(self) -> dict[str, Any]:
        return {
            "encounterId": self.encounter_id,
            "outcome": self.outcome.value,
            "notes": self.notes,
            "rounds": self.rounds,
            "preserved": self.preserved,
            "commitRequired": self.commit_required,
            "participants": list(self.participants),
            "participantUpdates": [diff.to_dict() for diff in self.diff.diffs],
        }


class EncounterEngine:
    def __init__(
        self,
        character_store: CharacterStore | None = None,
        dice: Dice | None = None,
        geometry: Geometry | None = None,
        stores: EngineStores | None = None,
    ) -> None:
        self.stores = stores if stores is not None else EngineStores()
        self.characters = character_store if character_store is not None else InMemoryCharacterStore()
        self.dice = dice if dice is not None else RandomDice()
        self.geometry = geometry if geometry is not None else GridGeometry()
        self.resolver = ActionResolver(
            conditions=self.stores.conditions,
            death_saves=self.stores.death_saves,
            trackers=self.stores.trackers,
            dice=self.dice,
            geometry=self.geometry,
        )
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, encounter_id: str, register: bool = False) -> threading.RLock:
        """Return the encounter's lock; ids with no stored encounter get an unregistered one."""
        with self._locks_guard:
            lock = self._locks.get(encounter_id)
            if lock is None:
                lock = threading.RLock()
                if register or encounter_id in self.stores.encounters:
                    self._locks[encounter_id] = lock
            return lock

    def _forget_lock(self, encounter_id: str) -> None:
        with self._locks_guard:
            if encounter_id not in self.stores.encounters:
                self._locks.pop(encounter_id, None)

    def _get(self, encounter_id: str) -> Encounter:
        encounter = self.stores.encounters.get(encounter_id)
        if encounter is None:
            raise NotFoundError(f"Encounter not found: {encounter_id}", details={"encounterId": encounter_id})
        return encounter

    def _active(self, encounter_id: str) -> Encounter:
        encounter = self._get(encounter_id)
        if encounter.status != EncounterStatus.ACTIVE:
            raise StateConflictError(f"Encounter {encounter_id} has ended", details={"encounterId": encounter_id})
        return encounter

    def _participant(self, encounter: Encounter, participant_id: str) -> Participant:
        participant = encounter.find_participant(participant_id)
        if participant is None:
            raise NotFoundError(
                f"Participant not found: {participant_id}",
                details={"encounterId": encounter.id, "participantId": participant_id},
            )
        return participant

    # lifecycle

    def create(
        self,
        participants: list[ParticipantInput],
        terrain: Terrain | None = None,
        lighting: Lighting = Lighting.BRIGHT,
        surprised: list[str] | None = None,
        encounter_id: str | None = None,
    ) -> CreatedEncounter:
        terrain = terrain if terrain is not None else Terrain()
        records = self._validate_participants(participants, terrain)
        encounter_id = encounter_id or str(uuid.uuid4())
        if encounter_id in self.stores.encounters:
            raise ValidationError(f"Encounter id already in use: {encounter_id}")
        surprised_ids = set(surprised or [])

        rolled: list[Participant] = []
        for entry in participants:
            record = records.get(entry.id)
            initiative = self.dice.d20() + entry.initiative_bonus
            rolled.append(
                Participant(
                    id=entry.id,
                    name=entry.name,
                    hp=record.hp if record is not None else entry.hp,
                    max_hp=record.max_hp if record is not None else entry.max_hp,
                    ac=entry.ac,
                    initiative=initiative,
                    initiative_bonus=entry.initiative_bonus,
                    position=entry.position,
                    is_enemy=entry.is_enemy,
                    size=entry.size,
                    speed=entry.speed,
                    character_id=entry.character_id,
                    surprised=entry.id in surprised_ids,
                    resistances=list(entry.resistances),
                    immunities=list(entry.immunities),
                    vulnerabilities=list(entry.vulnerabilities),
                    condition_immunities=list(entry.condition_immunities),
                    resource_slots=copy.deepcopy(
                        record.resource_slots if record is not None and record.resource_slots else entry.resource_slots
                    ),
                )
            )
        # sorted() is stable, so equal initiative and bonus keep input order
        ordered = sorted(rolled, key=lambda p: (-p.initiative, -p.initiative_bonus))
        encounter = Encounter(id=encounter_id, participants=ordered, terrain=terrain, lighting=lighting)

        with self._lock(encounter_id, register=True):
            if encounter_id in self.stores.encounters:
                raise ValidationError(f"Encounter id already in use: {encounter_id}")
            self.stores.discarded.pop(encounter_id, None)
            self.stores.committed.discard(encounter_id)
            self.stores.encounters[encounter_id] = encounter
            for participant in ordered:
                record = records.get(participant.id)
                if record is None or participant.character_id is None:
                    continue
                if not self.stores.conditions.has_entries(participant.character_id):
                    self.stores.conditions.replace(
                        participant.character_id,
                        [ActiveCondition.from_dict(stored) for stored in record.conditions],
                    )
                self.stores.snapshots.capture(
                    encounter_id,
                    capture_snapshot(participant, self.stores.conditions.get(participant.character_id)),
                )

        logger.info(f"Created encounter {encounter_id} with {len(ordered)} participants")
        return CreatedEncounter(
            encounter_id=encounter_id,
            turn_order=[{"id": p.id, "name": p.name, "initiative": p.initiative} for p in ordered],
            state=self._state(encounter),
        )

    def _validate_participants(
        self, participants: list[ParticipantInput], terrain: Terrain
    ) -> dict[str, CharacterRecord]:
        if not participants:
            raise ValidationError("An encounter needs at least one participant")
        if terrain.width < 1 or terrain.height < 1:
            raise ValidationError("Terrain dimensions must be positive")

        seen_ids: set[str] = set()
        seen_characters: set[str] = set()
        records: dict[str, CharacterRecord] = {}
        for entry in participants:
            if not entry.id:
                raise ValidationError("Participant id is required")
            if entry.id in seen_ids:
                raise ValidationError(f"Duplicate participant id: {entry.id}", details={"participantId": entry.id})
            seen_ids.add(entry.id)
            if entry.max_hp < 1 or not 0 <= entry.hp <= entry.max_hp:
                raise ValidationError(
                    f"Participant {entry.id} hp must be within 0..maxHp",
                    details={"participantId": entry.id, "hp": entry.hp, "maxHp": entry.max_hp},
                )
            if entry.ac < 0 or entry.speed < 0:
                raise ValidationError(f"Participant {entry.id} has negative ac or speed")
            if not terrain.in_bounds(entry.position):
                raise ValidationError(
                    f"Participant {entry.id} is placed outside the terrain",
                    details={"participantId": entry.id, "position": entry.position.to_dict()},
                )
            if entry.character_id is None:
                continue
            if entry.character_id in seen_characters:
                raise ValidationError(
                    f"Character {entry.character_id} is linked twice",
                    details={"characterId": entry.character_id},
                )
            seen_characters.add(entry.character_id)
            record = self.characters.get(entry.character_id)
            if record is None:
                raise NotFoundError(
                    f"Character not found: {entry.character_id}",
                    details={"characterId": entry.character_id},
                )
            records[entry.id] = record
        return records

    def get(self, encounter_id: str) -> dict[str, Any]:
        with self._lock(encounter_id):
            return self._state(self._get(encounter_id))

    def list(self) -> list[EncounterSummary]:
        return [build_encounter_summary(encounter) for encounter in list(self.stores.encounters.values())]

    def _state(self, encounter: Encounter) -> dict[str, Any]:
        return build_battlefield_state(encounter, self.stores.conditions, self.stores.death_saves)

    # turns and actions

    def advance_turn(self, encounter_id: str) -> TurnAdvanceResult:
        with self._lock(encounter_id):
            encounter = self._active(encounter_id)
            departing = encounter.current_participant
            key = resolve_condition_target(departing.id, encounter)
            expired = self.stores.conditions.tick(key, marker=(encounter.id, encounter.round))
            deltas: list[Any] = [ConditionRemoved(entity_id=departing.id, condition=c.condition) for c in expired]
            self.stores.trackers.end_turn(encounter.id, departing.id)

            reminder = None
            if departing.hp <= 0:
                record = self.stores.death_saves.get(encounter.id, departing.id)
                if record is None or not record.is_terminal:
                    reminder = f"{departing.name} is dying and must roll a death saving throw"

            encounter.current_turn_index = (encounter.current_turn_index + 1) % len(encounter.participants)
            if encounter.current_turn_index == 0:
                encounter.round += 1
            current = encounter.current_participant
            deltas.append(
                TurnChanged(previous_entity_id=departing.id, current_entity_id=current.id, round=encounter.round)
            )
            return TurnAdvanceResult(
                encounter_id=encounter.id,
                previous_id=departing.id,
                current_id=current.id,
                round=encounter.round,
                expired=[c.condition for c in expired],
                death_save_reminder=reminder,
                all_down=all(p.hp <= 0 for p in encounter.participants),
                deltas=deltas,
            )

    def execute_action(self, encounter_id: str, request: ActionRequest) -> ActionOutcome:
        with self._lock(encounter_id):
            encounter = self._active(encounter_id)
            try:
                return self.resolver.execute(encounter, request)
            except EngineError as exc:
                logger.debug(f"Rejected {request.action_type.value} by {request.actor_id}: {exc.message}")
                raise

    # conditions

    def manage_condition(self, operations: list[ConditionOperation], batch: bool = False) -> ConditionResult:
        if batch and not 1 <= len(operations) <= MAX_BATCH_SIZE:
            raise ValidationError(f"A batch holds between 1 and {MAX_BATCH_SIZE} operations")
        if not batch and len(operations) != 1:
            raise ValidationError("A single condition request holds exactly one operation")

        result = ConditionResult(results=[], batch=batch)
        for operation in map(self._scope, operations):
            try:
                item, deltas = self._condition_operation(operation)
            except EngineError as exc:
                if not batch:
                    raise
                result.results.append(
                    ConditionOperationResult(
                        operation=operation.operation,
                        target_id=operation.target_id,
                        success=False,
                        message=exc.message,
                        condition=operation.condition,
                    )
                )
                continue
            result.results.append(item)
            if deltas and operation.encounter_id:
                result.deltas.setdefault(operation.encounter_id, []).extend(deltas)
        return result

    def _scope(self, operation: ConditionOperation) -> ConditionOperation:
        """Bind an unscoped operation to the active encounter whose participant owns the store key."""
        if operation.encounter_id is not None:
            return operation
        for encounter in list(self.stores.encounters.values()):
            if encounter.status != EncounterStatus.ACTIVE:
                continue
            for participant in encounter.participants:
                if resolve_condition_target(participant.id, encounter) == operation.target_id:
                    return replace(operation, encounter_id=encounter.id)
        return operation

    def _condition_operation(self, operation: ConditionOperation) -> tuple[ConditionOperationResult, list[Any]]:
        if operation.encounter_id is None:
            key = resolve_condition_target(operation.target_id, None)
            return apply_condition_operation(self.stores.conditions, key, operation), []

        with self._lock(operation.encounter_id):
            encounter = self._get(operation.encounter_id)
            if operation.operation != "query" and encounter.status != EncounterStatus.ACTIVE:
                raise StateConflictError(f"Encounter {encounter.id} has ended", details={"encounterId": encounter.id})
            participant = encounter.find_participant(operation.target_id) or encounter.find_by_character(
                operation.target_id
            )
            if participant is None:
                raise NotFoundError(
                    f"Participant not found: {operation.target_id}",
                    details={"encounterId": encounter.id, "targetId": operation.target_id},
                )
            key = resolve_condition_target(participant.id, encounter)
            marker = (encounter.id, encounter.round) if operation.operation == "tick" else None
            item = apply_condition_operation(
                self.stores.conditions,
                key,
                operation,
                participant=participant,
                marker=marker,
            )
            if item.added and operation.source:
                applier = encounter.find_participant(operation.source)
                if applier is not None:
                    applier.stats.conditions_applied += 1
            deltas: list[Any] = [
                ConditionAdded(entity_id=participant.id, condition=c.condition, duration=c.duration) for c in item.added
            ]
            deltas.extend(ConditionRemoved(entity_id=participant.id, condition=c.condition) for c in item.removed)
            return item, deltas

    # death saves

    def roll_death_save(
        self,
        encounter_id: str,
        participant_id: str,
        modifier: int = 0,
        mode: RollMode = RollMode.NORMAL,
        manual_roll: int | None = None,
        manual_rolls: tuple[int, int] | None = None,
    ) -> DeathSaveResult:
        for value in ([manual_roll] if manual_roll is not None else []) + list(manual_rolls or []):
            if not 1 <= value <= 20:
                raise ValidationError(f"A d20 roll must be between 1 and 20, got {value}")

        with self._lock(encounter_id):
            encounter = self._active(encounter_id)
            participant = self._participant(encounter, participant_id)
            if participant.hp > 0:
                raise StateConflictError(
                    f"{participant.name} is not at 0 hp",
                    details={"participantId": participant.id, "hp": participant.hp},
                )

            record = self.stores.death_saves.get_or_create(encounter.id, participant.id)
            if record.is_terminal:
                outcome, description = evaluate_death_save(record, natural=0)
                return DeathSaveResult(
                    participant_id=participant.id,
                    natural=None,
                    total=None,
                    rolls=[],
                    outcome=outcome,
                    state=copy.deepcopy(record),
                    hp=participant.hp,
                    description=description,
                )

            if manual_roll is not None:
                natural, rolls = manual_roll, [manual_roll]
            elif manual_rolls is not None:
                rolls = list(manual_rolls)
                if mode == RollMode.ADVANTAGE:
                    natural = max(rolls)
                elif mode == RollMode.DISADVANTAGE:
                    natural = min(rolls)
                else:
                    natural = rolls[0]
            else:
                natural, rolls = roll_d20_with_mode(
                    self.dice,
                    advantage=mode == RollMode.ADVANTAGE,
                    disadvantage=mode == RollMode.DISADVANTAGE,
                )

            outcome, description = evaluate_death_save(record, natural=natural, modifier=modifier)
            state = copy.deepcopy(record)
            deltas: list[Any] = []
            if outcome == DeathSaveOutcome.REVIVED:
                deltas = self.resolver.apply_healing(encounter, participant, 1)
            elif outcome == DeathSaveOutcome.DEAD:
                logger.info(f"{participant.name} died in encounter {encounter.id}")
            return DeathSaveResult(
                participant_id=participant.id,
                natural=natural,
                total=natural + modifier,
                rolls=rolls,
                outcome=outcome,
                state=state,
                hp=participant.hp,
                description=description,
                deltas=deltas,
            )

    # synchronization

    def diff(self, encounter_id: str) -> DiffReport:
        with self._lock(encounter_id):
            return self._diff(self._get(encounter_id))

    def _diff(self, encounter: Encounter) -> DiffReport:
        snapshots = self.stores.snapshots.get(encounter.id)
        diffs: list[ParticipantStateDiff] = []
        ephemeral: list[str] = []
        for participant in encounter.participants:
            if participant.character_id is None:
                ephemeral.append(participant.id)
                continue
            snapshot = snapshots.get(participant.id)
            if snapshot is None:
                continue
            diffs.append(
                compute_diff(
                    snapshot,
                    participant,
                    self.stores.conditions.get(participant.character_id),
                    self.stores.death_saves.get(encounter.id, participant.id),
                )
            )
        return DiffReport(encounter_id=encounter.id, diffs=diffs, ephemeral=ephemeral)

    def end_encounter(
        self,
        encounter_id: str,
        outcome: EncounterOutcome = EncounterOutcome.OTHER,
        notes: str | None = None,
        preserve_log: bool = False,
    ) -> EncounterEndResult:
        with self._lock(encounter_id):
            encounter = self._active(encounter_id)
            encounter.status = EncounterStatus.ENDED
            encounter.outcome = outcome
            encounter.notes = notes
            encounter.preserved = preserve_log

            report = self._diff(encounter)
            participants = [
                {
                    "id": p.id,
                    "name": p.name,
                    "characterId": p.character_id,
                    "hp": p.hp,
                    "maxHp": p.max_hp,
                    "status": entity_status(p, encounter.id, self.stores.death_saves),
                    "combat": p.stats.to_dict(),
                }
                for p in encounter.participants
            ]
            if not preserve_log:
                self._discard(encounter)

        logger.info(
            f"Ended encounter {encounter_id} after {encounter.round} rounds "
            f"(outcome={outcome.value}, preserved={preserve_log})"
        )
        return EncounterEndResult(
            encounter_id=encounter.id,
            outcome=outcome,
            notes=notes,
            rounds=encounter.round,
            preserved=preserve_log,
            participants=participants,
            diff=report,
        )

    def _discard(self, encounter: Encounter) -> None:
        self.stores.encounters.pop(encounter.id, None)
        self.stores.trackers.clear_encounter(encounter.id)
        self.stores.death_saves.clear_encounter(encounter.id)
        self.stores.snapshots.clear_encounter(encounter.id)
        for participant in encounter.participants:
            if participant.character_id is None:
                self.stores.conditions.clear_target(participant.id)
        self.stores.remember_discarded(encounter.id)
        self._forget_lock(encounter.id)

    def commit(
        self,
        encounter_id: str,
        dry_run: bool = False,
        character_ids: list[str] | None = None,
        exclude_resource_slots: bool = False,
    ) -> CommitReport:
        with self._lock(encounter_id):
            if encounter_id in self.stores.discarded:
                raise NotPreservedError(
                    f"Encounter {encounter_id} was ended without preserve_log",
                    details={"encounterId": encounter_id},
                )
            encounter = self._get(encounter_id)
            if encounter.status != EncounterStatus.ENDED:
                raise StateConflictError(
                    f"Encounter {encounter_id} must be ended before commit",
                    details={"encounterId": encounter_id},
                )
            if not encounter.preserved or encounter_id in self.stores.committed:
                raise NotPreservedError(
                    f"Encounter {encounter_id} is not preserved or was already committed",
                    details={"encounterId": encounter_id},
                )

            snapshots = self.stores.snapshots.get(encounter_id)
            selected = set(character_ids) if character_ids is not None else None
            report = CommitReport(encounter_id=encounter_id, dry_run=dry_run)
            for participant in encounter.participants:
                if participant.character_id is None:
                    report.skipped.append(
                        CommitEntry(participant_id=participant.id, name=participant.name, status="ephemeral")
                    )
                    continue
                snapshot = snapshots.get(participant.id)
                if snapshot is None:
                    report.skipped.append(
                        CommitEntry(
                            participant_id=participant.id,
                            character_id=participant.character_id,
                            name=participant.name,
                            status="already_committed",
                        )
                    )
                    continue
                if selected is not None and participant.character_id not in selected:
                    report.excluded.append(
                        CommitEntry(
                            participant_id=participant.id,
                            character_id=participant.character_id,
                            name=participant.name,
                            status="excluded",
                        )
                    )
                    continue

                final_conditions = self.stores.conditions.get(participant.character_id)
                diff = compute_diff(
                    snapshot,
                    participant,
                    final_conditions,
                    self.stores.death_saves.get(encounter_id, participant.id),
                )
                entry = commit_participant(
                    self.characters,
                    diff,
                    final_conditions,
                    dry_run=dry_run,
                    exclude_resource_slots=exclude_resource_slots,
                )
                if entry.status == "failed":
                    report.failed.append(entry)
                    continue
                report.committed.append(entry)
                if not dry_run:
                    self.stores.snapshots.discard(encounter_id, participant.id)
            if not dry_run and not self.stores.snapshots.has(encounter_id):
                self.stores.committed.add(encounter_id)

        if not dry_run:
            logger.info(
                f"Committed encounter {encounter_id}: {len(report.committed)} committed, "
                f"{len(report.failed)} failed, {len(report.excluded)} excluded"
            )
        return report
