from contextlib import contextmanager

from encountersync.backend.conditions import ActiveCondition
from encountersync.backend.death_saves import DeathSaveState
from encountersync.backend.models import CharacterRecord, Participant, Position, ResourcePool
from encountersync.backend.store import InMemoryCharacterStore
from encountersync.backend.sync import (
    CommitReport,
    SnapshotStore,
    capture_snapshot,
    commit_participant,
    compute_diff,
    merge_into_record,
)


def _hero(**overrides) -> Participant:
    values = {
        "id": "hero",
        "name": "Hero",
        "hp": 20,
        "max_hp": 20,
        "ac": 15,
        "initiative": 12,
        "initiative_bonus": 2,
        "position": Position(0, 0),
        "character_id": "char-1",
        "resource_slots": {"1": ResourcePool(current=3, max=3)},
    }
    values.update(overrides)
    return Participant(**values)


def _record() -> CharacterRecord:
    return CharacterRecord(
        id="char-1",
        name="Hero",
        hp=20,
        max_hp=20,
        conditions=[{"condition": "blessed", "description": "Blessed"}, {"condition": "poisoned"}],
        resource_slots={"1": ResourcePool(current=3, max=3)},
    )


def test_unchanged_participant_has_no_changes() -> None:
    hero = _hero()
    snapshot = capture_snapshot(hero, [])

    diff = compute_diff(snapshot, hero, [])

    assert diff.has_changes is False
    assert diff.hp_delta == 0


def test_snapshot_is_detached_from_live_state() -> None:
    hero = _hero()
    snapshot = capture_snapshot(hero, [])

    hero.resource_slots["1"].current = 1
    hero.hp = 9

    assert snapshot.resource_slots["1"].current == 3
    assert snapshot.hp == 20


def test_diff_reports_hp_conditions_and_slots() -> None:
    hero = _hero()
    poisoned = ActiveCondition(condition="poisoned", duration=3, rounds_remaining=3)
    snapshot = capture_snapshot(hero, [poisoned, ActiveCondition(condition="prone")])
    hero.hp = 11
    hero.resource_slots["1"].current = 1
    hero.stats.damage_taken = 9
    final = [
        ActiveCondition(condition="poisoned", duration=3, rounds_remaining=1),
        ActiveCondition(condition="blinded"),
    ]

    diff = compute_diff(snapshot, hero, final, DeathSaveState(successes=1))
    data = diff.to_dict()

    assert data["hp"] == {"initial": 20, "final": 11, "delta": -9, "max": 20}
    assert data["conditions"]["added"] == ["blinded"]
    assert data["conditions"]["removed"] == ["prone"]
    assert data["conditions"]["changed"] == ["poisoned"]
    assert data["resourceSlots"]["expended"] == {"1": 2}
    assert data["combat"]["damageTaken"] == 9
    assert data["deathSaves"]["successes"] == 1
    assert data["hasChanges"] is True


def test_merge_upserts_final_conditions_and_drops_removed() -> None:
    hero = _hero(hp=7)
    snapshot = capture_snapshot(_hero(), [ActiveCondition(condition="poisoned")])
    final = [ActiveCondition(condition="frightened", source="dragon")]
    diff = compute_diff(snapshot, hero, final)
    record = _record()

    merge_into_record(record, diff, final)

    assert record.hp == 7
    names = [c["condition"] for c in record.conditions]
    assert names == ["blessed", "frightened"]
    assert record.conditions[1]["source"] == "dragon"


def test_merge_can_leave_resource_slots_alone() -> None:
    hero = _hero()
    snapshot = capture_snapshot(hero, [])
    hero.resource_slots["1"].current = 0
    diff = compute_diff(snapshot, hero, [])
    record = _record()

    merge_into_record(record, diff, [], exclude_resource_slots=True)

    assert record.resource_slots["1"].current == 3


def test_commit_participant_dry_run_does_not_write() -> None:
    store = InMemoryCharacterStore()
    store.save(_record())
    hero = _hero()
    snapshot = capture_snapshot(hero, [])
    hero.hp = 5

    entry = commit_participant(store, compute_diff(snapshot, hero, []), [], dry_run=True)

    assert entry.status == "dry_run"
    assert (entry.hp_before, entry.hp_after) == (20, 5)
    assert store.get("char-1").hp == 20


def test_commit_participant_writes_record() -> None:
    store = InMemoryCharacterStore()
    store.save(_record())
    hero = _hero()
    snapshot = capture_snapshot(hero, [])
    hero.hp = 5
    hero.resource_slots["1"].current = 2

    entry = commit_participant(store, compute_diff(snapshot, hero, []), [])

    assert entry.status == "committed"
    record = store.get("char-1")
    assert record.hp == 5
    assert record.resource_slots["1"].current == 2


class _BrokenStore(InMemoryCharacterStore):
    @contextmanager
    def transaction(self, character_id: str):
        yield self.get(character_id)
        raise OSError("disk full")


def test_commit_participant_reports_failure_without_raising() -> None:
    store = _BrokenStore()
    store.save(_record())
    hero = _hero(hp=1)
    snapshot = capture_snapshot(_hero(), [])

    entry = commit_participant(store, compute_diff(snapshot, hero, []), [])

    assert entry.status == "failed"
    assert entry.error == "disk full"
    assert store.get("char-1").hp == 20


def test_snapshot_store_discard_prunes_encounter() -> None:
    snapshots = SnapshotStore()
    snapshots.capture("enc-1", capture_snapshot(_hero(), []))

    assert snapshots.has("enc-1") is True
    snapshots.discard("enc-1", "hero")
    assert snapshots.has("enc-1") is False
    assert snapshots.get("enc-1") == {}


def test_commit_report_summary_counts() -> None:
    report = CommitReport(encounter_id="enc-1", dry_run=False)

    data = report.to_dict()

    assert data["summary"] == {"committed": 0, "excluded": 0, "skipped": 0, "failed": 0}
    assert data["dryRun"] is False
