import pytest

from encountersync.backend.errors import StateConflictError
from encountersync.backend.tracker import ActionCost, TurnActionStore, TurnActionTracker


def test_spent_action_cannot_be_used_again() -> None:
    tracker = TurnActionTracker(actor_id="a")

    tracker.ensure_available(ActionCost.ACTION)
    tracker.spend(ActionCost.ACTION)

    with pytest.raises(StateConflictError):
        tracker.ensure_available(ActionCost.ACTION)
    tracker.ensure_available(ActionCost.BONUS_ACTION)
    tracker.ensure_available(ActionCost.FREE)


def test_reaction_is_tracked_separately() -> None:
    tracker = TurnActionTracker(actor_id="a")
    tracker.spend(ActionCost.REACTION)

    with pytest.raises(StateConflictError):
        tracker.ensure_available(ActionCost.REACTION)
    assert tracker.action_used is False


def test_movement_budget_doubles_after_dash() -> None:
    tracker = TurnActionTracker(actor_id="a", movement_used=10)

    assert tracker.movement_budget(30) == 20
    tracker.has_dashed = True
    assert tracker.movement_budget(30) == 50


def test_end_turn_drops_tracker_and_its_dodge() -> None:
    store = TurnActionStore()
    tracker = store.get_or_create("enc-1", "a")
    tracker.is_dodging = True
    tracker.action_used = True

    assert store.is_dodging("enc-1", "a") is True

    store.end_turn("enc-1", "a")

    assert store.peek("enc-1", "a") is None
    assert store.is_dodging("enc-1", "a") is False
    assert store.get_or_create("enc-1", "a").action_used is False


def test_clear_encounter_only_touches_that_encounter() -> None:
    store = TurnActionStore()
    store.get_or_create("enc-1", "a")
    store.get_or_create("enc-2", "a")

    store.clear_encounter("enc-1")

    assert store.peek("enc-1", "a") is None
    assert store.peek("enc-2", "a") is not None
