from encountersync.backend.death_saves import (
    DeathSaveOutcome,
    DeathSaveState,
    DeathSaveStore,
    apply_damage_at_zero,
    evaluate_death_save,
)


def test_natural_twenty_revives_and_resets() -> None:
    state = DeathSaveState(successes=1, failures=2)

    outcome, _ = evaluate_death_save(state, natural=20)

    assert outcome == DeathSaveOutcome.REVIVED
    assert (state.successes, state.failures) == (0, 0)


def test_natural_one_adds_two_failures() -> None:
    fresh = DeathSaveState()
    wounded = DeathSaveState(failures=1)

    fresh_outcome, _ = evaluate_death_save(fresh, natural=1)
    wounded_outcome, _ = evaluate_death_save(wounded, natural=1)

    assert fresh_outcome == DeathSaveOutcome.CONTINUE
    assert fresh.failures == 2
    assert wounded_outcome == DeathSaveOutcome.DEAD
    assert wounded.is_dead is True
    assert wounded.failures == 3


def test_total_of_ten_succeeds_and_modifier_counts() -> None:
    state = DeathSaveState()

    evaluate_death_save(state, natural=10)
    evaluate_death_save(state, natural=8, modifier=2)
    evaluate_death_save(state, natural=9)

    assert state.successes == 2
    assert state.failures == 1


def test_third_success_stabilizes_and_further_rolls_are_no_ops() -> None:
    state = DeathSaveState(successes=2)

    outcome, _ = evaluate_death_save(state, natural=15)
    repeat, description = evaluate_death_save(state, natural=20)

    assert outcome == DeathSaveOutcome.STABILIZED
    assert state.is_stable is True
    assert repeat == DeathSaveOutcome.NO_OP
    assert description == "Already stable"
    assert state.successes == 3


def test_third_failure_kills() -> None:
    state = DeathSaveState(failures=2)

    outcome, _ = evaluate_death_save(state, natural=4)
    repeat, description = evaluate_death_save(state, natural=20)

    assert outcome == DeathSaveOutcome.DEAD
    assert repeat == DeathSaveOutcome.NO_OP
    assert description == "Already dead"


def test_damage_at_zero_adds_failures() -> None:
    state = DeathSaveState()

    apply_damage_at_zero(state)
    outcome = apply_damage_at_zero(state, critical=True)

    assert state.failures == 3
    assert outcome == DeathSaveOutcome.DEAD


def test_damage_restarts_dying_for_stable_creature() -> None:
    state = DeathSaveState(successes=3, is_stable=True)

    outcome = apply_damage_at_zero(state)

    assert outcome == DeathSaveOutcome.CONTINUE
    assert state.is_stable is False
    assert state.successes == 0
    assert state.failures == 1


def test_store_keys_records_per_encounter() -> None:
    store = DeathSaveStore()
    first = store.get_or_create("enc-1", "a")
    first.failures = 2

    assert store.get_or_create("enc-1", "a") is first
    assert store.get("enc-2", "a") is None

    store.get_or_create("enc-2", "a")
    store.clear_encounter("enc-1")

    assert store.get("enc-1", "a") is None
    assert store.get("enc-2", "a") is not None
