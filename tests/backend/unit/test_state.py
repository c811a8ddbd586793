from encountersync.backend.conditions import ActiveCondition, ConditionStore
from encountersync.backend.death_saves import DeathSaveStore
from encountersync.backend.models import Encounter, EncounterOutcome, Participant, Position, Terrain
from encountersync.backend.state import build_battlefield_state, build_encounter_summary, entity_symbol


def _participant(participant_id: str, name: str, **overrides) -> Participant:
    values = {
        "id": participant_id,
        "name": name,
        "hp": 12,
        "max_hp": 12,
        "ac": 13,
        "initiative": 10,
        "initiative_bonus": 0,
        "position": Position(0, 0),
    }
    values.update(overrides)
    return Participant(**values)


def _encounter() -> Encounter:
    return Encounter(
        id="enc-1",
        participants=[
            _participant("hero", "alice", character_id="char-1", position=Position(1, 1)),
            _participant("gob", "goblin", is_enemy=True, hp=0, position=Position(3, 1)),
            _participant("orc", "Orc", is_enemy=True, hp=0, position=Position(4, 1)),
            _participant("wolf", "Wolf", is_enemy=True, hp=0, position=Position(5, 1)),
        ],
        terrain=Terrain(width=8, height=6),
    )


def test_entity_symbol_uses_case_for_side() -> None:
    assert entity_symbol("alice", is_enemy=False) == "A"
    assert entity_symbol("Goblin", is_enemy=True) == "g"
    assert entity_symbol("", is_enemy=False) == "?"


def test_battlefield_state_lists_entities_in_turn_order() -> None:
    encounter = _encounter()
    conditions = ConditionStore()
    conditions.add("char-1", ActiveCondition(condition="poisoned"))
    death_saves = DeathSaveStore()
    death_saves.get_or_create("enc-1", "orc").is_dead = True
    death_saves.get_or_create("enc-1", "wolf").is_stable = True

    state = build_battlefield_state(encounter, conditions, death_saves)

    assert state["encounterId"] == "enc-1"
    assert state["round"] == 1
    assert state["currentTurnId"] == "hero"
    assert state["turnOrder"] == ["hero", "gob", "orc", "wolf"]
    assert state["status"] == "active"
    assert state["lighting"] == "bright"
    assert state["terrain"]["width"] == 8
    assert "outcome" not in state

    hero, gob, orc, wolf = state["entities"]
    assert hero["symbol"] == "A"
    assert hero["isCurrentTurn"] is True
    assert hero["conditions"] == ["poisoned"]
    assert hero["position"] == {"x": 1, "y": 1, "z": 0}
    assert hero["status"] == "alive"
    assert gob["symbol"] == "g"
    assert gob["status"] == "unconscious"
    assert orc["status"] == "dead"
    assert wolf["status"] == "stable"


def test_battlefield_state_includes_outcome_once_ended() -> None:
    encounter = _encounter()
    encounter.outcome = EncounterOutcome.VICTORY

    state = build_battlefield_state(encounter, ConditionStore(), DeathSaveStore())

    assert state["outcome"] == "victory"


def test_encounter_summary_reports_current_turn() -> None:
    encounter = _encounter()
    encounter.current_turn_index = 2
    encounter.round = 3

    summary = build_encounter_summary(encounter).to_dict()

    assert summary["encounterId"] == "enc-1"
    assert summary["round"] == 3
    assert summary["currentTurnId"] == "orc"
    assert summary["participantCount"] == 4
    assert summary["status"] == "active"
    assert summary["preserved"] is False
