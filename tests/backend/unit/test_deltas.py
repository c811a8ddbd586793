import pytest

from encountersync.backend.deltas import (
    AttackResult,
    DeltaMessage,
    EntityMoved,
    GridPoint,
    HpChanged,
    MessageError,
    PingMessage,
    SubscribeMessage,
    TurnChanged,
    parse_client_message,
    parse_delta,
)
from encountersync.backend.models import Position


def test_entity_moved_serializes_from_and_camel_case() -> None:
    delta = EntityMoved(entity_id="a", from_=GridPoint.of(Position(1, 2)), to=GridPoint(x=2, y=2))

    assert delta.to_wire() == {
        "type": "entityMoved",
        "entityId": "a",
        "from": {"x": 1, "y": 2, "z": 0},
        "to": {"x": 2, "y": 2, "z": 0},
    }


def test_optional_fields_are_omitted() -> None:
    delta = HpChanged(entity_id="a", previous_hp=10, current_hp=4, max_hp=10, damage=6)

    assert delta.to_wire() == {
        "type": "hpChanged",
        "entityId": "a",
        "previousHp": 10,
        "currentHp": 4,
        "maxHp": 10,
        "damage": 6,
    }
    assert AttackResult(attacker_id="a", target_id="b", hit=False).to_wire() == {
        "type": "attackResult",
        "attackerId": "a",
        "targetId": "b",
        "hit": False,
    }


def test_delta_message_wraps_delta() -> None:
    delta = TurnChanged(previous_entity_id="a", current_entity_id="b", round=2)

    message = DeltaMessage(encounter_id="enc-1", delta=delta).to_wire()

    assert message["type"] == "delta"
    assert message["encounterId"] == "enc-1"
    assert message["delta"] == {"type": "turnChanged", "previousEntityId": "a", "currentEntityId": "b", "round": 2}


def test_parse_delta_picks_variant_by_type() -> None:
    delta = parse_delta({"type": "conditionRemoved", "entityId": "a", "condition": "prone"})

    assert delta.condition == "prone"
    assert delta.entity_id == "a"


def test_parse_client_message_accepts_known_types() -> None:
    subscribe = parse_client_message('{"type": "subscribe", "encounterId": "enc-1"}')
    ping = parse_client_message('{"type": "ping"}')

    assert isinstance(subscribe, SubscribeMessage)
    assert subscribe.encounter_id == "enc-1"
    assert isinstance(ping, PingMessage)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("", "Empty message"),
        ("   ", "Empty message"),
        (None, "Empty message"),
        ("{not json", "Could not parse message"),
        ("[1, 2]", "Could not parse message"),
        ('{"type": "shout"}', "Unknown message type: shout"),
        ('{"type": "subscribe"}', "Invalid subscribe message"),
        ('{"type": "unsubscribe", "encounterId": ""}', "Invalid unsubscribe message"),
    ],
)
def test_parse_client_message_rejects_malformed_input(raw, expected: str) -> None:
    with pytest.raises(MessageError) as excinfo:
        parse_client_message(raw)

    assert str(excinfo.value).startswith(expected)
