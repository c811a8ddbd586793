import pytest

fastapi = pytest.importorskip("fastapi")
pytest.importorskip("httpx")
from fastapi.testclient import TestClient

from encountersync.backend.api import create_app
from encountersync.backend.engine import EncounterEngine
from encountersync.backend.models import CharacterRecord, ResourcePool
from encountersync.backend.store import InMemoryCharacterStore


def _engine(dice) -> EncounterEngine:
    store = InMemoryCharacterStore()
    store.save(
        CharacterRecord(
            id="char-1",
            name="Hero",
            hp=22,
            max_hp=30,
            resource_slots={"1": ResourcePool(current=2, max=2)},
        )
    )
    return EncounterEngine(character_store=store, dice=dice)


def _create_payload(**overrides) -> dict:
    payload = {
        "encounterId": "enc-1",
        "participants": [
            {
                "id": "hero",
                "name": "Hero",
                "hp": 30,
                "maxHp": 30,
                "position": {"x": 0, "y": 0},
                "initiativeBonus": 5,
                "characterId": "char-1",
            },
            {
                "id": "goblin",
                "name": "Goblin",
                "hp": 7,
                "maxHp": 7,
                "ac": 13,
                "position": {"x": 1, "y": 0},
                "isEnemy": True,
            },
        ],
        "terrain": {"width": 10, "height": 8, "difficultTerrain": [{"x": 4, "y": 4}]},
    }
    payload.update(overrides)
    return payload


def test_post_encounters_returns_turn_order_and_state(dice) -> None:
    client = TestClient(create_app(engine=_engine(dice)))

    response = client.post("/api/encounters", json=_create_payload())

    assert response.status_code == 200
    data = response.json()
    assert data["encounterId"] == "enc-1"
    assert [entry["id"] for entry in data["turnOrder"]] == ["hero", "goblin"]
    assert data["state"]["entities"][0]["hp"] == 22
    assert data["state"]["terrain"]["difficultTerrain"] == [{"x": 4, "y": 4, "z": 0}]


def test_post_encounters_validates_payload(dice) -> None:
    client = TestClient(create_app(engine=_engine(dice)))

    empty = client.post("/api/encounters", json={"participants": []})
    outside = client.post(
        "/api/encounters",
        json=_create_payload(terrain={"width": 1, "height": 1}),
    )
    unknown = client.post(
        "/api/encounters",
        json={
            "participants": [
                {"id": "x", "name": "X", "hp": 1, "maxHp": 1, "position": {"x": 0, "y": 0}, "characterId": "nope"}
            ]
        },
    )

    assert empty.status_code == 422
    assert outside.status_code == 422
    assert outside.json()["error"]["code"] == "VALIDATION_ERROR"
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "NOT_FOUND"


def test_get_and_list_encounters(dice) -> None:
    client = TestClient(create_app(engine=_engine(dice)))
    client.post("/api/encounters", json=_create_payload())

    state = client.get("/api/encounters/enc-1")
    listing = client.get("/api/encounters")
    missing = client.get("/api/encounters/enc-404")

    assert state.status_code == 200
    assert state.json()["state"]["currentTurnId"] == "hero"
    assert listing.json()["encounters"][0]["encounterId"] == "enc-1"
    assert listing.json()["encounters"][0]["participantCount"] == 2
    assert missing.status_code == 404
    assert missing.json()["error"]["message"] == "Encounter not found: enc-404"


def test_actions_advance_and_conflicts(dice) -> None:
    client = TestClient(create_app(engine=_engine(dice)))
    client.post("/api/encounters", json=_create_payload())

    attack = client.post(
        "/api/encounters/enc-1/actions",
        json={"actionType": "attack", "actorId": "hero", "targetId": "goblin", "manualRoll": 16, "manualDamage": 4},
    )
    again = client.post(
        "/api/encounters/enc-1/actions",
        json={"actionType": "dodge", "actorId": "hero"},
    )
    advance = client.post("/api/encounters/enc-1/advance")

    assert attack.status_code == 200
    assert attack.json()["details"]["hit"] is True
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "STATE_CONFLICT"
    assert advance.json()["currentId"] == "goblin"
    assert advance.json()["round"] == 1


def test_condition_endpoint_accepts_single_and_batch(dice) -> None:
    client = TestClient(create_app(engine=_engine(dice)))
    client.post("/api/encounters", json=_create_payload())

    single = client.post(
        "/api/conditions",
        json={
            "operation": "add",
            "targetId": "goblin",
            "condition": "frightened",
            "encounterId": "enc-1",
            "saveDC": 14,
        },
    )
    batch = client.post(
        "/api/conditions",
        json={
            "batch": [
                {
                    "operation": "add",
                    "targetId": "hero",
                    "condition": "exhaustion",
                    "encounterId": "enc-1",
                    "exhaustionLevels": 2,
                },
                {"operation": "query", "targetId": "hero", "encounterId": "enc-1"},
            ]
        },
    )
    too_big = client.post(
        "/api/conditions",
        json={"batch": [{"operation": "query", "targetId": "hero"}] * 21},
    )

    assert single.status_code == 200
    assert single.json()["conditions"][0]["saveDC"] == 14
    assert batch.status_code == 200
    results = batch.json()["results"]
    assert results[1]["effectiveStats"]["speed"] == 15
    assert "Exhaustion 2: Speed ×0.5" in results[1]["effectiveStats"]["effects"]
    assert batch.json()["summary"]["succeeded"] == 2
    assert too_big.status_code == 422


def test_death_save_end_diff_and_commit(dice) -> None:
    client = TestClient(create_app(engine=_engine(dice)))
    client.post("/api/encounters", json=_create_payload())
    client.post(
        "/api/encounters/enc-1/actions",
        json={"actionType": "attack", "actorId": "goblin", "targetId": "hero", "manualRoll": 19, "manualDamage": 30},
    )

    save = client.post("/api/encounters/enc-1/death-saves", json={"participantId": "hero", "manualRoll": 20})
    diff = client.get("/api/encounters/enc-1/diff")
    ended = client.post("/api/encounters/enc-1/end", json={"outcome": "victory", "preserveLog": True})
    dry = client.post("/api/encounters/enc-1/commit", json={"dryRun": True})
    committed = client.post("/api/encounters/enc-1/commit", json={})
    repeat = client.post("/api/encounters/enc-1/commit", json={})

    assert save.json()["outcome"] == "revived"
    assert save.json()["hp"] == 1
    assert diff.json()["participantUpdates"][0]["hp"]["final"] == 1
    assert ended.json()["commitRequired"] is True
    assert ended.json()["participants"][1]["status"] == "alive"
    assert dry.json()["committed"][0]["status"] == "dry_run"
    assert committed.json()["summary"]["committed"] == 1
    assert committed.json()["skipped"][0]["status"] == "ephemeral"
    assert repeat.status_code == 409
    assert repeat.json()["error"]["code"] == "NOT_PRESERVED"


def test_commit_after_unpreserved_end_reports_not_preserved(dice) -> None:
    client = TestClient(create_app(engine=_engine(dice)))
    client.post("/api/encounters", json=_create_payload())

    client.post("/api/encounters/enc-1/end", json={"outcome": "fled"})
    response = client.post("/api/encounters/enc-1/commit", json={})

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "NOT_PRESERVED"


def test_websocket_subscribe_receives_state_then_attack_deltas(dice) -> None:
    app = create_app(engine=_engine(dice))

    with TestClient(app) as client:
        client.post("/api/encounters", json=_create_payload())
        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "subscribe", "encounterId": "enc-1"})
            subscribed = websocket.receive_json()

            client.post(
                "/api/encounters/enc-1/actions",
                json={
                    "actionType": "attack",
                    "actorId": "hero",
                    "targetId": "goblin",
                    "manualRoll": 18,
                    "manualDamage": 3,
                },
            )
            first = websocket.receive_json()
            second = websocket.receive_json()

    assert subscribed["type"] == "subscribed"
    assert subscribed["state"]["encounterId"] == "enc-1"
    assert first["type"] == "delta"
    assert first["delta"]["type"] == "attackResult"
    assert second["delta"]["type"] == "hpChanged"
    assert second["delta"]["currentHp"] == 4


def test_websocket_replies_with_errors_and_keeps_listening(dice) -> None:
    app = create_app(engine=_engine(dice))

    with TestClient(app) as client:
        with client.websocket_connect("/ws") as websocket:
            websocket.send_text("not json")
            parse_error = websocket.receive_json()
            websocket.send_json({"type": "subscribe", "encounterId": "enc-404"})
            missing = websocket.receive_json()
            websocket.send_json({"type": "ping"})
            pong = websocket.receive_json()

    assert parse_error["type"] == "error"
    assert parse_error["message"].startswith("Could not parse message")
    assert missing == {"type": "error", "message": "Encounter not found: enc-404"}
    assert pong == {"type": "pong"}


def test_websocket_unsubscribe_removes_the_directory_entry(dice) -> None:
    app = create_app(engine=_engine(dice))

    with TestClient(app) as client:
        client.post("/api/encounters", json=_create_payload())
        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "subscribe", "encounterId": "enc-1"})
            websocket.receive_json()
            subscribed_count = app.state.broadcaster.directory.subscriber_count("enc-1")
            websocket.send_json({"type": "unsubscribe", "encounterId": "enc-1"})
            reply = websocket.receive_json()

    assert subscribed_count == 1
    assert reply == {"type": "unsubscribed", "encounterId": "enc-1"}
    assert app.state.broadcaster.directory.has_entry("enc-1") is False


def test_out_of_range_rolls_and_bad_damage_are_rejected_without_spending_the_action(dice) -> None:
    client = TestClient(create_app(engine=_engine(dice)))
    client.post("/api/encounters", json=_create_payload())
    attack = {"actionType": "attack", "actorId": "hero", "targetId": "goblin"}

    too_high = client.post("/api/encounters/enc-1/actions", json={**attack, "manualRoll": 25})
    too_low = client.post("/api/encounters/enc-1/actions", json={**attack, "manualDefenderRoll": 0})
    bad_damage = client.post("/api/encounters/enc-1/actions", json={**attack, "manualRoll": 15, "damage": "lots"})
    valid = client.post("/api/encounters/enc-1/actions", json={**attack, "manualRoll": 15, "manualDamage": 2})

    assert too_high.status_code == 422
    assert too_low.status_code == 422
    assert bad_damage.status_code == 422
    assert bad_damage.json()["error"]["code"] == "VALIDATION_ERROR"
    assert valid.status_code == 200
    assert valid.json()["details"]["hit"] is True


def test_websocket_subscribe_does_not_block_other_clients_while_the_engine_is_busy(dice) -> None:
    engine = _engine(dice)
    app = create_app(engine=engine)

    with TestClient(app) as client:
        client.post("/api/encounters", json=_create_payload())
        with client.websocket_connect("/ws") as waiting, client.websocket_connect("/ws") as other:
            busy = engine._lock("enc-1")
            busy.acquire()
            try:
                waiting.send_json({"type": "subscribe", "encounterId": "enc-1"})
                other.send_json({"type": "ping"})
                pong = other.receive_json()
            finally:
                busy.release()
            subscribed = waiting.receive_json()

    assert pong == {"type": "pong"}
    assert subscribed["type"] == "subscribed"
    assert subscribed["state"]["encounterId"] == "enc-1"
