from __future__ import annotations

import uuid

from fastapi.testclient import TestClient

from taleturn.db import session as db_session
from taleturn.main import create_app
from taleturn.modules.ledger.service import REASON_GUEST_STARTER, REASON_TURN_SPEND, ResourceLedger
from taleturn.modules.llm.providers.fake import FakeProvider
from tests.support.pipeline import Hang, ScriptedProvider, bundle_payload, make_deps


def _client(provider=None, *, guest_id: str | None = "guest-42", timeout_s: float = 30.0):
    deps = make_deps(provider or FakeProvider(), timeout_s=timeout_s)
    cookies = {"guestId": guest_id} if guest_id else None
    return TestClient(create_app(pipeline=deps), cookies=cookies), deps


def _create_session(client: TestClient, headers: dict | None = None) -> dict:
    res = client.post(
        "/sessions",
        json={"world_ref": "mystika", "entry_point_ref": "ferry_dock", "character_summary": "A wary ranger."},
        headers=headers or {},
    )
    assert res.status_code == 201, res.text
    return res.json()


def _turn(client: TestClient, session_id: str, key: str | None, body: dict, headers: dict | None = None):
    merged = dict(headers or {})
    if key is not None:
        merged["Idempotency-Key"] = key
    return client.post(f"/sessions/{session_id}/turn", json=body, headers=merged)


def test_guest_session_starts_with_starter_balance() -> None:
    client, _ = _client()
    sess = _create_session(client)

    assert sess["is_guest"] is True
    assert sess["owner_id"] == "guest-42"
    assert sess["balance"] == 15
    assert sess["turn_count"] == 0
    assert sess["state_json"]["current_scene"] == "ferry_dock"
    assert sess["state_json"]["character_summary"] == "A wary ranger."


def test_turn_round_trip_updates_session_and_wallet() -> None:
    client, _ = _client()
    sess = _create_session(client)

    res = _turn(client, sess["id"], "k-1", {"input_text": "ask the ferryman about the fog"})
    assert res.status_code == 200, res.text
    body = res.json()
    assert body["turn_number"] == 1
    assert body["balance_after"] == 13
    assert "ask the ferryman about the fog" in body["narrative"]
    assert [choice["id"] for choice in body["choices"]] == ["press_on", "look_closer"]

    fetched = client.get(f"/sessions/{sess['id']}").json()
    assert fetched["turn_count"] == 1
    assert fetched["balance"] == 13
    assert fetched["state_json"]["flags"] == {"visited_ferry_dock": True}

    wallet = client.get("/wallet").json()
    assert wallet["balance"] == 13
    assert {entry["reason"] for entry in wallet["entries"]} == {REASON_GUEST_STARTER, REASON_TURN_SPEND}


def test_replayed_key_returns_same_turn_without_charging() -> None:
    client, deps = _client()
    sess = _create_session(client)

    first = _turn(client, sess["id"], "k-1", {"option_id": "press_on"})
    second = _turn(client, sess["id"], "k-1", {"option_id": "press_on"})

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json() == first.json()
    assert client.get("/wallet").json()["balance"] == 13
    assert deps.telemetry.summary()["turns_replayed"] == 1


def test_missing_idempotency_key_is_400() -> None:
    client, _ = _client()
    sess = _create_session(client)

    res = _turn(client, sess["id"], None, {"input_text": "hello"})

    assert res.status_code == 400
    assert res.json()["detail"]["code"] == "VALIDATION_FAILED"


def test_exactly_one_of_option_or_input_is_required() -> None:
    client, _ = _client()
    sess = _create_session(client)

    both = _turn(client, sess["id"], "k-1", {"option_id": "press_on", "input_text": "and talk"})
    neither = _turn(client, sess["id"], "k-2", {})

    assert both.status_code == 422
    assert both.json()["detail"]["code"] == "VALIDATION_FAILED"
    assert neither.status_code == 422
    assert neither.json()["detail"]["code"] == "VALIDATION_FAILED"
    assert client.get("/wallet").json()["balance"] == 15


def test_unidentified_caller_is_401() -> None:
    client, _ = _client(guest_id=None)

    res = client.post("/sessions", json={"world_ref": "mystika"})

    assert res.status_code == 401
    assert res.json()["detail"]["code"] == "UNAUTHORIZED"


def test_other_owner_cannot_see_or_play_session() -> None:
    client, _ = _client()
    sess = _create_session(client)
    intruder = {"X-Owner-Id": "someone-else"}

    assert client.get(f"/sessions/{sess['id']}", headers=intruder).status_code == 404
    res = _turn(client, sess["id"], "k-1", {"input_text": "steal the boat"}, headers=intruder)
    assert res.status_code == 404
    assert res.json()["detail"]["code"] == "NOT_FOUND"
    assert client.get(f"/sessions/{uuid.uuid4()}").status_code == 404


def test_unfunded_owner_gets_402() -> None:
    client, _ = _client(guest_id=None)
    headers = {"X-Owner-Id": "player-7"}
    sess = _create_session(client, headers=headers)
    assert sess["balance"] == 0

    res = _turn(client, sess["id"], "k-1", {"input_text": "look"}, headers=headers)

    assert res.status_code == 402
    assert res.json()["detail"]["code"] == "INSUFFICIENT_RESOURCE"


def test_funded_owner_can_play() -> None:
    client, _ = _client(guest_id=None)
    headers = {"X-Owner-Id": "player-8"}
    sess = _create_session(client, headers=headers)
    with db_session.SessionLocal() as db:
        ResourceLedger().credit(db, "player-8", amount=4, reason="TEST_GRANT")
        db.commit()

    res = _turn(client, sess["id"], "k-1", {"input_text": "look"}, headers=headers)

    assert res.status_code == 200
    assert res.json()["balance_after"] == 2


def test_generation_timeout_is_504_and_not_charged() -> None:
    client, _ = _client(ScriptedProvider([Hang(5.0)]), timeout_s=0.05)
    sess = _create_session(client)

    res = _turn(client, sess["id"], "k-1", {"input_text": "wait"})

    assert res.status_code == 504
    assert res.json()["detail"]["code"] == "UPSTREAM_TIMEOUT"
    assert client.get("/wallet").json()["balance"] == 15


def test_turn_history_is_paginated() -> None:
    client, _ = _client()
    sess = _create_session(client)
    for index in range(3):
        assert _turn(client, sess["id"], f"k-{index}", {"input_text": f"step {index}"}).status_code == 200

    page = client.get(f"/sessions/{sess['id']}/turns", params={"limit": 2}).json()
    assert [turn["turn_number"] for turn in page["turns"]] == [1, 2]
    assert page["has_more"] is True
    assert page["next_after_turn"] == 2
    assert [turn["balance_after"] for turn in page["turns"]] == [13, 11]

    rest = client.get(f"/sessions/{sess['id']}/turns", params={"after_turn": 2, "limit": 2}).json()
    assert [turn["turn_number"] for turn in rest["turns"]] == [3]
    assert rest["has_more"] is False
    assert rest["next_after_turn"] is None


def test_telemetry_summary_endpoint() -> None:
    client, _ = _client(ScriptedProvider([bundle_payload(), "garbage", "garbage"]))
    sess = _create_session(client)
    _turn(client, sess["id"], "k-1", {"input_text": "first"})
    _turn(client, sess["id"], "k-2", {"input_text": "second"})

    summary = client.get("/telemetry/summary").json()

    assert summary["turns_created"] == 1
    assert summary["turns_failed"] == 1
    assert summary["errors_by_code"] == {"VALIDATION_FAILED": 1}
    assert summary["avg_turn_latency_ms"] > 0
