from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

import main
from conftest import at
from settings import Settings


@pytest.fixture
def client(monkeypatch, trip_dir):
    """
    App wired to the two-trip fixture folder; lifespan runs on enter.
    """
    settings = Settings(TRIP_DIR=str(trip_dir), TRIP_FILES=[], TICK_INTERVAL_MS=50)
    monkeypatch.setattr(main, "SETTINGS", settings)
    with TestClient(main.app) as c:
        yield c


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True
    assert resp.json()["events"] == 6


def test_player_initial_state(client):
    state = client.get("/player").json()["state"]
    assert state["cursor"] == 0
    assert state["total"] == 6
    assert state["running"] is False
    assert state["exhausted"] is False


def test_play_then_pause(client):
    state = client.post("/player/play", json={"speed": 2}).json()["state"]
    assert state["running"] is True
    assert state["speed"] == 2
    state = client.post("/player/pause").json()["state"]
    assert state["running"] is False


def test_play_without_body(client):
    assert client.post("/player/play").json()["state"]["running"] is True
    client.post("/player/pause")


def test_step_feeds_fleet_view(client):
    out = client.post("/player/step").json()
    assert out["event"]["trip_id"] == "trip_a"
    assert out["state"]["cursor"] == 1

    fleet = client.get("/fleet").json()
    a = next(t for t in fleet["trips"] if t["trip_id"] == "trip_a")
    assert a["count"] == 1
    assert a["latest_speed"] == 10
    assert fleet["positions"]["trip_a"] == {"lat": 1.0, "lng": 2.0}

    activity = client.get("/fleet/activity").json()["activity"]
    assert len(activity) == 1


def test_step_until_exhausted(client):
    for _ in range(6):
        assert client.post("/player/step").json()["event"] is not None
    out = client.post("/player/step").json()
    assert out["event"] is None
    assert out["state"]["exhausted"] is True
    kpis = client.get("/fleet").json()["kpis"]
    assert kpis == {"total": 2, "completed": 1, "cancelled": 1, "pct50": 1, "pct80": 1}


def test_seek(client):
    state = client.post("/player/seek", json={"timestamp": at(3).isoformat()}).json()["state"]
    assert state["cursor"] == 4
    assert state["simulated_time"].startswith("2025-11-10T10:00:03")


def test_backward_seek_resets_fleet_view(client):
    client.post("/player/step")
    client.post("/player/step")
    client.post("/player/seek", json={"timestamp": at(-1).isoformat()})
    assert client.get("/fleet").json()["kpis"]["total"] == 2
    assert client.get("/fleet/activity").json()["activity"] == []


def test_seek_rebuilds_fleet_view_behind_cursor(client):
    for _ in range(5):
        client.post("/player/step")
    state = client.post("/player/seek", json={"timestamp": at(3).isoformat()}).json()["state"]
    assert state["cursor"] == 4

    fleet = client.get("/fleet").json()
    counts = {t["trip_id"]: t["count"] for t in fleet["trips"]}
    assert counts == {"trip_a": 2, "trip_b": 1}
    assert fleet["positions"]["trip_a"] == {"lat": 1.1, "lng": 2.1}
    assert fleet["kpis"] == {"total": 2, "completed": 0, "cancelled": 1, "pct50": 1, "pct80": 0}
    assert len(client.get("/fleet/activity").json()["activity"]) == 4

    out = client.post("/command", json={"text": "where is trip_a"}).json()
    assert out["events"][0]["payload"]["answer"] == {"lat": 1.1, "lng": 2.1}


def test_forward_seek_folds_skipped_events(client):
    client.post("/player/seek", json={"timestamp": at(3).isoformat()})
    fleet = client.get("/fleet").json()
    assert fleet["positions"] == {"trip_a": {"lat": 1.1, "lng": 2.1}, "trip_b": {"lat": 5.0, "lng": 6.0}}
    assert fleet["kpis"]["cancelled"] == 1


def test_invalid_requests(client):
    resp = client.post("/player/seek", json={"timestamp": "soon"})
    assert resp.status_code == 400
    assert resp.json()["events"][0]["type"] == "error"

    resp = client.post("/player/speed", json={"speed": -3})
    assert resp.status_code == 400

    for bad in ("fast", -1, True):
        resp = client.post("/player/play", json={"speed": bad})
        assert resp.status_code == 400
        assert resp.json()["ok"] is False
    assert client.get("/player").json()["state"]["running"] is False

    resp = client.post("/command", json={"text": ""})
    assert resp.status_code == 400


def test_speed(client):
    state = client.post("/player/speed", json={"speed": 5}).json()["state"]
    assert state["speed"] == 5


def test_reset(client):
    client.post("/player/step")
    state = client.post("/player/reset").json()["state"]
    assert state["cursor"] == 0
    assert client.get("/fleet/activity").json()["activity"] == []


def test_command_controls_player(client):
    evt = client.post("/command", json={"text": "step"}).json()["events"][0]
    assert evt["type"] == "player_state"
    assert evt["payload"]["cursor"] == 1

    evt = client.post("/command", json={"text": "where is trip_a"}).json()["events"][0]
    assert evt["type"] == "query_result"
    assert evt["payload"]["answer"] == {"lat": 1.0, "lng": 2.0}

    evt = client.post("/command", json={"text": "status trip_a"}).json()["events"][0]
    assert evt["payload"]["answer"]["trip_a"]["count"] == 1

    evt = client.post("/command", json={"text": "dance"}).json()["events"][0]
    assert evt["type"] == "clarify"


def test_dataset_reload_replaces_player(client):
    client.post("/player/step")
    out = client.post("/dataset/reload").json()
    assert out["trips"] == ["trip_a", "trip_b"]
    assert out["events"] == 6
    assert client.get("/player").json()["state"]["cursor"] == 0


def test_hub_orders_envelopes(client):
    before = main.hub.seq
    client.post("/player/step")
    ring = main.hub.ring[-2:]
    assert [e.type for e in ring] == ["trip_event", "player_state"]
    assert ring[0].seq == before + 1
    assert ring[1].seq == before + 2


def test_websocket_receives_broadcast(client):
    with client.websocket_connect("/events/ws") as ws:
        client.post("/player/step")
        msg = ws.receive_json()
        assert msg["type"] == "trip_event"
        assert msg["payload"]["trip_id"] == "trip_a"


def test_trip_files_are_served_under_trips():
    assert any(getattr(r, "path", None) == "/trips" for r in main.app.routes)
