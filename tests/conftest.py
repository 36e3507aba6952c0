# tests/conftest.py
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from loguru import logger

BASE = datetime(2025, 11, 10, 10, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def disable_file_logger():
    logger.remove()
    logger.add(lambda msg: None)
    yield


class FakeClock:
    """Stands in for time.monotonic so wall time only moves when a test says so."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def at(seconds: float) -> datetime:
    return BASE + timedelta(seconds=seconds)


def rec(seconds: float, kind: str = "location_ping", **fields) -> dict:
    return {"timestamp": at(seconds).isoformat(), "event_type": kind, **fields}


@pytest.fixture
def scenario_log() -> list:
    """t=0 start, t=4 ping, t=10 complete."""
    return [
        rec(0, "trip_started", event_id="start", trip_id="trip_1"),
        rec(4, "location_ping", event_id="ping", trip_id="trip_1"),
        rec(10, "trip_completed", event_id="complete", trip_id="trip_1"),
    ]


@pytest.fixture
def trip_dir(tmp_path: Path) -> Path:
    """
    /trips/
        trip_a.json  3 pings, completed
        trip_b.json  1 ping, cancelled
    """
    d = tmp_path / "trips"
    d.mkdir()
    a = [
        rec(0, "location_ping", trip_id="trip_a", location={"lat": 1.0, "lng": 2.0}, movement={"speed_kmh": 10}),
        rec(2, "location_ping", trip_id="trip_a", location={"lat": 1.1, "lng": 2.1}, movement={"speed_kmh": 20}),
        rec(4, "location_ping", trip_id="trip_a", location={"lat": 1.2, "lng": 2.2}, movement={"speed_kmh": 30}),
        rec(6, "trip_completed", trip_id="trip_a"),
    ]
    b = [
        rec(1, "location_ping", trip_id="trip_b", location={"lat": 5.0, "lng": 6.0}, movement={"speed_kmh": 50}),
        rec(3, "trip_cancelled", trip_id="trip_b", cancellation_reason="breakdown"),
    ]
    (d / "trip_a.json").write_text(json.dumps(a), encoding="utf-8")
    (d / "trip_b.json").write_text(json.dumps(b), encoding="utf-8")
    return d
