import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from loguru import logger

from models import TripEvent
from player import coerce_events


@dataclass
class Trip:
    trip_id: str
    filename: str
    events: List[TripEvent] = field(default_factory=list)

    @property
    def pings(self) -> List[TripEvent]:
        return [e for e in self.events if e.event_type == "location_ping"]


def load_trip_file(path: Path) -> Optional[Trip]:
    """
    Load one trip file. Format: a JSON array of event objects, e.g.
    [
      {"event_id": "...", "event_type": "location_ping", "timestamp": "2025-11-10T10:45:15Z",
       "trip_id": "trip_1", "vehicle_id": "VH_001",
       "location": {"lat": 40.7, "lng": -74.0}, "movement": {"speed_kmh": 62.5}},
      ...
    ]
    Returns None if the file is missing or not a JSON array.
    """
    path = Path(path)
    if not path.exists():
        logger.error("trip file {} not found", path)
        return None
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.error("failed to load {}: {}", path.name, e)
        return None
    if not isinstance(raw, list):
        logger.error("failed to load {}: expected a JSON array, got {}", path.name, type(raw).__name__)
        return None

    first = raw[0] if raw and isinstance(raw[0], dict) else {}
    trip_id = first.get("trip_id") or f"trip_{path.name}"
    events = coerce_events(raw)
    if len(events) < len(raw):
        logger.warning("{}: kept {}/{} records", path.name, len(events), len(raw))
    return Trip(trip_id=trip_id, filename=path.name, events=events)


def load_trips(folder, files: Optional[Iterable[str]] = None) -> List[Trip]:
    """Load the named files from folder (every *.json when files is empty)."""
    folder = Path(folder)
    names = list(files or [])
    if not names:
        names = sorted(p.name for p in folder.glob("*.json"))
    trips = []
    for name in names:
        trip = load_trip_file(folder / name)
        if trip is not None:
            trips.append(trip)
    logger.info("loaded {}/{} trip files from {}", len(trips), len(names), folder)
    return trips


def merge_events(trips: Iterable[Trip]) -> List[TripEvent]:
    merged = [e for t in trips for e in t.events]
    merged.sort(key=lambda e: e.timestamp)
    return merged
