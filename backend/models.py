from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from typing import Any, Dict, Literal, Optional
from datetime import datetime, timezone
import time, uuid

EventSource = Literal["player", "chat", "dataset"]
EventType = Literal[
    "tick", "trip_event", "player_state",
    "query_result", "clarify", "error"
]

_DATETIME = TypeAdapter(datetime)


def to_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken as UTC; aware ones are converted."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Accepts a datetime, an ISO-8601 string or an epoch number (seconds or
    milliseconds, pydantic decides by magnitude). Returns None when unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        return to_utc(_DATETIME.validate_python(value))
    except ValidationError:
        return None


# ---------- Trip telemetry ----------

class Location(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")
    lat: float
    lng: float


class Movement(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")
    speed_kmh: Optional[float] = None
    heading_degrees: Optional[float] = None


class TripEvent(BaseModel):
    """One recorded telemetry record. Immutable once ingested."""
    model_config = ConfigDict(frozen=True, extra="allow")

    timestamp: datetime
    event_type: str
    event_id: Optional[str] = None
    trip_id: Optional[str] = None
    vehicle_id: Optional[str] = None
    location: Optional[Location] = None
    movement: Optional[Movement] = None
    signal_quality: Optional[str] = None
    cancellation_reason: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return to_utc(v)

    @property
    def speed_kmh(self) -> Optional[float]:
        return self.movement.speed_kmh if self.movement else None


class PlayerState(BaseModel):
    simulated_time: datetime
    speed: float
    running: bool
    cursor: int
    total: int
    exhausted: bool
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


# ---------- Hub envelope ----------

class Event(BaseModel):
    id: str = Field(default_factory=lambda: f"evt_{uuid.uuid4().hex[:8]}")
    ts: int = Field(default_factory=lambda: int(time.time() * 1000))
    seq: int = 0
    source: EventSource = "player"
    type: EventType
    payload: Dict[str, Any] = {}
    version: int = 1
