from collections import deque
from typing import Any, Deque, Dict, Iterable, List, Optional

from loguru import logger
from pydantic import BaseModel, Field

from models import TripEvent
from trips import Trip

PING = "location_ping"
COMPLETED = "trip_completed"
CANCELLED = "trip_cancelled"


class TripSummary(BaseModel):
    trip_id: str
    filename: Optional[str] = None
    total_pings: int = 0          # pings in the whole recording, not just delivered
    count: int = 0
    completed: bool = False
    cancelled: bool = False
    progress: int = 0
    latest: Optional[TripEvent] = None
    speeds: List[float] = Field(default_factory=list)

    @property
    def status(self) -> str:
        if self.cancelled:
            return "CANCELLED"
        if self.completed:
            return "COMPLETED"
        return "IN PROGRESS"

    def view(self) -> Dict[str, Any]:
        latest = self.latest
        return {
            "trip_id": self.trip_id,
            "filename": self.filename,
            "count": self.count,
            "progress": self.progress,
            "status": self.status,
            "completed": self.completed,
            "cancelled": self.cancelled,
            "latest_speed": latest.speed_kmh if latest else None,
            "signal_quality": latest.signal_quality if latest else None,
            "location": latest.location.model_dump() if latest and latest.location else None,
            "speeds": list(self.speeds),
        }


class FleetState:
    """
    Running per-trip summaries folded from delivered events.
    Each apply() touches one summary plus the KPI counters.
    """

    def __init__(self, trips: Iterable[Trip] = (), activity_limit: int = 300, spark_points: int = 20):
        self.activity_limit = activity_limit
        self.spark_points = spark_points
        self._catalog = {t.trip_id: (t.filename, len(t.pings)) for t in trips}
        # progress is relative to the longest trip in the dataset
        self.max_points = max((n for _, n in self._catalog.values()), default=0)
        self.reset()

    def reset(self) -> None:
        self.trips: Dict[str, TripSummary] = {
            tid: TripSummary(trip_id=tid, filename=fname, total_pings=n)
            for tid, (fname, n) in self._catalog.items()
        }
        self.activity: Deque[TripEvent] = deque(maxlen=self.activity_limit)
        self._completed = 0
        self._cancelled = 0
        self._pct50 = 0
        self._pct80 = 0

    def _summary(self, trip_id: str) -> TripSummary:
        s = self.trips.get(trip_id)
        if s is None:
            logger.debug("event for unknown trip {}, tracking it", trip_id)
            s = self.trips[trip_id] = TripSummary(trip_id=trip_id)
        return s

    def _set_progress(self, s: TripSummary) -> None:
        before = s.progress
        s.progress = round(s.count / self.max_points * 100) if self.max_points else 0
        self._pct50 += (s.progress >= 50) - (before >= 50)
        self._pct80 += (s.progress >= 80) - (before >= 80)

    def apply(self, event: TripEvent) -> None:
        self.activity.appendleft(event)
        if not event.trip_id:
            return
        s = self._summary(event.trip_id)
        if event.event_type == PING:
            s.count += 1
            s.latest = event
            if event.speed_kmh is not None:
                s.speeds.append(event.speed_kmh)
                del s.speeds[:-self.spark_points]
            self._set_progress(s)
        elif event.event_type == COMPLETED and not s.completed:
            s.completed = True
            self._completed += 1
        elif event.event_type == CANCELLED and not s.cancelled:
            s.cancelled = True
            self._cancelled += 1

    __call__ = apply

    def rebuild(self, events: Iterable[TripEvent]) -> None:
        """Start over and fold events in log order, e.g. the prefix behind a seek."""
        self.reset()
        for event in events:
            self.apply(event)

    def kpis(self) -> Dict[str, int]:
        return {
            "total": len(self.trips),
            "completed": self._completed,
            "cancelled": self._cancelled,
            "pct50": self._pct50,
            "pct80": self._pct80,
        }

    def positions(self) -> Dict[str, Dict[str, float]]:
        return {
            tid: s.latest.location.model_dump()
            for tid, s in self.trips.items()
            if s.latest is not None and s.latest.location is not None
        }

    def snapshot(self) -> Dict[str, Any]:
        return {
            "kpis": self.kpis(),
            "trips": [s.view() for s in self.trips.values()],
            "positions": self.positions(),
        }
