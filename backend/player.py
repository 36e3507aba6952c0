import asyncio, bisect, math, time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, List, Optional, Tuple

from loguru import logger
from pydantic import ValidationError

from models import PlayerState, TripEvent, parse_timestamp
from settings import RewindPolicy

TickHandler = Callable[[datetime], None]
EventHandler = Callable[[TripEvent], None]


def coerce_events(records: Iterable[Any]) -> List[TripEvent]:
    """
    Validate raw records into TripEvents and stably sort them by timestamp.
    A record that fails validation is logged and dropped; it never aborts the load.
    """
    events: List[TripEvent] = []
    for i, rec in enumerate(records):
        if isinstance(rec, TripEvent):
            events.append(rec)
            continue
        try:
            events.append(TripEvent.model_validate(rec))
        except ValidationError as e:
            err = e.errors()[0]
            logger.warning("dropping record #{}: {} ({})", i, err.get("msg"), ".".join(map(str, err.get("loc", ()))))
    events.sort(key=lambda e: e.timestamp)
    return events


def _clean_speed(value: Any) -> float:
    try:
        speed = float(value)
    except (TypeError, ValueError):
        logger.warning("speed {!r} is not a number, using 0", value)
        return 0.0
    if not math.isfinite(speed) or speed < 0:
        logger.warning("speed {!r} out of range, using 0", value)
        return 0.0
    return speed


class EventPlayer:
    """
    Replays a fixed event log against a virtual clock.

    Simulated time is computed from an anchor rather than accumulated per tick:
        now = sim_at_anchor + (wall_now - anchor_wall) * speed
    Every mutating call (play, set_speed, seek, step) re-anchors first.

    Signals:
      on_tick(simulated_time)  every tick while running
      on_event(event)          once per event as it becomes due, in log order
    """

    def __init__(
        self,
        events: Iterable[Any] = (),
        *,
        start_time: Any = None,
        speed: float = 1.0,
        tick_interval: float = 0.25,
        rewind: RewindPolicy = "replay",
        clock: Callable[[], float] = time.monotonic,
        on_tick: Optional[TickHandler] = None,
        on_event: Optional[EventHandler] = None,
    ):
        self.events: Tuple[TripEvent, ...] = tuple(coerce_events(events))
        self._timestamps = [e.timestamp for e in self.events]
        self.tick_interval = tick_interval
        self.rewind = rewind
        self._clock = clock

        start = parse_timestamp(start_time) if start_time is not None else None
        if start_time is not None and start is None:
            logger.warning("start_time {!r} is not a timestamp, ignoring", start_time)
        if start is None:
            start = self._timestamps[0] if self.events else datetime.now(timezone.utc)
        self.start_time = start

        self._sim = start
        self._anchor_wall = clock()
        self._speed = _clean_speed(speed)
        self._running = False
        self._cursor = 0
        self._high_water = 0   # delivered indices below this are never re-sent under rewind="once"
        self._session = 0      # bumped by pause/seek/reset; an in-flight tick stops delivering when it changes
        self._task: Optional[asyncio.Task] = None

        self._tick_subs: List[TickHandler] = []
        self._event_subs: List[EventHandler] = []
        if on_tick:
            self._tick_subs.append(on_tick)
        if on_event:
            self._event_subs.append(on_event)

        logger.info("player ready: {} events from {} speed={} rewind={}",
                    len(self.events), start.isoformat(), self._speed, rewind)

    # ---------- queries ----------

    @property
    def running(self) -> bool:
        return self._running

    @property
    def speed(self) -> float:
        return self._speed

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def settled(self) -> int:
        """Count of leading log entries the clock has passed or will never deliver again."""
        if self.rewind == "once":
            return max(self._cursor, self._high_water)
        return self._cursor

    @property
    def exhausted(self) -> bool:
        return self._cursor >= len(self.events)

    def current_time(self) -> datetime:
        if not self._running:
            return self._sim
        elapsed = self._clock() - self._anchor_wall
        return self._sim + timedelta(seconds=elapsed * self._speed)

    def state(self) -> PlayerState:
        return PlayerState(
            simulated_time=self.current_time(),
            speed=self._speed,
            running=self._running,
            cursor=self._cursor,
            total=len(self.events),
            exhausted=self.exhausted,
            start_time=self._timestamps[0] if self.events else None,
            end_time=self._timestamps[-1] if self.events else None,
        )

    # ---------- subscriptions ----------

    def subscribe_tick(self, fn: TickHandler) -> Callable[[], None]:
        self._tick_subs.append(fn)
        return lambda: self._tick_subs.remove(fn) if fn in self._tick_subs else None

    def subscribe_event(self, fn: EventHandler) -> Callable[[], None]:
        self._event_subs.append(fn)
        return lambda: self._event_subs.remove(fn) if fn in self._event_subs else None

    def _emit(self, subs, arg) -> None:
        session = self._session
        for fn in list(subs):
            if self._session != session:
                break
            try:
                fn(arg)
            except Exception:
                logger.exception("subscriber {!r} failed", fn)

    # ---------- control surface ----------

    def _reanchor(self) -> None:
        self._sim = self.current_time()
        self._anchor_wall = self._clock()

    def play(self, speed: Optional[float] = None) -> None:
        if speed is not None:
            self.set_speed(speed)
        if self._running:
            return
        self._anchor_wall = self._clock()
        self._running = True
        logger.info("play at {} speed={}", self._sim.isoformat(), self._speed)
        self._start_task()

    def pause(self) -> None:
        self._session += 1
        if not self._running:
            return
        self._sim = self.current_time()
        self._running = False
        self._stop_task()
        logger.info("pause at {}", self._sim.isoformat())

    def set_speed(self, factor: Any) -> None:
        speed = _clean_speed(factor)
        self._reanchor()
        self._speed = speed
        logger.debug("speed={} at {}", speed, self._sim.isoformat())

    def seek(self, target: Any) -> None:
        """
        Jump the clock to target and move the cursor past every event at or
        before it. Skipped events are not delivered.
        """
        t = parse_timestamp(target)
        if t is None:
            logger.warning("seek target {!r} is not a timestamp, ignoring", target)
            return
        self._session += 1
        self._sim = t
        self._anchor_wall = self._clock()
        self._cursor = bisect.bisect_right(self._timestamps, t)
        logger.info("seek to {} cursor={}/{}", t.isoformat(), self._cursor, len(self.events))

    def reset(self) -> None:
        """Back to the construction state: paused at start_time, nothing delivered."""
        self.pause()
        self._sim = self.start_time
        self._session += 1
        self._anchor_wall = self._clock()
        self._cursor = 0
        logger.info("reset to {}", self.start_time.isoformat())

    def advance_to_next_event(self) -> Optional[TripEvent]:
        """
        Pause, move the clock to the next pending event and deliver it.
        Returns the delivered event, or None once the log is exhausted.
        """
        self.pause()
        now = self.current_time()
        idx = self._cursor
        if self.rewind == "once":
            idx = max(idx, self._high_water)
        if idx >= len(self.events):
            return None
        event = self.events[idx]
        self._sim = max(now, event.timestamp)
        self._anchor_wall = self._clock()
        self._cursor = idx + 1
        self._high_water = max(self._high_water, self._cursor)
        self._emit(self._event_subs, event)
        return event

    # ---------- periodic advancement ----------

    def tick(self) -> int:
        """One scheduler step: emit tick, deliver due events, auto-pause when done."""
        now = self.current_time()
        self._emit(self._tick_subs, now)

        session = self._session
        delivered = 0
        while (self._session == session and self._cursor < len(self.events)
               and self._timestamps[self._cursor] <= now):
            idx = self._cursor
            self._cursor += 1
            if self.rewind == "once" and idx < self._high_water:
                continue
            self._high_water = max(self._high_water, self._cursor)
            self._emit(self._event_subs, self.events[idx])
            delivered += 1

        if delivered:
            logger.debug("tick {} delivered={} cursor={}", now.isoformat(), delivered, self._cursor)
        if self.exhausted and self._running:
            logger.info("log exhausted at {}", now.isoformat())
            self.pause()
        return delivered

    async def _loop(self):
        while self._running:
            await asyncio.sleep(self.tick_interval)
            if not self._running:
                break
            self.tick()

    def _start_task(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("no running event loop, ticks must be driven by the caller")
            return
        self._task = loop.create_task(self._loop())

    def _stop_task(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        # exhaustion pauses from inside the loop task, which then exits by itself
        if task is not current:
            task.cancel()
