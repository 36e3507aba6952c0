from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.staticfiles import StaticFiles
from typing import List, Optional
from contextlib import asynccontextmanager
import asyncio, math

from loguru import logger

from models import Event, TripEvent, parse_timestamp
from commands import Command, parse_command
from fleet import FleetState
from log import setup_logging
from player import EventPlayer
from settings import DEFAULTS, Settings
from trips import Trip, load_trips, merge_events

SETTINGS: Settings = DEFAULTS

@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging(SETTINGS.LOG_LEVEL, SETTINGS.LOG_DIR)
    hub.start()
    r = load_replay()
    logger.info("fleet replay up: {} trips, {} events", len(r.trips), len(r.player.events))
    yield
    if replay is not None:
        replay.close()
    hub.stop()

app = FastAPI(title="Fleet Replay", lifespan=lifespan)

# ---------- CORS: configurable, non-breaking ----------
# ALLOWED_ORIGINS is a comma-separated list; "*" (default) allows any origin.
_allowed = SETTINGS.ALLOWED_ORIGINS
if _allowed.strip() == "*":
    ORIGINS = ["*"]
else:
    ORIGINS = [o.strip() for o in _allowed.split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)

# ---------- Serve raw trip JSONs for the map polylines ----------
app.mount("/trips", StaticFiles(directory=SETTINGS.TRIP_DIR, html=False, check_dir=False), name="trips")

# ---------- In-memory broadcast hub ----------
class Hub:
    """
    Player callbacks are synchronous; publish() queues envelopes and a single
    pump task sends them in order.
    """
    def __init__(self):
        self.seq = 0
        self.clients: List[WebSocket] = []
        self.ring: List[Event] = []
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    def start(self):
        if not self._task:
            self._queue = asyncio.Queue()
            self._task = asyncio.create_task(self._pump())

    def stop(self):
        if self._task:
            self._task.cancel()
            self._task = None

    def publish(self, evt: Event):
        self.seq += 1
        evt.seq = self.seq
        self.ring.append(evt)
        if len(self.ring) > 500:
            self.ring = self.ring[-500:]
        if self._queue is not None:
            self._queue.put_nowait(evt)

    async def _pump(self):
        while True:
            evt = await self._queue.get()
            await self.broadcast(evt)

    async def broadcast(self, evt: Event):
        dead = []
        for ws in list(self.clients):
            try:
                await ws.send_json(evt.model_dump(mode="json"))
            except Exception:
                dead.append(ws)
        for d in dead:
            try:
                self.clients.remove(d)
            except ValueError:
                pass

hub = Hub()

# ---------- Loaded dataset: trips + player + derived fleet view ----------
class Replay:
    def __init__(self, trips: List[Trip], settings: Settings):
        self.trips = trips
        self.fleet = FleetState(trips, settings.ACTIVITY_LIMIT, settings.SPARK_POINTS)
        self.player = EventPlayer(
            merge_events(trips),
            speed=settings.DEFAULT_SPEED,
            tick_interval=settings.TICK_INTERVAL_MS / 1000,
            rewind=settings.REWIND_POLICY,
        )
        self.player.subscribe_event(self.fleet.apply)
        self.player.subscribe_event(self._on_event)
        self.player.subscribe_tick(self._on_tick)

    def _on_tick(self, now):
        hub.publish(Event(type="tick", payload={
            "simulated_time": now.isoformat(),
            "cursor": self.player.cursor,
            "total": len(self.player.events),
        }))

    def _on_event(self, ev: TripEvent):
        hub.publish(Event(type="trip_event", payload=ev.model_dump(mode="json")))

    def publish_state(self):
        hub.publish(Event(type="player_state", payload=self.player.state().model_dump(mode="json")))

    def _resync(self):
        # the view always reflects every event behind the cursor, delivered or skipped
        self.fleet.rebuild(self.player.events[:self.player.settled])

    def seek(self, target):
        self.player.seek(target)
        self._resync()

    def reset(self):
        self.player.reset()
        self._resync()

    def close(self):
        self.player.pause()

replay: Optional[Replay] = None

def load_replay() -> Replay:
    global replay
    if replay is not None:
        replay.close()
    trips = load_trips(SETTINGS.TRIP_DIR, SETTINGS.TRIP_FILES)
    replay = Replay(trips, SETTINGS)
    return replay

def _state():
    replay.publish_state()
    return {"ok": True, "state": replay.player.state().model_dump(mode="json")}

def _speed_error(speed):
    """Message for a speed the player would have to clamp, None when it is usable."""
    if not isinstance(speed, (int, float)) or isinstance(speed, bool) or not math.isfinite(speed) or speed < 0:
        return f"Invalid speed {speed!r}"
    return None

def _error(message: str, status_code: int = 400):
    evt = Event(source="chat", type="error", payload={"message": message})
    hub.publish(evt)
    return JSONResponse({"ok": False, "events": [evt.model_dump(mode="json")]}, status_code=status_code)

# ---------- Routes ----------
@app.get("/healthz")
async def healthz():
    return {
        "ok": True,
        "clients": len(hub.clients),
        "seq": hub.seq,
        "events": len(replay.player.events) if replay else 0,
    }

@app.websocket("/events/ws")
async def events_ws(ws: WebSocket):
    await ws.accept()
    hub.clients.append(ws)
    try:
        while True:
            # keep-alive; clients never send
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        try:
            hub.clients.remove(ws)
        except ValueError:
            pass

@app.get("/player")
async def player_state():
    return {"ok": True, "state": replay.player.state().model_dump(mode="json")}

@app.post("/player/play")
async def player_play(body: Optional[dict] = None):
    speed = (body or {}).get("speed")
    if speed is not None and _speed_error(speed):
        return _error(_speed_error(speed))
    replay.player.play(speed)
    return _state()

@app.post("/player/pause")
async def player_pause():
    replay.player.pause()
    return _state()

@app.post("/player/speed")
async def player_speed(body: dict):
    speed = body.get("speed")
    if _speed_error(speed):
        return _error(_speed_error(speed))
    replay.player.set_speed(speed)
    return _state()

@app.post("/player/seek")
async def player_seek(body: dict):
    target = body.get("timestamp")
    if parse_timestamp(target) is None:
        return _error(f"Invalid timestamp {target!r}")
    replay.seek(target)
    return _state()

@app.post("/player/step")
async def player_step():
    ev = replay.player.advance_to_next_event()
    out = _state()
    out["event"] = ev.model_dump(mode="json") if ev else None
    return out

@app.post("/player/reset")
async def player_reset():
    replay.reset()
    return _state()

@app.get("/fleet")
async def fleet():
    return {"ok": True, **replay.fleet.snapshot()}

@app.get("/fleet/activity")
async def fleet_activity(limit: int = 80):
    items = list(replay.fleet.activity)[:max(0, limit)]
    return {"ok": True, "activity": [e.model_dump(mode="json") for e in items]}

def apply_command(cmd: Command) -> Event:
    p = replay.player
    a = cmd.action
    if a == "play":
        p.play(cmd.args.get("speed"))
    elif a == "pause":
        p.pause()
    elif a == "speed":
        p.set_speed(cmd.args["speed"])
    elif a == "seek":
        replay.seek(cmd.args["timestamp"])
    elif a == "step":
        ev = p.advance_to_next_event()
        if ev is None:
            return Event(source="chat", type="query_result",
                         payload={"kind": "step", "answer": "End of recording"})
    elif a == "reset":
        replay.reset()
    elif a == "status":
        views = {s.trip_id: s.view() for s in replay.fleet.trips.values()}
        wanted = cmd.args.get("trips") or []
        answer = {t: views.get(t) for t in wanted} if wanted else replay.fleet.kpis()
        return Event(source="chat", type="query_result", payload={"kind": "status", "answer": answer})
    elif a == "where":
        trip = cmd.args["trip"]
        loc = replay.fleet.positions().get(trip)
        answer = loc if loc else f"{trip}: no position yet"
        return Event(source="chat", type="query_result", payload={"kind": "where", "answer": answer})
    elif a == "help":
        return Event(source="chat", type="query_result", payload={"kind": "help", "answer": cmd.args["message"]})
    elif a == "clarify":
        return Event(source="chat", type="clarify", payload=cmd.args)
    else:
        return Event(source="chat", type="error", payload=cmd.args)
    return Event(source="chat", type="player_state", payload=p.state().model_dump(mode="json"))

@app.post("/command")
async def command(body: dict):
    text = (body.get("text") or "").strip()
    if not text:
        return _error("Empty command")

    evt = apply_command(parse_command(text))
    hub.publish(evt)
    return {"ok": True, "events": [evt.model_dump(mode="json")]}

@app.post("/dataset/reload")
async def dataset_reload():
    r = load_replay()
    hub.publish(Event(source="dataset", type="player_state", payload=r.player.state().model_dump(mode="json")))
    return {"ok": True, "trips": [t.trip_id for t in r.trips], "events": len(r.player.events)}

