import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel

from models import parse_timestamp
from settings import DEFAULTS

Action = Literal[
    "play", "pause", "speed", "seek", "step", "reset",
    "status", "where", "help", "clarify", "error",
]


class Command(BaseModel):
    action: Action
    args: Dict[str, Any] = {}


HELP = ("Try: Play 2x · Pause · Speed 5 · Seek 2025-11-10T10:45:00Z · "
        "Step · Reset · Status trip_1 · Where is trip_1")

# --- Helpers -----------------------------------------------------------------

def _parse_speed(text: str) -> Optional[float]:
    """Pull a speed like '2x', 'x0.5', '0.25' out of text."""
    m = re.search(r"x?\s*(\d+(?:\.\d+)?|\.\d+)\s*x?", text)
    if not m:
        return None
    return float(m.group(1))

def _speed_options(verb: str) -> List[str]:
    return [f"{verb} {s:g}x" for s in DEFAULTS.SPEED_CHOICES]

def _clarify(message: str, options: List[str]) -> Command:
    return Command(action="clarify", args={"message": message, "options": options[:3]})

def _trip_ids(text: str) -> List[str]:
    ids: List[str] = []
    for raw in re.findall(r"\btrip[_\-]?\w+", text, flags=re.IGNORECASE):
        t = raw.lower().replace("-", "_")
        if t not in ids:
            ids.append(t)
    return ids

# --- Public API ---------------------------------------------------------------

def parse_command(text: str) -> Command:
    """
    Parse an operator command into a Command for the player / fleet view.
    """
    t = (text or "").strip()
    if not t:
        return Command(action="error", args={"message": "Empty command"})

    low = t.lower()
    verb, _, rest = low.partition(" ")

    # 1) PLAY [2x]
    if verb in ("play", "resume", "start"):
        speed = _parse_speed(rest) if rest else None
        return Command(action="play", args={} if speed is None else {"speed": speed})

    # 2) PAUSE / STOP
    if verb in ("pause", "stop"):
        return Command(action="pause")

    # 3) SPEED 5 | SPEED x0.5
    if verb == "speed":
        speed = _parse_speed(rest)
        if speed is not None:
            return Command(action="speed", args={"speed": speed})
        return _clarify("Which speed?", _speed_options("Speed"))

    # 4) SEEK <timestamp>
    if verb in ("seek", "goto", "jump"):
        raw = t.split(None, 1)[1].strip() if rest else ""
        raw = re.sub(r"^to\s+", "", raw, flags=re.IGNORECASE)
        ts = parse_timestamp(raw)
        if ts is not None:
            return Command(action="seek", args={"timestamp": ts.isoformat()})
        return _clarify("Seek where? Give an ISO timestamp.",
                        ["Seek 2025-11-10T10:45:00Z", "Reset", "Cancel"])

    # 5) STEP / NEXT
    if verb in ("step", "next"):
        return Command(action="step")

    # 6) RESET / REWIND
    if verb in ("reset", "rewind", "restart"):
        return Command(action="reset")

    # 7) STATUS [trip_1, trip_2]
    if verb == "status":
        return Command(action="status", args={"trips": _trip_ids(t)})

    # 8) WHERE / WHERE IS trip_3 ?
    if verb == "where":
        ids = _trip_ids(t)
        if ids:
            return Command(action="where", args={"trip": ids[0]})
        return _clarify("Which trip? e.g., Where is trip_1",
                        ["Where is trip_1", "Where is trip_2", "Cancel"])

    # 9) HELP
    if low in ("help", "what can i ask", "?", "commands"):
        return Command(action="help", args={"message": HELP})

    # Fallback
    return _clarify("I didn't quite get that.", ["Play 1x", "Step", "Status"])
