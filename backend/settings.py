import os
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel

DATA_DIR = Path(__file__).resolve().parents[1] / "data"

RewindPolicy = Literal["replay", "once"]


class Settings(BaseModel):
    TICK_INTERVAL_MS: int = 250      # wall-clock cadence, independent of speed
    DEFAULT_SPEED: float = 1.0
    SPEED_CHOICES: List[float] = [0.25, 0.5, 1, 2, 5]
    ACTIVITY_LIMIT: int = 300
    SPARK_POINTS: int = 20
    TRIP_DIR: str = str(DATA_DIR / "trips")
    TRIP_FILES: List[str] = [
        "trip_1_cross_country.json",
        "trip_2_urban_dense.json",
        "trip_3_mountain_cancelled.json",
    ]
    REWIND_POLICY: RewindPolicy = "replay"
    LOG_LEVEL: str = "INFO"
    LOG_DIR: Optional[str] = None
    ALLOWED_ORIGINS: str = "*"


# env var -> field; list fields are comma-separated
_ENV = {
    "FLEET_TICK_INTERVAL_MS": "TICK_INTERVAL_MS",
    "FLEET_DEFAULT_SPEED": "DEFAULT_SPEED",
    "FLEET_ACTIVITY_LIMIT": "ACTIVITY_LIMIT",
    "FLEET_SPARK_POINTS": "SPARK_POINTS",
    "FLEET_TRIP_DIR": "TRIP_DIR",
    "FLEET_TRIP_FILES": "TRIP_FILES",
    "FLEET_REWIND_POLICY": "REWIND_POLICY",
    "FLEET_LOG_LEVEL": "LOG_LEVEL",
    "FLEET_LOG_DIR": "LOG_DIR",
    "ALLOWED_ORIGINS": "ALLOWED_ORIGINS",
}


def load_settings(environ=None) -> Settings:
    """
    Build Settings from defaults plus environment overrides.
    Values are validated by pydantic, so a bad override fails loudly at startup.
    """
    env = os.environ if environ is None else environ
    overrides = {}
    for var, field in _ENV.items():
        raw = env.get(var)
        if raw is None or raw.strip() == "":
            continue
        if field == "TRIP_FILES":
            overrides[field] = [f.strip() for f in raw.split(",") if f.strip()]
        else:
            overrides[field] = raw.strip()
    return Settings(**overrides)


DEFAULTS = load_settings()
