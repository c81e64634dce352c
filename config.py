import os
from dataclasses import dataclass

# Parametri della partita, letti dalle variabili d'ambiente come DATABASE_URL.
HALF_LENGTH_MINUTES = int(os.getenv("HALF_LENGTH_MINUTES", "20"))
HALFTIME_LENGTH_MINUTES = int(os.getenv("HALFTIME_LENGTH_MINUTES", "5"))
SECONDS_PER_MINUTE = 60

TICK_INTERVAL_SECONDS = float(os.getenv("TICK_INTERVAL_SECONDS", "1"))
MAX_TICK_DELTA_SECONDS = int(os.getenv("MAX_TICK_DELTA_SECONDS", "10"))
CHECKPOINT_THROTTLE_SECONDS = float(os.getenv("CHECKPOINT_THROTTLE_SECONDS", "5"))
PERIODIC_SAVE_SECONDS = float(os.getenv("PERIODIC_SAVE_SECONDS", "30"))
SNAPSHOT_POLL_SECONDS = float(os.getenv("SNAPSHOT_POLL_SECONDS", "5"))

# Con LIVE_AUTORUN=0 i task in background non partono (utile nei test).
LIVE_AUTORUN = os.getenv("LIVE_AUTORUN", "1").lower() in ("1", "true", "yes")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


@dataclass(frozen=True)
class ClockSettings:
    half_length_minutes: int = HALF_LENGTH_MINUTES
    halftime_length_minutes: int = HALFTIME_LENGTH_MINUTES
    tick_interval: float = TICK_INTERVAL_SECONDS
    max_tick_delta: int = MAX_TICK_DELTA_SECONDS
    checkpoint_throttle: float = CHECKPOINT_THROTTLE_SECONDS
    periodic_save_interval: float = PERIODIC_SAVE_SECONDS
    snapshot_poll_interval: float = SNAPSHOT_POLL_SECONDS

    @property
    def halftime_break_seconds(self) -> int:
        return self.halftime_length_minutes * SECONDS_PER_MINUTE
