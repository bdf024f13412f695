import time
from typing import Optional

# --- Internal override for testing ---
_current_time_override: Optional[float] = None


# === Time Access ===

def now() -> float:
    """Seconds on the process clock (monotonic unless overridden)."""
    if _current_time_override is not None:
        return _current_time_override
    return time.monotonic()


def set_fake_now(fake_time: float) -> None:
    global _current_time_override
    _current_time_override = fake_time


def clear_fake_now() -> None:
    global _current_time_override
    _current_time_override = None


def wall_clock() -> float:
    """Unix timestamp, used for persisted records."""
    return time.time()
