"""
Clock helpers — naive UTC timestamps, matching what the database stores.
Expiry and cooldown checks compare these values lazily; nothing schedules timers.
"""
import math
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seconds_until(moment: datetime, now: datetime) -> int:
    """Whole seconds remaining until `moment` (never negative)."""
    return max(0, math.ceil((moment - now).total_seconds()))
