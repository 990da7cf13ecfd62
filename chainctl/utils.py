"""Time helpers shared by the scheduler, platform and CLI."""

import re
import uuid
from datetime import datetime, timedelta, timezone

# e.g., "20s", "5m", "1h30m", "2d3h", "0s"
DELAY_RE = re.compile(r"(?i)^\s*(?:(\d+)\s*d)?\s*(?:(\d+)\s*h)?\s*(?:(\d+)\s*m)?\s*(?:(\d+)\s*s)?\s*$")


def utcnow() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def new_tracking_id() -> str:
    return uuid.uuid4().hex


def parse_delay(s: str) -> timedelta:
    """
    Parse delay strings like '20s', '5m', '1h30m', '2d3h'.
    A bare number is read as seconds. Raises ValueError on bad input.
    """
    if s is None or not s.strip():
        raise ValueError("delay string is empty")
    if s.strip().isdigit():
        return timedelta(seconds=int(s.strip()))
    m = DELAY_RE.match(s)
    if not m or not any(m.groups()):
        raise ValueError(f"Invalid delay format: {s!r}")
    d, h, m_, s_ = (int(g) if g else 0 for g in m.groups())
    return timedelta(days=d, hours=h, minutes=m_, seconds=s_)


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return utcnow()


class ManualClock:
    """Clock that only moves when told to. Used to test delayed activation."""

    def __init__(self, start: datetime = None):
        self._now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: timedelta) -> datetime:
        self._now = self._now + delta
        return self._now
