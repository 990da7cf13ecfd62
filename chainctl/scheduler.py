"""Delayed activation of chain links.

A zero delay submits straight to the platform. Otherwise the platform's own
delayed submission is used when it has one; if not, a one-shot timer is
registered and ``fire_due`` submits it once the clock reaches its fire time.
Durability of timers belongs to the timer facility (``Storage`` keeps them
on disk, ``MemoryTimers`` only for the life of the process).
"""

import heapq
import itertools
import logging
import threading
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from .errors import SubmissionRejected
from .models import JobRequest, TimerEntry
from .utils import SystemClock, new_tracking_id

logger = logging.getLogger(__name__)


class MemoryTimers:
    """In-process timer facility ordered by fire time."""

    def __init__(self):
        self._heap: List[Tuple[datetime, int, TimerEntry]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def add_timer(self, fire_at: datetime, request: JobRequest) -> str:
        entry = TimerEntry(handle=new_tracking_id(), fire_at=fire_at, request=request)
        with self._lock:
            heapq.heappush(self._heap, (fire_at, next(self._seq), entry))
        return entry.handle

    def pop_due_timers(self, now: datetime) -> List[TimerEntry]:
        due = []
        with self._lock:
            while self._heap and self._heap[0][0] <= now:
                due.append(heapq.heappop(self._heap)[2])
        return due

    def pending_timers(self) -> List[TimerEntry]:
        with self._lock:
            return [entry for _, _, entry in sorted(self._heap)]


class DelayScheduler:
    """Turns a configured delay into a future start of the next job."""

    def __init__(self, platform, timers=None, clock=None, retry_delay: timedelta = timedelta(seconds=60)):
        self.platform = platform
        self.timers = timers if timers is not None else MemoryTimers()
        self.clock = clock or SystemClock()
        self.retry_delay = retry_delay

    def schedule_start(self, request: JobRequest, delay: Optional[timedelta] = None) -> str:
        """Start `request` after `delay`. Returns a tracking id or timer handle."""
        if delay is None or delay <= timedelta(0):
            return self.platform.submit(request)
        if self.platform.supports_delay(request.chain_type):
            return self.platform.submit_delayed(request, delay)
        fire_at = self.clock.now() + delay
        handle = self.timers.add_timer(fire_at, request)
        logger.debug("Timer %s for %s fires at %s", handle, request.job_identifier, fire_at)
        return handle

    def fire_due(self) -> List[str]:
        """Submit every timer whose fire time has been reached."""
        started = []
        for entry in self.timers.pop_due_timers(self.clock.now()):
            try:
                started.append(self.platform.submit(entry.request))
            except SubmissionRejected as e:
                fire_at = self.clock.now() + self.retry_delay
                self.timers.add_timer(fire_at, entry.request)
                logger.warning("%s; timer for %s re-armed until %s", e, entry.request.job_identifier, fire_at)
        return started
