"""Worker process for running chain units on the local platform."""

import logging
import signal
import time

from .platform import LocalJobPlatform
from .scheduler import DelayScheduler

logger = logging.getLogger(__name__)


class Worker:
    """Fires due timers and executes ready units until stopped."""

    def __init__(self, platform: LocalJobPlatform, scheduler: DelayScheduler, worker_id: int = 1):
        self.platform = platform
        self.scheduler = scheduler
        self.worker_id = worker_id
        self.running = True

        # Setup signal handlers for graceful shutdown
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

    def _handle_shutdown(self, signum, frame):
        """Handle shutdown signal gracefully."""
        self.running = False
        logger.info("[Worker %s] Shutdown requested, finishing current unit", self.worker_id)

    def tick(self) -> int:
        """One pass: start due timers, then run ready units. Returns units run."""
        started = self.scheduler.fire_due()
        if started:
            logger.debug("[Worker %s] Fired %d timer(s)", self.worker_id, len(started))
        return self.platform.run_pending()

    def run(self, poll_interval: float = 1.0, max_idle_ticks: int = None) -> None:
        """Run the worker loop. Stops after `max_idle_ticks` empty passes when given."""
        logger.info("[Worker %s] Started", self.worker_id)
        idle = 0
        while self.running:
            try:
                if self.tick():
                    idle = 0
                    continue
                idle += 1
                if max_idle_ticks is not None and idle >= max_idle_ticks:
                    break
                time.sleep(poll_interval)
            except KeyboardInterrupt:
                self.running = False
            except Exception:
                logger.exception("[Worker %s] Error", self.worker_id)
                time.sleep(poll_interval)

        logger.info("[Worker %s] Stopped", self.worker_id)
