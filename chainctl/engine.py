"""Chain engines: decide what runs after a job finishes.

One engine per chain type per process. Each continuation decision is a
short synchronous step: resolve config, apply the retry/failure policy,
submit at most one job. Decisions are serialized per engine and every
tracking id is resolved at most once, so a repeated finish notification
never starts the next link twice.
"""

import logging
import threading
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import ClassVar, Dict, Optional, Tuple

from .config import ChainSettings, get_settings
from .errors import ConfigError, ConfigNotFound, DuplicateActiveConfig, InactiveConfig, SubmissionRejected
from .models import (
    ChainExecutionAttempt,
    ChainLinkConfig,
    ChainType,
    JobOutcome,
    JobRequest,
    ParameterContext,
    PolicyDecision,
    merge_parameters,
)
from .platform import JobPlatform, LocalJobPlatform
from .policy import decide, retry_delay
from .scheduler import DelayScheduler
from .storage import ConfigStore, Storage
from .utils import SystemClock, new_tracking_id

logger = logging.getLogger(__name__)

EXPLICIT = "explicit"
COMPLETION_HOOK = "completion_hook"


class ChainEngine:
    """Shared behaviour of the batch and queueable engines."""

    chain_type: ClassVar[ChainType]

    def __init__(
        self,
        store: ConfigStore,
        platform: JobPlatform,
        scheduler: DelayScheduler = None,
        settings: ChainSettings = None,
        clock=None,
    ):
        self.store = store
        self.platform = platform
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.scheduler = scheduler or DelayScheduler(
            platform,
            clock=self.clock,
            retry_delay=timedelta(seconds=self.settings.ceiling_defer_delay),
        )
        self._cache: Dict[str, Tuple[datetime, ChainLinkConfig]] = {}
        self._cache_lock = threading.Lock()
        self._decision_lock = threading.RLock()
        self._resolved: "OrderedDict[str, None]" = OrderedDict()

    # Configuration

    def resolve_config(self, job_identifier: str, refresh: bool = False) -> ChainLinkConfig:
        """Active config for a job, from cache when it is fresh enough."""
        config = None if refresh else self._cached(job_identifier)
        if config is None:
            with self._cache_lock:
                config = None if refresh else self._cached(job_identifier)
                if config is None:
                    config = self._load(job_identifier)
                    self._cache[job_identifier] = (self.clock.now(), config)
        if not config.is_active:
            raise InactiveConfig(job_identifier)
        return config

    def invalidate(self, job_identifier: Optional[str] = None) -> None:
        with self._cache_lock:
            if job_identifier is None:
                self._cache.clear()
            else:
                self._cache.pop(job_identifier, None)

    def _cached(self, job_identifier: str) -> Optional[ChainLinkConfig]:
        ttl = self.settings.config_cache_ttl
        entry = self._cache.get(job_identifier)
        if entry is None or ttl <= 0:
            return None
        loaded_at, config = entry
        if self.clock.now() - loaded_at > timedelta(seconds=ttl):
            return None
        return config

    def _load(self, job_identifier: str) -> ChainLinkConfig:
        records = self.store.find(self.chain_type, job_identifier)
        if not records:
            raise ConfigNotFound(job_identifier)
        active = [r for r in records if r.is_active]
        if len(active) > 1:
            raise DuplicateActiveConfig(job_identifier, len(active))
        # an inactive record is returned so the caller can tell inactive from missing
        return active[0] if active else records[-1]

    # Chain operations

    def start(self, job_identifier: str, parameters: Optional[ParameterContext] = None) -> str:
        """Start a chain at `job_identifier`. Config errors propagate to the caller."""
        config = self.resolve_config(job_identifier, refresh=True)
        attempt = ChainExecutionAttempt(
            config=config,
            parameters=dict(parameters or {}),
            chain_id=new_tracking_id(),
        )
        with self._decision_lock:
            attempt.tracking_id = self._dispatch(self._request_for(attempt), timedelta(0))
        logger.info("Chain %s started at %s (%s)", attempt.chain_id, job_identifier, attempt.tracking_id)
        return attempt.tracking_id

    def continue_chain(
        self,
        finished_job_identifier: str,
        outcome: JobOutcome,
        next_parameters: Optional[ParameterContext] = None,
    ) -> Optional[str]:
        """Explicit finish notification from a job.

        Returns the tracking id (or timer handle) of whatever was submitted,
        or None when the chain stops here or the call was a no-op.
        """
        return self._continue(finished_job_identifier, outcome, next_parameters, EXPLICIT)

    def _accepts(self, config: ChainLinkConfig, trigger: str) -> bool:
        return trigger == EXPLICIT

    def _continue(
        self,
        finished_job_identifier: str,
        outcome: JobOutcome,
        next_parameters: Optional[ParameterContext],
        trigger: str,
    ) -> Optional[str]:
        with self._decision_lock:
            if outcome.tracking_id in self._resolved:
                logger.debug("Duplicate %s notification for %s ignored", trigger, outcome.tracking_id)
                return None

            try:
                config = self.resolve_config(finished_job_identifier)
            except ConfigError as e:
                self._mark_resolved(outcome.tracking_id)
                logger.warning("Chain %s terminated at %s: %s", outcome.request.chain_id, finished_job_identifier, e)
                return None

            if not self._accepts(config, trigger):
                logger.debug("%s: %s notification does not drive continuation", finished_job_identifier, trigger)
                return None

            self._mark_resolved(outcome.tracking_id)
            return self._advance(config, outcome, next_parameters)

    def _advance(
        self,
        config: ChainLinkConfig,
        outcome: JobOutcome,
        next_parameters: Optional[ParameterContext],
    ) -> Optional[str]:
        """Apply the retry/failure policy to a finished link and submit what follows.

        An abort submits nothing. The failure callback of the job is the one
        that already ran: ``after_execution`` received the failed outcome, and
        a queueable also saw the error through ``on_execution_error``.
        """
        request = outcome.request
        attempt = ChainExecutionAttempt(
            config=config,
            parameters=request.parameters,
            tracking_id=outcome.tracking_id,
            attempt=request.attempt,
            chain_id=request.chain_id,
            depth=request.depth,
        )
        decision = decide(attempt.attempt - 1, config.max_retries, outcome.kind, config.continue_on_failure)

        if decision == PolicyDecision.RETRY:
            retry = attempt.model_copy(update={"attempt": attempt.attempt + 1, "tracking_id": None})
            delay = retry_delay(attempt.attempt, self.settings.retry_backoff_base, self.settings.retry_backoff_max_delay)
            logger.info("Chain %s retrying %s (attempt %d of %d) after %s: %s",
                        attempt.chain_id, config.current_job, retry.attempt, config.max_retries + 1,
                        delay, outcome.diagnostic)
            return self._dispatch(self._request_for(retry), delay)

        if decision == PolicyDecision.ABORT:
            logger.warning("Chain %s aborted at %s after %d attempt(s): %s",
                           attempt.chain_id, config.current_job, attempt.attempt, outcome.diagnostic)
            return None

        if not outcome.succeeded:
            logger.warning("Chain %s continuing past failed %s: %s",
                           attempt.chain_id, config.current_job, outcome.diagnostic)

        if not config.next_job:
            logger.info("Chain %s complete at %s", attempt.chain_id, config.current_job)
            return None

        if attempt.depth >= self.settings.max_chain_length:
            logger.error("Chain %s stopped at %s: chain length limit %d reached",
                         attempt.chain_id, config.current_job, self.settings.max_chain_length)
            return None

        try:
            next_config = self.resolve_config(config.next_job)
        except ConfigError as e:
            logger.warning("Chain %s ends after %s: %s", attempt.chain_id, config.current_job, e)
            return None

        following = ChainExecutionAttempt(
            config=next_config,
            parameters=merge_parameters(request.parameters, next_parameters),
            chain_id=attempt.chain_id,
            depth=attempt.depth + 1,
        )
        tracking_id = self._dispatch(self._request_for(following), config.execution_delay)
        logger.info("Chain %s: %s -> %s (%s, delay %s)",
                    attempt.chain_id, config.current_job, next_config.current_job,
                    tracking_id, config.execution_delay)
        return tracking_id

    # Submission

    def _batch_size(self, config: ChainLinkConfig) -> Optional[int]:
        return None

    def _request_for(self, attempt: ChainExecutionAttempt) -> JobRequest:
        return attempt.to_request(self._batch_size(attempt.config))

    def _dispatch(self, request: JobRequest, delay: timedelta) -> str:
        """Hand a request to the scheduler, deferring instead of exceeding a platform ceiling."""
        defer = timedelta(seconds=self.settings.ceiling_defer_delay)
        if delay <= timedelta(0) and not self.platform.has_capacity(request.chain_type):
            logger.info("%s ceiling reached, deferring %s by %s",
                        request.chain_type.value, request.job_identifier, defer)
            delay = defer
        try:
            return self.scheduler.schedule_start(request, delay)
        except SubmissionRejected as e:
            logger.warning("%s; deferring by %s", e, defer)
            return self.scheduler.schedule_start(request, max(delay, defer))

    def _mark_resolved(self, tracking_id: str) -> None:
        self._resolved[tracking_id] = None
        while len(self._resolved) > self.settings.resolved_history_size:
            self._resolved.popitem(last=False)

    def is_resolved(self, tracking_id: str) -> bool:
        return tracking_id in self._resolved


class BatchChainEngine(ChainEngine):
    """Engine for batch chains. Continuation comes from the job's finish callback."""

    chain_type = ChainType.BATCH

    def _batch_size(self, config: ChainLinkConfig) -> Optional[int]:
        return config.batch_size or self.settings.default_batch_size


class QueueableChainEngine(ChainEngine):
    """Engine for queueable chains.

    A link configured with ``use_completion_hook`` continues only from the
    completion hook; any other link continues only from the explicit call.
    """

    chain_type = ChainType.QUEUEABLE

    def _accepts(self, config: ChainLinkConfig, trigger: str) -> bool:
        if config.use_completion_hook:
            return trigger == COMPLETION_HOOK
        return trigger == EXPLICIT

    def on_completion_hook(
        self,
        finished_job_identifier: str,
        outcome: JobOutcome,
        next_parameters: Optional[ParameterContext] = None,
    ) -> Optional[str]:
        """Guaranteed completion notification, fired whatever the outcome."""
        return self._continue(finished_job_identifier, outcome, next_parameters, COMPLETION_HOOK)


# Global engine instances
_batch_engine: Optional[BatchChainEngine] = None
_queueable_engine: Optional[QueueableChainEngine] = None
_engine_lock = threading.Lock()


def build_engines(settings: ChainSettings = None, storage: Storage = None, clock=None):
    """Wire both engines to one Storage-backed local platform and scheduler."""
    settings = settings or get_settings()
    storage = storage or Storage(settings.data_dir)
    clock = clock or SystemClock()
    platform = LocalJobPlatform(storage, settings=settings, clock=clock)
    scheduler = DelayScheduler(
        platform,
        timers=storage,
        clock=clock,
        retry_delay=timedelta(seconds=settings.ceiling_defer_delay),
    )
    batch = BatchChainEngine(storage, platform, scheduler, settings, clock)
    queueable = QueueableChainEngine(storage, platform, scheduler, settings, clock)
    return batch, queueable


def _ensure_engines() -> None:
    global _batch_engine, _queueable_engine
    if _batch_engine is None or _queueable_engine is None:
        with _engine_lock:
            if _batch_engine is None or _queueable_engine is None:
                batch, queueable = build_engines()
                _batch_engine = _batch_engine or batch
                _queueable_engine = _queueable_engine or queueable


def get_batch_engine() -> BatchChainEngine:
    """Get or create the process-wide batch engine."""
    if _batch_engine is None:
        _ensure_engines()
    return _batch_engine


def get_queueable_engine() -> QueueableChainEngine:
    """Get or create the process-wide queueable engine."""
    if _queueable_engine is None:
        _ensure_engines()
    return _queueable_engine


def get_engine(chain_type: ChainType) -> ChainEngine:
    if chain_type == ChainType.BATCH:
        return get_batch_engine()
    return get_queueable_engine()


def install_engines(batch: BatchChainEngine = None, queueable: QueueableChainEngine = None) -> None:
    """Replace the process-wide engines (embedding, tests)."""
    global _batch_engine, _queueable_engine
    with _engine_lock:
        if batch is not None:
            _batch_engine = batch
        if queueable is not None:
            _queueable_engine = queueable


def reset_engines() -> None:
    global _batch_engine, _queueable_engine
    with _engine_lock:
        _batch_engine = None
        _queueable_engine = None


def start_batch_chain(identifier: str, parameters: Optional[ParameterContext] = None) -> str:
    return get_batch_engine().start(identifier, parameters)


def start_queueable_chain(identifier: str, parameters: Optional[ParameterContext] = None) -> str:
    return get_queueable_engine().start(identifier, parameters)
