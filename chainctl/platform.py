"""Job platform contract and a local, file-backed implementation."""

import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Any, Iterable, Iterator, List, Optional

from .capability import BatchChainable, QueueableChainable
from .config import ChainSettings, get_settings
from .errors import ConfigError, SubmissionRejected
from .models import ChainType, JobOutcome, JobRequest, JobUnit, OutcomeKind, UnitState
from .registry import JobRegistry, registry as default_registry
from .storage import Storage
from .utils import SystemClock, new_tracking_id

logger = logging.getLogger(__name__)


class JobPlatform(ABC):
    """The runtime that executes submitted jobs and reports their outcomes."""

    @abstractmethod
    def submit(self, request: JobRequest) -> str:
        """Queue a job for immediate execution. Returns a tracking id."""

    @abstractmethod
    def submit_delayed(self, request: JobRequest, delay: timedelta) -> str:
        """Queue a job that becomes eligible after `delay`. Returns a handle."""

    def supports_delay(self, chain_type: ChainType) -> bool:
        return True

    def has_capacity(self, chain_type: ChainType) -> bool:
        return True


def classify_error(error: BaseException) -> OutcomeKind:
    """Failures are recoverable unless the job says otherwise."""
    if getattr(error, "recoverable", True) is False:
        return OutcomeKind.UNRECOVERABLE_FAILURE
    return OutcomeKind.RECOVERABLE_FAILURE


def chunked(items: List[Any], size: int) -> Iterator[List[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class LocalJobPlatform(JobPlatform):
    """Runs units from a Storage queue inside the current process.

    Enforces two ceilings: at most ``max_active_batch_jobs`` batch units
    running or eligible at once, and at most ``max_enqueue_per_burst``
    queueable submissions per execution burst (one burst per unit run).
    """

    def __init__(
        self,
        storage: Storage,
        registry: JobRegistry = None,
        settings: ChainSettings = None,
        clock=None,
        native_delay: bool = True,
        worker_id: int = 1,
    ):
        self.storage = storage
        self.registry = registry or default_registry
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.native_delay = native_delay
        self.worker_id = worker_id
        self._burst_count = 0

    def supports_delay(self, chain_type: ChainType) -> bool:
        return self.native_delay

    def has_capacity(self, chain_type: ChainType) -> bool:
        if chain_type == ChainType.BATCH:
            active = self.storage.count_active(ChainType.BATCH, self.clock.now())
            return active < self.settings.max_active_batch_jobs
        return self._burst_count < self.settings.max_enqueue_per_burst

    def new_burst(self) -> None:
        self._burst_count = 0

    def submit(self, request: JobRequest) -> str:
        if not self.has_capacity(request.chain_type):
            raise SubmissionRejected(request.job_identifier, f"{request.chain_type.value} ceiling reached")
        now = self.clock.now()
        unit = JobUnit(
            tracking_id=new_tracking_id(),
            request=request,
            eligible_at=now,
            created_at=now,
            updated_at=now,
        )
        self.storage.add_unit(unit)
        if request.chain_type == ChainType.QUEUEABLE:
            self._burst_count += 1
        logger.debug("Submitted %s as %s", request.job_identifier, unit.tracking_id)
        return unit.tracking_id

    def submit_delayed(self, request: JobRequest, delay: timedelta) -> str:
        if not self.native_delay:
            raise SubmissionRejected(request.job_identifier, "delayed submission not supported")
        now = self.clock.now()
        unit = JobUnit(
            tracking_id=new_tracking_id(),
            request=request,
            eligible_at=now + delay,
            created_at=now,
            updated_at=now,
        )
        self.storage.add_unit(unit)
        logger.debug("Submitted %s as %s, eligible at %s", request.job_identifier, unit.tracking_id, unit.eligible_at)
        return unit.tracking_id

    def run_pending(self, limit: Optional[int] = None) -> int:
        """Run every unit that is ready now. Returns how many ran."""
        ran = 0
        for unit in self.storage.get_ready_units(self.clock.now()):
            if limit is not None and ran >= limit:
                break
            if self.execute_unit(unit) is not None:
                ran += 1
        return ran

    def execute_unit(self, unit: JobUnit) -> Optional[JobOutcome]:
        """Execute a single unit and notify its job. None if it did not run."""
        lock_fd = self.storage.acquire_lock(unit.tracking_id)
        if lock_fd is None:
            # Unit is already being processed by another worker
            return None

        try:
            current = self.storage.get_unit(unit.tracking_id)
            if current is None or current.state != UnitState.PENDING:
                return None
            unit = current
            self._mark(unit, UnitState.RUNNING)
            self.new_burst()
            request = unit.request
            logger.info("[Worker %s] Running %s (%s, attempt %d)",
                        self.worker_id, request.job_identifier, unit.tracking_id, request.attempt)

            try:
                job = self.registry.create(request.job_identifier)
                if not isinstance(job, (BatchChainable, QueueableChainable)):
                    raise TypeError(f"{type(job).__name__} is not a chainable job")
            except Exception as e:
                # No instance to notify
                self._mark(unit, UnitState.FAILED, OutcomeKind.UNRECOVERABLE_FAILURE, str(e))
                logger.error("[Worker %s] Cannot create job %s: %s", self.worker_id, request.job_identifier, e)
                return None

            prepare_error = None
            try:
                job.attach(request, unit.tracking_id)
                # The link may have been switched off while it waited
                job.resolve_config()
                job.before_execution(dict(request.parameters))
            except ConfigError as e:
                self._mark(unit, UnitState.FAILED, OutcomeKind.UNRECOVERABLE_FAILURE, f"skipped: {e}")
                logger.warning("[Worker %s] Skipping %s: %s", self.worker_id, request.job_identifier, e)
                return None
            except Exception as e:
                prepare_error = e

            if prepare_error is not None:
                outcome = self._prepare_failed(job, unit, prepare_error)
            elif isinstance(job, BatchChainable):
                outcome = self._run_batch(job, unit)
            else:
                outcome = self._run_queueable(job, unit)

            # Settle the unit first so it no longer counts against the ceilings
            state = UnitState.COMPLETED if outcome.succeeded else UnitState.FAILED
            self._mark(unit, state, outcome.kind, outcome.diagnostic)
            logger.info("[Worker %s] %s finished: %s", self.worker_id, request.job_identifier, outcome.kind.value)
            self._report(job, outcome)
            return outcome
        finally:
            self.storage.release_lock(lock_fd)

    def _prepare_failed(self, job, unit: JobUnit, error: Exception) -> JobOutcome:
        logger.error("[Worker %s] Cannot prepare job %s: %s", self.worker_id, unit.request.job_identifier, error)
        if isinstance(job, QueueableChainable):
            self._notify(job.on_execution_error, error)
        return JobOutcome(
            tracking_id=unit.tracking_id,
            kind=classify_error(error),
            request=unit.request,
            diagnostic=f"prepare: {error}",
            chunks_failed=1,
        )

    def _run_batch(self, job: BatchChainable, unit: JobUnit) -> JobOutcome:
        request = unit.request
        size = request.batch_size or self.settings.default_batch_size
        processed = failed = 0
        items: List[Any] = []
        kind = OutcomeKind.SUCCESS
        diagnostic = None

        try:
            items = list(job.start())
        except Exception as e:
            kind, diagnostic = classify_error(e), f"start: {e}"
        else:
            for chunk in chunked(items, size):
                try:
                    job.execute(chunk)
                    processed += 1
                except Exception as e:
                    failed += 1
                    diagnostic = str(e)
                    if kind != OutcomeKind.UNRECOVERABLE_FAILURE:
                        kind = classify_error(e)

        return JobOutcome(
            tracking_id=unit.tracking_id,
            kind=kind,
            request=request,
            diagnostic=diagnostic,
            items_total=len(items),
            chunks_processed=processed,
            chunks_failed=failed,
        )

    def _run_queueable(self, job: QueueableChainable, unit: JobUnit) -> JobOutcome:
        kind = OutcomeKind.SUCCESS
        diagnostic = None
        try:
            job.execute()
        except Exception as e:
            kind, diagnostic = classify_error(e), str(e)
            self._notify(job.on_execution_error, e)

        return JobOutcome(
            tracking_id=unit.tracking_id,
            kind=kind,
            request=unit.request,
            diagnostic=diagnostic,
            chunks_processed=1 if kind == OutcomeKind.SUCCESS else 0,
            chunks_failed=0 if kind == OutcomeKind.SUCCESS else 1,
        )

    def _report(self, job, outcome: JobOutcome) -> None:
        """Hand the outcome to the job; queueables always get the completion hook."""
        if isinstance(job, QueueableChainable):
            try:
                self._notify(job.after_execution, outcome)
            finally:
                self._notify(job.on_completion_hook, outcome)
        else:
            self._notify(job.after_execution, outcome)

    def _notify(self, hook, *args) -> None:
        try:
            hook(*args)
        except Exception:
            logger.exception("[Worker %s] %s raised", self.worker_id, getattr(hook, "__name__", hook))

    def _mark(
        self,
        unit: JobUnit,
        state: UnitState,
        outcome: Optional[OutcomeKind] = None,
        error_message: Optional[str] = None,
    ) -> None:
        unit.state = state
        unit.updated_at = self.clock.now()
        if outcome is not None:
            unit.outcome = outcome
        unit.error_message = error_message
        self.storage.update_unit(unit)

    def units(self, states: Iterable[UnitState] = None) -> List[JobUnit]:
        units = self.storage.get_all_units()
        if states is not None:
            wanted = set(states)
            units = [u for u in units if u.state in wanted]
        return units
