"""Shared fixtures for the chainctl test suite."""

from datetime import timedelta
from typing import List, Optional, Tuple

import pytest

from chainctl.config import ChainSettings
from chainctl.engine import BatchChainEngine, QueueableChainEngine, install_engines, reset_engines
from chainctl.errors import SubmissionRejected
from chainctl.models import ChainLinkConfig, ChainType, JobOutcome, JobRequest, OutcomeKind
from chainctl.platform import JobPlatform
from chainctl.scheduler import DelayScheduler, MemoryTimers
from chainctl.storage import MemoryConfigStore
from chainctl.utils import ManualClock


class RecordingPlatform(JobPlatform):
    """Platform double that records submissions instead of running them."""

    def __init__(self, native_delay: bool = True):
        self.native_delay = native_delay
        self.capacity = True
        self.reject_next = 0
        self.submitted: List[Tuple[JobRequest, Optional[timedelta], str]] = []
        self._counter = 0

    def _track(self, request: JobRequest, delay: Optional[timedelta]) -> str:
        self._counter += 1
        tracking_id = f"t{self._counter}"
        self.submitted.append((request, delay, tracking_id))
        return tracking_id

    def submit(self, request: JobRequest) -> str:
        if self.reject_next:
            self.reject_next -= 1
            raise SubmissionRejected(request.job_identifier, "test ceiling")
        return self._track(request, None)

    def submit_delayed(self, request: JobRequest, delay: timedelta) -> str:
        return self._track(request, delay)

    def supports_delay(self, chain_type: ChainType) -> bool:
        return self.native_delay

    def has_capacity(self, chain_type: ChainType) -> bool:
        return self.capacity

    @property
    def jobs(self) -> List[str]:
        return [request.job_identifier for request, _, _ in self.submitted]

    def last(self) -> Tuple[JobRequest, Optional[timedelta], str]:
        return self.submitted[-1]


def outcome_for(tracking_id: str, request: JobRequest, kind: OutcomeKind = OutcomeKind.SUCCESS,
                diagnostic: str = None) -> JobOutcome:
    return JobOutcome(tracking_id=tracking_id, kind=kind, request=request, diagnostic=diagnostic)


def link(current: str, next_job: str = None, chain_type: ChainType = ChainType.BATCH, **kwargs) -> ChainLinkConfig:
    return ChainLinkConfig(current_job=current, next_job=next_job, chain_type=chain_type, **kwargs)


@pytest.fixture
def settings(tmp_path):
    return ChainSettings(
        data_dir=str(tmp_path / "data"),
        config_cache_ttl=0,
        retry_backoff_base=0,
        ceiling_defer_delay=60,
        max_chain_length=10,
    )


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store():
    return MemoryConfigStore()


@pytest.fixture
def platform():
    return RecordingPlatform()


@pytest.fixture
def timers():
    return MemoryTimers()


@pytest.fixture
def scheduler(platform, timers, clock):
    return DelayScheduler(platform, timers=timers, clock=clock, retry_delay=timedelta(seconds=60))


@pytest.fixture
def batch_engine(store, platform, scheduler, settings, clock):
    return BatchChainEngine(store, platform, scheduler, settings, clock)


@pytest.fixture
def queueable_engine(store, platform, scheduler, settings, clock):
    return QueueableChainEngine(store, platform, scheduler, settings, clock)


@pytest.fixture(autouse=True)
def _isolated_engines():
    reset_engines()
    yield
    reset_engines()


@pytest.fixture
def installed(batch_engine, queueable_engine):
    install_engines(batch_engine, queueable_engine)
    return batch_engine, queueable_engine
