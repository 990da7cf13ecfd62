"""chainctl - configuration-driven chains of batch and queueable jobs."""

from .capability import BatchChainable, BatchJob, QueueableChainable, QueueableJob
from .engine import (
    BatchChainEngine,
    QueueableChainEngine,
    get_batch_engine,
    get_queueable_engine,
    start_batch_chain,
    start_queueable_chain,
)
from .errors import (
    ChainError,
    ConfigNotFound,
    DuplicateActiveConfig,
    InactiveConfig,
    RecoverableFailure,
    SubmissionRejected,
    UnrecoverableFailure,
)
from .models import ChainLinkConfig, ChainType, JobOutcome, OutcomeKind, PolicyDecision
from .registry import register_job

__version__ = "1.0.0"
