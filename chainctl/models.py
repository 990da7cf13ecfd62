"""Data models for chain links, job requests and outcomes."""

from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator

from .utils import parse_delay, utcnow

# Opaque key/value data handed from link to link.
ParameterContext = Dict[str, Any]


def merge_parameters(
    forwarded: Optional[ParameterContext], updates: Optional[ParameterContext]
) -> ParameterContext:
    """Merge explicit updates over the forwarded context; new keys win."""
    merged = dict(forwarded or {})
    merged.update(updates or {})
    return merged


class ChainType(str, Enum):
    """Engine variants."""
    BATCH = "batch"
    QUEUEABLE = "queueable"


class OutcomeKind(str, Enum):
    """Terminal outcome of one submitted unit."""
    SUCCESS = "success"
    RECOVERABLE_FAILURE = "recoverable_failure"
    UNRECOVERABLE_FAILURE = "unrecoverable_failure"


class PolicyDecision(str, Enum):
    """What the engine does after a link reports its outcome."""
    CONTINUE = "continue"
    RETRY = "retry"
    ABORT = "abort"


class UnitState(str, Enum):
    """Platform-side lifecycle of a submitted unit."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ChainLinkConfig(BaseModel):
    """One configuration record, keyed by the job it configures."""
    current_job: str
    chain_type: ChainType = ChainType.BATCH
    next_job: Optional[str] = None
    batch_size: Optional[int] = Field(default=None, gt=0)
    execution_delay: timedelta = timedelta(0)
    is_active: bool = True
    max_retries: int = Field(default=0, ge=0)
    continue_on_failure: bool = False
    use_completion_hook: bool = False
    description: str = ""

    @field_validator("execution_delay", mode="before")
    @classmethod
    def _short_delay(cls, value):
        # "5m", "1h30m"; ISO 8601 durations and plain seconds go to pydantic
        if isinstance(value, str) and not value.strip().upper().startswith("P"):
            return parse_delay(value)
        return value

    @field_validator("execution_delay")
    @classmethod
    def _not_negative(cls, value: timedelta) -> timedelta:
        if value < timedelta(0):
            raise ValueError("execution_delay must not be negative")
        return value

    def has_delay(self) -> bool:
        return self.execution_delay > timedelta(0)


class JobRequest(BaseModel):
    """Everything the platform needs to run one link attempt."""
    job_identifier: str
    chain_type: ChainType
    parameters: ParameterContext = Field(default_factory=dict)
    batch_size: Optional[int] = None
    attempt: int = 1
    chain_id: str
    depth: int = 1


class JobOutcome(BaseModel):
    """Terminal status reported for a tracking id."""
    tracking_id: str
    kind: OutcomeKind
    request: JobRequest
    diagnostic: Optional[str] = None
    items_total: int = 0
    chunks_processed: int = 0
    chunks_failed: int = 0

    @property
    def succeeded(self) -> bool:
        return self.kind == OutcomeKind.SUCCESS


class ChainExecutionAttempt(BaseModel):
    """Ephemeral state for one link while it is being processed."""
    config: ChainLinkConfig
    parameters: ParameterContext = Field(default_factory=dict)
    tracking_id: Optional[str] = None
    attempt: int = 1
    chain_id: str
    depth: int = 1

    def to_request(self, batch_size: Optional[int] = None) -> JobRequest:
        return JobRequest(
            job_identifier=self.config.current_job,
            chain_type=self.config.chain_type,
            parameters=dict(self.parameters),
            batch_size=batch_size,
            attempt=self.attempt,
            chain_id=self.chain_id,
            depth=self.depth,
        )


class TimerEntry(BaseModel):
    """A one-shot deferred start."""
    handle: str
    fire_at: datetime
    request: JobRequest


class JobUnit(BaseModel):
    """A submitted unit as the local platform keeps it."""
    tracking_id: str
    request: JobRequest
    state: UnitState = UnitState.PENDING
    eligible_at: datetime = Field(default_factory=utcnow)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    outcome: Optional[OutcomeKind] = None
    error_message: Optional[str] = None
