"""Contracts a job implementation satisfies to take part in a chain.

Engines and platforms only talk to ``BatchChainable`` and
``QueueableChainable``. ``BatchJob`` and ``QueueableJob`` are convenience
bases that wire the hooks to the process-wide engines; subclasses only
implement the work itself.

Usage:
    @register_job("load_accounts")
    class LoadAccounts(BatchJob):
        def start(self):
            return fetch_account_ids()

        def execute(self, chunk):
            sync_accounts(chunk)
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Iterable, List, Optional

from .models import ChainLinkConfig, ChainType, JobOutcome, JobRequest, ParameterContext

logger = logging.getLogger(__name__)


class BatchChainable(ABC):
    """Batch job: processes a record scope in chunks of ``batch_size``."""

    @abstractmethod
    def identity(self) -> str: ...

    @abstractmethod
    def resolve_config(self) -> ChainLinkConfig: ...

    @abstractmethod
    def attach(self, request: JobRequest, tracking_id: str) -> None: ...

    @abstractmethod
    def before_execution(self, parameters: ParameterContext) -> None: ...

    @abstractmethod
    def start(self) -> Iterable[Any]:
        """Return the records this run covers."""

    @abstractmethod
    def execute(self, chunk: List[Any]) -> None:
        """Process one chunk of the scope."""

    @abstractmethod
    def after_execution(self, outcome: JobOutcome) -> None: ...


class QueueableChainable(ABC):
    """Queueable job: one lightweight unit of work."""

    @abstractmethod
    def identity(self) -> str: ...

    @abstractmethod
    def resolve_config(self) -> ChainLinkConfig: ...

    @abstractmethod
    def attach(self, request: JobRequest, tracking_id: str) -> None: ...

    @abstractmethod
    def before_execution(self, parameters: ParameterContext) -> None: ...

    @abstractmethod
    def execute(self) -> None: ...

    @abstractmethod
    def after_execution(self, outcome: JobOutcome) -> None: ...

    @abstractmethod
    def on_execution_error(self, error: BaseException) -> None: ...

    @abstractmethod
    def on_completion_hook(self, outcome: JobOutcome) -> None:
        """Fired once per unit whatever the outcome."""

    @abstractmethod
    def set_parameters(self, parameters: Optional[ParameterContext]) -> None: ...

    @abstractmethod
    def get_parameters(self) -> ParameterContext: ...


class _ChainedJob:
    """Shared state and hook wiring for the job base classes."""

    chain_type: ClassVar[ChainType]
    job_identifier: ClassVar[Optional[str]] = None

    def __init__(self, engine=None):
        self._engine = engine
        self._parameters: Optional[ParameterContext] = None
        self.request: Optional[JobRequest] = None
        self.tracking_id: Optional[str] = None

    def identity(self) -> str:
        return self.job_identifier or type(self).__name__

    @property
    def engine(self):
        if self._engine is None:
            from .engine import get_engine
            self._engine = get_engine(self.chain_type)
        return self._engine

    def attach(self, request: JobRequest, tracking_id: str) -> None:
        self.request = request
        self.tracking_id = tracking_id

    def resolve_config(self) -> ChainLinkConfig:
        return self.engine.resolve_config(self.identity())

    def set_parameters(self, parameters: Optional[ParameterContext]) -> None:
        self._parameters = dict(parameters or {})

    def get_parameters(self) -> ParameterContext:
        if self._parameters is None:
            self._parameters = {}
        return self._parameters

    def before_execution(self, parameters: ParameterContext) -> None:
        self.set_parameters(parameters)

    def after_execution(self, outcome: JobOutcome) -> None:
        self.engine.continue_chain(self.identity(), outcome, self.get_parameters())


class BatchJob(_ChainedJob, BatchChainable):
    """Base class for batch jobs."""

    chain_type = ChainType.BATCH


class QueueableJob(_ChainedJob, QueueableChainable):
    """Base class for queueable jobs."""

    chain_type = ChainType.QUEUEABLE

    def on_execution_error(self, error: BaseException) -> None:
        logger.warning("Job %s raised during execution: %s", self.identity(), error)

    def on_completion_hook(self, outcome: JobOutcome) -> None:
        self.engine.on_completion_hook(self.identity(), outcome, self.get_parameters())
