"""Exceptions raised by chain engines, jobs and platforms."""

from typing import Optional


class ChainError(Exception):
    """Base exception for chainctl."""


class ConfigError(ChainError):
    """A job's chain configuration cannot be used."""

    def __init__(self, job_identifier: str, message: str):
        self.job_identifier = job_identifier
        super().__init__(message)


class ConfigNotFound(ConfigError):
    """No configuration record exists for a job identifier."""

    def __init__(self, job_identifier: str):
        super().__init__(job_identifier, f"No chain config for job: {job_identifier}")


class InactiveConfig(ConfigError):
    """Configuration exists but is switched off."""

    def __init__(self, job_identifier: str):
        super().__init__(job_identifier, f"Chain config is inactive for job: {job_identifier}")


class DuplicateActiveConfig(ConfigError):
    """More than one active record for the same job identifier."""

    def __init__(self, job_identifier: str, count: int):
        self.count = count
        super().__init__(
            job_identifier,
            f"{count} active chain configs for job: {job_identifier}",
        )


class JobFailure(ChainError):
    """Raised by job code to classify its own failure."""
    recoverable = True


class RecoverableFailure(JobFailure):
    """Transient failure; the retry policy may run the link again."""
    recoverable = True


class UnrecoverableFailure(JobFailure):
    """Failure that is never retried."""
    recoverable = False


class SubmissionRejected(ChainError):
    """The job platform declined a submission (e.g. ceiling reached)."""

    def __init__(self, job_identifier: str, reason: Optional[str] = None):
        self.job_identifier = job_identifier
        self.reason = reason
        message = f"Submission rejected for job: {job_identifier}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class JobNotRegistered(ChainError):
    """No job implementation registered under an identifier."""

    def __init__(self, job_identifier: str):
        self.job_identifier = job_identifier
        super().__init__(f"Job not registered: {job_identifier}")
