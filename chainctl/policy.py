"""Retry/failure policy for chain links.

Both functions are pure: the engines own every side effect (resubmission,
scheduling, logging).
"""

from datetime import timedelta

from .models import OutcomeKind, PolicyDecision


def decide(
    retries: int,
    max_retries: int,
    outcome: OutcomeKind,
    continue_on_failure: bool,
) -> PolicyDecision:
    """Decide what happens after a link finished.

    Args:
        retries: Retries already performed for this link (attempt - 1).
        max_retries: Configured ceiling for the link.
        outcome: Terminal outcome of the attempt.
        continue_on_failure: Whether the chain may proceed past a failure.
    """
    if outcome == OutcomeKind.SUCCESS:
        return PolicyDecision.CONTINUE
    if outcome == OutcomeKind.RECOVERABLE_FAILURE and retries < max_retries:
        return PolicyDecision.RETRY
    if continue_on_failure:
        return PolicyDecision.CONTINUE
    return PolicyDecision.ABORT


def retry_delay(retry_number: int, base: float, max_delay: int) -> timedelta:
    """Exponential backoff before retry number `retry_number` (1-based)."""
    if base <= 0 or retry_number < 1:
        return timedelta(0)
    delay_seconds = min(base ** (retry_number - 1), max_delay)
    return timedelta(seconds=delay_seconds)
