"""Bounded retry and backoff for evaluations blocked by upstream outages."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from config import settings

BACKOFF_STRATEGIES = frozenset(["none", "fixed", "exponential"])
MAX_BACKOFF_SECONDS = 6 * 60 * 60


@dataclass(frozen=True)
class RetryPolicy:
    """How often, and how far apart, a blocked evaluation is retried."""

    max_attempts: int
    backoff_strategy: str
    backoff_base_seconds: float

    @staticmethod
    def from_settings() -> "RetryPolicy":
        """Build the policy from the ``evaluation`` settings section."""
        evaluation = settings.evaluation
        return RetryPolicy(
            max_attempts=evaluation.max_attempts,
            backoff_strategy=evaluation.backoff_strategy,
            backoff_base_seconds=evaluation.backoff_base_seconds,
        )

    def delay_after(self, attempt: int) -> float:
        """Return the pause before the attempt following ``attempt``."""
        return compute_backoff_delay_seconds(
            self.backoff_strategy,
            attempt,
            self.backoff_base_seconds,
        )


def resolve_retry_policy(policy: RetryPolicy | None) -> RetryPolicy:
    """Return ``policy`` (or the configured default) after validating it."""
    resolved = policy if policy is not None else RetryPolicy.from_settings()
    if resolved.max_attempts < 1:
        raise ValueError("max_attempts must be >= 1.")
    _check_backoff(resolved.backoff_strategy, resolved.backoff_base_seconds)
    return resolved


def should_retry(attempt_count: int, max_attempts: int) -> bool:
    """Return whether attempt ``attempt_count + 1`` is still within budget."""
    return attempt_count < max_attempts


def compute_retry_at(
    failed_at: datetime,
    retry_count: int,
    *,
    backoff_strategy: str,
    backoff_base_seconds: float,
) -> datetime:
    """Return when a queued evaluation that failed at ``failed_at`` is due again."""
    delay = compute_backoff_delay_seconds(backoff_strategy, retry_count, backoff_base_seconds)
    return failed_at + timedelta(seconds=delay)


def compute_backoff_delay_seconds(
    backoff_strategy: str,
    retry_count: int,
    backoff_base_seconds: float,
) -> float:
    """Return the delay for the ``retry_count``-th retry, capped at six hours."""
    if retry_count < 1:
        raise ValueError("retry_count must be >= 1.")
    _check_backoff(backoff_strategy, backoff_base_seconds)
    if backoff_strategy == "none":
        return 0
    if backoff_strategy == "fixed":
        delay = backoff_base_seconds
    else:
        delay = backoff_base_seconds * (2 ** (retry_count - 1))
    return min(delay, MAX_BACKOFF_SECONDS)


def _check_backoff(strategy: str, base_seconds: float) -> None:
    if strategy not in BACKOFF_STRATEGIES:
        raise ValueError(f"Unsupported backoff strategy: {strategy}")
    if base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")
