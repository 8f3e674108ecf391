"""
Retry policy for failed scrape attempts.

Pure decision logic: given how many retries a job has already used, decide
whether it goes back to the pending pool (and how long it must wait) or is
marked permanently failed. The worker applies the decision to the store.
"""

from __future__ import annotations

from dataclasses import dataclass

from src.core.config import settings


@dataclass(frozen=True)
class RetryDecision:
    should_retry: bool
    retry_count: int
    delay_seconds: float
    error: str


@dataclass
class RetryPolicy:
    """Exponential backoff: base * 2^retry_count, capped at max_delay_seconds."""

    base_delay_seconds: float = settings.SCRAPE_RETRY_BASE_DELAY_SECONDS
    max_delay_seconds: float = settings.SCRAPE_RETRY_MAX_DELAY_SECONDS
    exponential_base: float = 2.0

    def get_delay(self, retry_count: int) -> float:
        """Delay before the attempt following ``retry_count`` earlier retries."""
        delay = self.base_delay_seconds * (self.exponential_base ** retry_count)
        return min(delay, self.max_delay_seconds)

    def decide(self, retry_count: int, max_retries: int, error: str) -> RetryDecision:
        attempt = retry_count + 1
        if retry_count < max_retries:
            return RetryDecision(
                should_retry=True,
                retry_count=retry_count + 1,
                delay_seconds=self.get_delay(retry_count),
                error=f"Attempt {attempt} failed: {error}",
            )
        return RetryDecision(
            should_retry=False,
            retry_count=retry_count,
            delay_seconds=0.0,
            error=f"Failed after {attempt} attempts: {error}",
        )
