from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from pvpcheap.core.config import Settings


@dataclass(frozen=True)
class RetryDecision:
    status: str
    retry_count: int
    next_retry_at: datetime | None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    initial_seconds: int
    multiplier: float
    max_seconds: int

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_seconds=settings.retry_initial_seconds,
            multiplier=settings.retry_multiplier,
            max_seconds=settings.retry_max_seconds,
        )

    def backoff(self, retry_count: int) -> timedelta:
        """Delay before the attempt that follows failure number ``retry_count``."""
        exponent = max(0, retry_count - 1)
        seconds = float(self.initial_seconds) * (self.multiplier**exponent)
        return timedelta(seconds=min(float(self.max_seconds), seconds))

    def after_failure(self, *, retry_count: int, now: datetime) -> RetryDecision:
        attempts = retry_count + 1
        if attempts >= self.max_attempts:
            return RetryDecision(status="failed", retry_count=attempts, next_retry_at=None)
        return RetryDecision(
            status="retrying",
            retry_count=attempts,
            next_retry_at=now + self.backoff(attempts),
        )
