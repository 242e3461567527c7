from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest import TestCase

from pvpcheap.core.config import Settings
from pvpcheap.services.retry_policy import RetryPolicy


class RetryPolicyTests(TestCase):
    def test_backoff_grows_exponentially_and_is_capped(self) -> None:
        policy = RetryPolicy(max_attempts=10, initial_seconds=60, multiplier=2.0, max_seconds=900)

        self.assertEqual(policy.backoff(1), timedelta(seconds=60))
        self.assertEqual(policy.backoff(2), timedelta(seconds=120))
        self.assertEqual(policy.backoff(3), timedelta(seconds=240))
        self.assertEqual(policy.backoff(4), timedelta(seconds=480))
        self.assertEqual(policy.backoff(5), timedelta(seconds=900))
        self.assertEqual(policy.backoff(9), timedelta(seconds=900))

    def test_failures_below_cap_schedule_a_retry(self) -> None:
        policy = RetryPolicy(max_attempts=3, initial_seconds=60, multiplier=2.0, max_seconds=900)
        now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

        first = policy.after_failure(retry_count=0, now=now)
        second = policy.after_failure(retry_count=1, now=now)

        self.assertEqual(first.status, "retrying")
        self.assertEqual(first.retry_count, 1)
        self.assertEqual(first.next_retry_at, now + timedelta(seconds=60))
        self.assertEqual(second.status, "retrying")
        self.assertEqual(second.retry_count, 2)
        self.assertEqual(second.next_retry_at, now + timedelta(seconds=120))

    def test_failure_reaching_cap_is_terminal(self) -> None:
        policy = RetryPolicy(max_attempts=3, initial_seconds=60, multiplier=2.0, max_seconds=900)
        now = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)

        decision = policy.after_failure(retry_count=2, now=now)

        self.assertEqual(decision.status, "failed")
        self.assertEqual(decision.retry_count, 3)
        self.assertIsNone(decision.next_retry_at)

    def test_single_attempt_policy_fails_immediately(self) -> None:
        policy = RetryPolicy(max_attempts=1, initial_seconds=60, multiplier=2.0, max_seconds=900)

        decision = policy.after_failure(retry_count=0, now=datetime.now(timezone.utc))

        self.assertEqual(decision.status, "failed")

    def test_from_settings(self) -> None:
        settings = Settings(
            retry_max_attempts=4,
            retry_initial_seconds=30,
            retry_multiplier=3.0,
            retry_max_seconds=600,
        )

        policy = RetryPolicy.from_settings(settings)

        self.assertEqual(policy, RetryPolicy(max_attempts=4, initial_seconds=30, multiplier=3.0, max_seconds=600))
