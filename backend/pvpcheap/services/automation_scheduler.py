from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Any

from pvpcheap.core.config import Settings
from pvpcheap.services.execution_worker import ExecutionWorkerService, SweepResult
from pvpcheap.services.schedule_planner import PlanResult, SchedulePlannerService

_FAILED_JOB_RETRY_SECONDS = 60


class AutomationSchedulerService:
    """Timer loop firing the planning pass and both execution sweeps."""

    def __init__(
        self,
        *,
        settings: Settings,
        planner: SchedulePlannerService,
        worker: ExecutionWorkerService,
    ) -> None:
        self._settings = settings
        self._planner = planner
        self._worker = worker
        self._logger = logging.getLogger("pvpcheap.automation_scheduler")

        self._stop_event = Event()
        self._thread: Thread | None = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="schedule-plan-request")

        self._lock = Lock()
        self._running = False
        self._last_error: str | None = None
        self._last_plan_ts: datetime | None = None
        self._last_due_ts: datetime | None = None
        self._last_retry_ts: datetime | None = None
        self._next_plan_ts: datetime | None = None
        self._next_due_ts: datetime | None = None
        self._next_retry_ts: datetime | None = None
        self._last_plan_results: list[PlanResult] = []
        self._last_due_result: SweepResult | None = None
        self._last_retry_result: SweepResult | None = None
        self._plan_future: Future[PlanResult] | None = None
        self._requested_plan_date: date | None = None

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._running = True
            now = datetime.now(timezone.utc)
            self._next_plan_ts = now
            self._next_due_ts = now
            self._next_retry_ts = now
        self._stop_event.clear()
        self._thread = Thread(target=self._loop, name="automation-scheduler", daemon=True)
        self._thread.start()
        self._logger.info(
            "started automation scheduler planner=%s execution=%s plan=%ss due=%ss retry=%ss",
            self._settings.planner_enabled,
            self._settings.execution_enabled,
            self._settings.plan_interval_seconds,
            self._settings.due_sweep_seconds,
            self._settings.retry_sweep_seconds,
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
        self._executor.shutdown(wait=False, cancel_futures=False)
        self._worker.shutdown()
        with self._lock:
            self._running = False

    def request_plan(self, target_date: date) -> dict[str, Any]:
        with self._lock:
            plan_future = self._plan_future
            if plan_future is not None and not plan_future.done():
                raise RuntimeError("A schedule planning pass is already in progress")
            future = self._executor.submit(self._plan_worker, target_date)
            self._plan_future = future
            self._requested_plan_date = target_date
        return {
            "date": target_date.isoformat(),
            "status": "accepted",
            "message": "Schedule planning queued",
        }

    def get_status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            plan_future = self._plan_future
            return {
                "running": self._running and not self._stop_event.is_set(),
                "planner_enabled": self._settings.planner_enabled,
                "execution_enabled": self._settings.execution_enabled,
                "local_timezone": self._settings.local_timezone,
                "last_error": self._last_error,
                "last_plan_ts": _to_iso(self._last_plan_ts),
                "last_due_sweep_ts": _to_iso(self._last_due_ts),
                "last_retry_sweep_ts": _to_iso(self._last_retry_ts),
                "next_plan_ts": _to_iso(self._next_plan_ts),
                "next_due_sweep_ts": _to_iso(self._next_due_ts),
                "next_retry_sweep_ts": _to_iso(self._next_retry_ts),
                "plan_request_in_progress": plan_future is not None and not plan_future.done(),
                "requested_plan_date": self._requested_plan_date.isoformat() if self._requested_plan_date else None,
                "last_plan_results": [result.to_dict() for result in self._last_plan_results],
                "last_due_sweep": self._last_due_result.to_dict() if self._last_due_result else None,
                "last_retry_sweep": self._last_retry_result.to_dict() if self._last_retry_result else None,
                "retry_policy": {
                    "max_attempts": self._worker.retry_policy.max_attempts,
                    "initial_seconds": self._worker.retry_policy.initial_seconds,
                    "multiplier": self._worker.retry_policy.multiplier,
                    "max_seconds": self._worker.retry_policy.max_seconds,
                },
            }

    def run_tick(self, *, now: datetime) -> None:
        """Run every job that is due. A failing job backs off without blocking the others."""
        with self._lock:
            next_plan = self._next_plan_ts or now
            next_due = self._next_due_ts or now
            next_retry = self._next_retry_ts or now

        ran_jobs = False
        errors: list[str] = []

        if self._settings.planner_enabled and now >= next_plan:
            ran_jobs = True
            try:
                results = self._planner.plan_upcoming(now=now)
            except Exception as exc:
                self._logger.exception("scheduled planning pass failed")
                errors.append(f"plan: {exc}")
                with self._lock:
                    self._next_plan_ts = now + _failure_backoff(self._settings.plan_interval_seconds)
            else:
                with self._lock:
                    self._last_plan_results = results
                    self._last_plan_ts = now
                    self._next_plan_ts = now + timedelta(seconds=self._settings.plan_interval_seconds)

        if self._settings.execution_enabled and now >= next_due:
            ran_jobs = True
            try:
                due_result = self._worker.run_due_executions(now=now)
            except Exception as exc:
                self._logger.exception("due execution sweep failed")
                errors.append(f"due sweep: {exc}")
                with self._lock:
                    self._next_due_ts = now + _failure_backoff(self._settings.due_sweep_seconds)
            else:
                with self._lock:
                    self._last_due_result = due_result
                    self._last_due_ts = now
                    self._next_due_ts = _next_due_time(now, self._settings.due_sweep_seconds)

        if self._settings.execution_enabled and now >= next_retry:
            ran_jobs = True
            try:
                retry_result = self._worker.run_retry_sweep(now=now)
            except Exception as exc:
                self._logger.exception("retry sweep failed")
                errors.append(f"retry sweep: {exc}")
                with self._lock:
                    self._next_retry_ts = now + _failure_backoff(self._settings.retry_sweep_seconds)
            else:
                with self._lock:
                    self._last_retry_result = retry_result
                    self._last_retry_ts = now
                    self._next_retry_ts = now + timedelta(seconds=self._settings.retry_sweep_seconds)

        if ran_jobs:
            with self._lock:
                self._last_error = "; ".join(errors) if errors else None

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            now = datetime.now(timezone.utc)
            try:
                self.run_tick(now=now)
            except Exception as exc:
                self._logger.exception("automation scheduler tick failed")
                with self._lock:
                    self._last_error = str(exc)

            self._stop_event.wait(1.0)

    def _plan_worker(self, target_date: date) -> PlanResult:
        try:
            result = self._planner.plan_day(target_date)
        except Exception as exc:
            self._logger.exception("requested planning pass failed date=%s", target_date.isoformat())
            with self._lock:
                self._last_error = str(exc)
            raise
        with self._lock:
            self._last_plan_results = [result]
            self._last_plan_ts = datetime.now(timezone.utc)
        return result


def _next_due_time(now: datetime, interval_seconds: int) -> datetime:
    # The due sweep also fires right after every hour boundary.
    next_hour = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
    return min(now + timedelta(seconds=interval_seconds), next_hour)


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _failure_backoff(interval_seconds: int) -> timedelta:
    return timedelta(seconds=min(interval_seconds, _FAILED_JOB_RETRY_SECONDS))
