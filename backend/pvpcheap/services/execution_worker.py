from __future__ import annotations

import logging
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Any, Callable

from sqlalchemy.orm import sessionmaker

from pvpcheap.core.config import Settings
from pvpcheap.repositories.prices import get_price_at
from pvpcheap.repositories.rules import get_device, touch_rule_last_triggered
from pvpcheap.repositories.schedule import (
    ScheduleViewRow,
    claim_scheduled_execution,
    complete_scheduled_execution,
    create_rule_execution,
    fail_scheduled_execution,
    list_due_pending,
    list_due_retrying,
    mark_missed,
    release_stale_claims,
)
from pvpcheap.services.device_controller import (
    DeviceController,
    DeviceControllerError,
    DeviceState,
    DeviceTarget,
)
from pvpcheap.services.retry_policy import RetryPolicy

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_RETRYING = "retrying"
OUTCOME_EXHAUSTED = "exhausted"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ERROR = "error"


@dataclass
class SweepResult:
    kind: str
    started_at: datetime
    finished_at: datetime | None = None
    released: int = 0
    missed: int = 0
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    exhausted: int = 0
    skipped: int = 0
    errors: int = 0
    device_count: int = 0

    def record(self, outcome: str) -> None:
        if outcome == OUTCOME_SUCCEEDED:
            self.succeeded += 1
        elif outcome == OUTCOME_RETRYING:
            self.failed += 1
        elif outcome == OUTCOME_EXHAUSTED:
            self.exhausted += 1
        elif outcome == OUTCOME_SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "released": self.released,
            "missed": self.missed,
            "selected": self.selected,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "exhausted": self.exhausted,
            "skipped": self.skipped,
            "errors": self.errors,
            "device_count": self.device_count,
        }


@dataclass
class _Attempt:
    action_taken: str
    success: bool = False
    error_message: str | None = None
    state_before: DeviceState | None = None
    state_after: DeviceState | None = None
    controller_invoked: bool = False
    before_error: str | None = None


class ExecutionWorkerService:
    """Drains due scheduled executions through the device controller.

    Rows of one device run in hour order on a single pool task; different
    devices run in parallel. Every attempt is audited before the scheduled row
    moves to its next status.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        session_factory: sessionmaker,
        controller: DeviceController,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._controller = controller
        self._policy = RetryPolicy.from_settings(settings)
        self._logger = logging.getLogger("pvpcheap.execution_worker")

        self._pool_size = max(1, int(settings.execution_pool_size))
        self._sweep_lock = Lock()
        self._calls_lock = Lock()
        self._abandoned_calls: list[_ControllerCall] = []

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    @property
    def abandoned_call_count(self) -> int:
        with self._calls_lock:
            self._abandoned_calls = [call for call in self._abandoned_calls if not call.done.is_set()]
            return len(self._abandoned_calls)

    def shutdown(self) -> None:
        hung = self.abandoned_call_count
        if hung:
            self._logger.warning("execution worker stopping with hung device controller calls count=%d", hung)

    def run_due_executions(self, *, now: datetime | None = None) -> SweepResult:
        current = _to_utc(now or datetime.now(timezone.utc))
        return self._run_sweep(
            kind="due",
            now=current,
            select_rows=lambda db: list_due_pending(db, now=current),
            from_statuses=("pending",),
        )

    def run_retry_sweep(self, *, now: datetime | None = None) -> SweepResult:
        current = _to_utc(now or datetime.now(timezone.utc))
        return self._run_sweep(
            kind="retry",
            now=current,
            select_rows=lambda db: list_due_retrying(db, now=current),
            from_statuses=("retrying",),
        )

    def _run_sweep(
        self,
        *,
        kind: str,
        now: datetime,
        select_rows: Callable[[Any], list[ScheduleViewRow]],
        from_statuses: tuple[str, ...],
    ) -> SweepResult:
        result = SweepResult(kind=kind, started_at=now)

        with self._session_factory() as db:
            result.released = release_stale_claims(
                db,
                claimed_before=now - timedelta(seconds=self._settings.claim_lease_seconds),
                released_at=now,
            )
            if self._settings.missed_after_seconds > 0:
                result.missed = mark_missed(
                    db,
                    hour_started_before=now - timedelta(seconds=self._settings.missed_after_seconds),
                )
            rows = select_rows(db)

        result.selected = len(rows)
        grouped = _group_by_device(rows)
        result.device_count = len(grouped)

        if grouped:
            with self._sweep_lock:
                workers = min(self._pool_size, len(grouped))
                with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"{kind}-sweep") as pool:
                    futures = [
                        pool.submit(self._run_device_rows, device_rows, from_statuses=from_statuses, now=now)
                        for device_rows in grouped.values()
                    ]
                    for future in futures:
                        for outcome in future.result():
                            result.record(outcome)

        result.finished_at = datetime.now(timezone.utc)
        self._logger.info(
            "%s sweep done selected=%d devices=%d succeeded=%d retrying=%d exhausted=%d skipped=%d errors=%d missed=%d released=%d",
            kind,
            result.selected,
            result.device_count,
            result.succeeded,
            result.failed,
            result.exhausted,
            result.skipped,
            result.errors,
            result.missed,
            result.released,
        )
        return result

    def _run_device_rows(
        self,
        rows: list[ScheduleViewRow],
        *,
        from_statuses: tuple[str, ...],
        now: datetime,
    ) -> list[str]:
        outcomes: list[str] = []
        for index, row in enumerate(rows):
            try:
                outcomes.append(self._execute_row(row, from_statuses=from_statuses, now=now))
            except Exception:
                # Later rows of this device stay unclaimed until the next sweep.
                self._logger.exception(
                    "scheduled execution aborted id=%s device_id=%s hour=%s",
                    row.id,
                    row.device_id,
                    row.scheduled_hour.isoformat(),
                )
                outcomes.append(OUTCOME_ERROR)
                outcomes.extend(OUTCOME_SKIPPED for _ in rows[index + 1 :])
                break
        return outcomes

    def _execute_row(self, row: ScheduleViewRow, *, from_statuses: tuple[str, ...], now: datetime) -> str:
        with self._session_factory() as db:
            retry_count = claim_scheduled_execution(
                db,
                execution_id=row.id,
                from_statuses=from_statuses,
                claimed_at=now,
            )
            if retry_count is None:
                self._logger.debug("scheduled execution already claimed id=%s", row.id)
                return OUTCOME_SKIPPED

            device = get_device(db, row.device_id)
            price = get_price_at(db, ts=row.scheduled_hour)

        attempt = self._attempt(row, device)
        executed_at = now

        with self._session_factory() as db:
            audit = create_rule_execution(
                db,
                rule_id=row.rule_id,
                scheduled_execution_id=row.id,
                device_id=row.device_id,
                executed_at=executed_at,
                action_taken=attempt.action_taken,
                success=attempt.success,
                error_message=attempt.error_message,
                price_at_execution=price,
                device_state_before=_state_json(attempt.state_before, attempt.before_error),
                device_state_after=_state_json(attempt.state_after, None),
            )
            audit_id = int(audit.id)

            if attempt.success:
                outcome = OUTCOME_SUCCEEDED
                updated = complete_scheduled_execution(
                    db,
                    execution_id=row.id,
                    status=_completed_status(attempt),
                    executed_at=executed_at,
                    rule_execution_id=audit_id,
                )
            else:
                decision = self._policy.after_failure(retry_count=retry_count, now=executed_at)
                outcome = OUTCOME_EXHAUSTED if decision.status == "failed" else OUTCOME_RETRYING
                updated = fail_scheduled_execution(
                    db,
                    execution_id=row.id,
                    status=decision.status,
                    retry_count=decision.retry_count,
                    last_retry_at=executed_at,
                    next_retry_at=decision.next_retry_at,
                    rule_execution_id=audit_id,
                )

            if not updated:
                self._logger.warning(
                    "scheduled execution claim lost before status update id=%s audit_id=%s",
                    row.id,
                    audit_id,
                )

            if attempt.controller_invoked and row.rule_id is not None:
                try:
                    touch_rule_last_triggered(db, rule_id=row.rule_id, triggered_at=executed_at)
                except Exception:
                    db.rollback()
                    self._logger.exception("failed to update last_triggered_at rule_id=%s", row.rule_id)

        log = self._logger.info if attempt.success else self._logger.warning
        log(
            "scheduled execution id=%s device_id=%s rule_id=%s hour=%s action=%s outcome=%s error=%s",
            row.id,
            row.device_id,
            row.rule_id,
            row.scheduled_hour.isoformat(),
            attempt.action_taken,
            outcome,
            attempt.error_message,
        )
        return outcome

    def _attempt(self, row: ScheduleViewRow, device: Any) -> _Attempt:
        attempt = _Attempt(action_taken=row.expected_action)
        if device is None:
            attempt.error_message = f"device {row.device_id} not found"
            return attempt

        target = DeviceTarget(
            device_id=int(device.id),
            external_id=str(device.external_id),
            integration_id=int(device.integration_id),
            name=str(device.name),
        )

        try:
            attempt.state_before = self._call(_ControllerCall(self._controller.get_state, target))
        except DeviceControllerError as exc:
            attempt.before_error = str(exc)

        if row.expected_action == "toggle" and attempt.state_before is not None:
            attempt.action_taken = "turn_off" if attempt.state_before.is_on else "turn_on"

        call = _ControllerCall(self._controller.apply, target, attempt.action_taken)
        try:
            attempt.state_after = self._call(call)
            attempt.success = True
        except DeviceControllerError as exc:
            attempt.error_message = str(exc)
        finally:
            attempt.controller_invoked = call.started.is_set()
        return attempt

    def _call(self, call: _ControllerCall) -> DeviceState:
        timeout = float(self._settings.device_controller_timeout_seconds)
        call.start(timeout_seconds=timeout)
        if not call.done.wait(timeout):
            with self._calls_lock:
                self._abandoned_calls.append(call)
            self._logger.warning(
                "device controller call abandoned after timeout call=%s device_id=%s",
                call.name,
                call.device_id,
            )
            raise DeviceControllerError(f"device controller timed out after {timeout:.1f}s")
        if isinstance(call.error, DeviceControllerError):
            raise call.error
        if call.error is not None:
            raise DeviceControllerError(f"device controller error: {call.error}") from call.error
        return call.value


class _ControllerCall:
    """One controller call on its own daemon thread.

    A call that never returns only holds its own thread, so timed-out calls
    cannot starve later calls for other devices.
    """

    def __init__(self, fn: Callable[..., DeviceState], target: DeviceTarget, *args: Any) -> None:
        self._fn = fn
        self._target = target
        self._args = args
        self.name = getattr(fn, "__name__", "call")
        self.device_id = target.device_id
        self.started = Event()
        self.done = Event()
        self.value: DeviceState | None = None
        self.error: Exception | None = None

    def start(self, *, timeout_seconds: float) -> None:
        thread = Thread(
            target=self._run,
            args=(timeout_seconds,),
            name=f"device-call-{self.device_id}",
            daemon=True,
        )
        thread.start()

    def _run(self, timeout_seconds: float) -> None:
        self.started.set()
        try:
            self.value = self._fn(self._target, *self._args, timeout_seconds=timeout_seconds)
        except Exception as exc:
            self.error = exc
        finally:
            self.done.set()


def _group_by_device(rows: list[ScheduleViewRow]) -> "OrderedDict[int, list[ScheduleViewRow]]":
    grouped: OrderedDict[int, list[ScheduleViewRow]] = OrderedDict()
    for row in sorted(rows, key=lambda item: (item.device_id, item.scheduled_hour, item.id)):
        grouped.setdefault(row.device_id, []).append(row)
    return grouped


def _completed_status(attempt: _Attempt) -> str:
    if attempt.action_taken == "toggle" and attempt.state_after is not None:
        return "completed_on" if attempt.state_after.is_on else "completed_off"
    if attempt.action_taken == "turn_off":
        return "completed_off"
    return "completed_on"


def _state_json(state: DeviceState | None, error: str | None) -> dict[str, Any] | None:
    if state is not None:
        return state.to_json()
    if error:
        return {"error": error}
    return None


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
