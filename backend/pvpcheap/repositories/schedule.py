from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, or_, select, text, update
from sqlalchemy.orm import Session

from pvpcheap.db.models import RuleExecution, ScheduledExecution

PlanKey = tuple[int | None, int, datetime]

_UPSERT_RULE_ROW_SQL = text(
    """
    INSERT INTO scheduled_executions
        (rule_id, device_id, scheduled_hour, expected_action, status, retry_count, created_at)
    VALUES
        (:rule_id, :device_id, :scheduled_hour, :expected_action, 'pending', 0, now())
    ON CONFLICT (rule_id, scheduled_hour)
    DO UPDATE SET
        expected_action = EXCLUDED.expected_action,
        device_id = EXCLUDED.device_id
    WHERE scheduled_executions.status = 'pending'
      AND (
        scheduled_executions.expected_action IS DISTINCT FROM EXCLUDED.expected_action
        OR scheduled_executions.device_id IS DISTINCT FROM EXCLUDED.device_id
      )
    RETURNING id
    """
)

_UPSERT_DEFAULT_OFF_ROW_SQL = text(
    """
    INSERT INTO scheduled_executions
        (rule_id, device_id, scheduled_hour, expected_action, status, retry_count, created_at)
    VALUES
        (NULL, :device_id, :scheduled_hour, :expected_action, 'pending', 0, now())
    ON CONFLICT (device_id, scheduled_hour) WHERE rule_id IS NULL
    DO UPDATE SET
        expected_action = EXCLUDED.expected_action
    WHERE scheduled_executions.status = 'pending'
      AND scheduled_executions.expected_action IS DISTINCT FROM EXCLUDED.expected_action
    RETURNING id
    """
)

_RELEASE_STALE_CLAIMS_SQL = text(
    """
    UPDATE scheduled_executions
    SET
        status = CASE WHEN retry_count = 0 THEN 'pending' ELSE 'retrying' END,
        next_retry_at = CASE WHEN retry_count = 0 THEN NULL ELSE :released_at END,
        claimed_at = NULL
    WHERE status = 'in_flight'
      AND claimed_at < :claimed_before
    """
)


@dataclass(frozen=True)
class ScheduleViewRow:
    id: int
    rule_id: int | None
    device_id: int
    scheduled_hour: datetime
    expected_action: str
    status: str
    retry_count: int
    executed_at: datetime | None
    next_retry_at: datetime | None


def upsert_scheduled_execution(
    db: Session,
    *,
    rule_id: int | None,
    device_id: int,
    scheduled_hour: datetime,
    expected_action: str,
) -> int | None:
    """Insert or refresh one planned slot without committing.

    Only ``pending`` rows are rewritten. Returns the row id when something was
    inserted or changed and ``None`` when the stored row already matched or is past
    the point where the plan may change it.
    """
    if rule_id is None:
        row = db.execute(
            _UPSERT_DEFAULT_OFF_ROW_SQL,
            {
                "device_id": device_id,
                "scheduled_hour": scheduled_hour,
                "expected_action": expected_action,
            },
        ).first()
    else:
        row = db.execute(
            _UPSERT_RULE_ROW_SQL,
            {
                "rule_id": rule_id,
                "device_id": device_id,
                "scheduled_hour": scheduled_hour,
                "expected_action": expected_action,
            },
        ).first()
    if row is None:
        return None
    return int(row.id)


def delete_obsolete_pending(
    db: Session,
    *,
    start: datetime,
    end: datetime,
    keep_keys: set[PlanKey],
) -> int:
    rows = db.execute(
        select(
            ScheduledExecution.id,
            ScheduledExecution.rule_id,
            ScheduledExecution.device_id,
            ScheduledExecution.scheduled_hour,
        ).where(
            ScheduledExecution.status == "pending",
            ScheduledExecution.scheduled_hour >= start,
            ScheduledExecution.scheduled_hour < end,
        )
    ).all()

    obsolete_ids = [
        int(row.id)
        for row in rows
        if (row.rule_id, int(row.device_id), row.scheduled_hour) not in keep_keys
    ]
    if not obsolete_ids:
        return 0

    result = db.execute(
        delete(ScheduledExecution)
        .where(
            ScheduledExecution.id.in_(obsolete_ids),
            ScheduledExecution.status == "pending",
        )
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


def delete_pending_for_rule(db: Session, *, rule_id: int) -> int:
    result = db.execute(
        delete(ScheduledExecution)
        .where(
            ScheduledExecution.rule_id == rule_id,
            ScheduledExecution.status == "pending",
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(result.rowcount or 0)


def list_scheduled_for_range(db: Session, *, start: datetime, end: datetime) -> list[ScheduleViewRow]:
    rows = db.scalars(
        select(ScheduledExecution)
        .where(
            ScheduledExecution.scheduled_hour >= start,
            ScheduledExecution.scheduled_hour < end,
        )
        .order_by(
            ScheduledExecution.scheduled_hour.asc(),
            ScheduledExecution.device_id.asc(),
            ScheduledExecution.id.asc(),
        )
    )
    return [_to_view_row(row) for row in rows]


def list_due_pending(db: Session, *, now: datetime) -> list[ScheduleViewRow]:
    rows = db.scalars(
        select(ScheduledExecution)
        .where(
            ScheduledExecution.status == "pending",
            ScheduledExecution.scheduled_hour <= now,
        )
        .order_by(
            ScheduledExecution.device_id.asc(),
            ScheduledExecution.scheduled_hour.asc(),
            ScheduledExecution.id.asc(),
        )
    )
    return [_to_view_row(row) for row in rows]


def list_due_retrying(db: Session, *, now: datetime) -> list[ScheduleViewRow]:
    rows = db.scalars(
        select(ScheduledExecution)
        .where(
            ScheduledExecution.status == "retrying",
            ScheduledExecution.next_retry_at <= now,
        )
        .order_by(
            ScheduledExecution.device_id.asc(),
            ScheduledExecution.scheduled_hour.asc(),
            ScheduledExecution.id.asc(),
        )
    )
    return [_to_view_row(row) for row in rows]


def claim_scheduled_execution(
    db: Session,
    *,
    execution_id: int,
    from_statuses: tuple[str, ...],
    claimed_at: datetime,
) -> int | None:
    """Claim a due row for execution and return its current retry_count.

    Returns None when the row is no longer claimable, for example because
    another sweep holds it or its retry backoff has not elapsed yet.
    """
    result = db.execute(
        update(ScheduledExecution)
        .where(
            ScheduledExecution.id == execution_id,
            ScheduledExecution.status.in_(from_statuses),
            or_(
                ScheduledExecution.status == "pending",
                ScheduledExecution.next_retry_at <= claimed_at,
            ),
        )
        .values(status="in_flight", claimed_at=claimed_at)
        .returning(ScheduledExecution.retry_count)
        .execution_options(synchronize_session=False)
    )
    retry_count = result.scalar_one_or_none()
    db.commit()
    return int(retry_count) if retry_count is not None else None


def release_stale_claims(db: Session, *, claimed_before: datetime, released_at: datetime) -> int:
    result = db.execute(
        _RELEASE_STALE_CLAIMS_SQL,
        {"claimed_before": claimed_before, "released_at": released_at},
    )
    db.commit()
    return int(result.rowcount or 0)


def mark_missed(db: Session, *, hour_started_before: datetime) -> int:
    result = db.execute(
        update(ScheduledExecution)
        .where(
            ScheduledExecution.status.in_(("pending", "retrying")),
            ScheduledExecution.scheduled_hour <= hour_started_before,
        )
        .values(status="missed", next_retry_at=None)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(result.rowcount or 0)


def complete_scheduled_execution(
    db: Session,
    *,
    execution_id: int,
    status: str,
    executed_at: datetime,
    rule_execution_id: int | None,
) -> bool:
    result = db.execute(
        update(ScheduledExecution)
        .where(
            ScheduledExecution.id == execution_id,
            ScheduledExecution.status == "in_flight",
        )
        .values(
            status=status,
            executed_at=executed_at,
            execution_id=rule_execution_id,
            next_retry_at=None,
            claimed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(result.rowcount or 0) == 1


def fail_scheduled_execution(
    db: Session,
    *,
    execution_id: int,
    status: str,
    retry_count: int,
    last_retry_at: datetime,
    next_retry_at: datetime | None,
    rule_execution_id: int | None,
) -> bool:
    result = db.execute(
        update(ScheduledExecution)
        .where(
            ScheduledExecution.id == execution_id,
            ScheduledExecution.status == "in_flight",
        )
        .values(
            status=status,
            retry_count=retry_count,
            last_retry_at=last_retry_at,
            next_retry_at=next_retry_at,
            execution_id=rule_execution_id,
            claimed_at=None,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return int(result.rowcount or 0) == 1


def create_rule_execution(
    db: Session,
    *,
    rule_id: int | None,
    scheduled_execution_id: int | None,
    device_id: int,
    executed_at: datetime,
    action_taken: str,
    success: bool,
    error_message: str | None,
    price_at_execution: float | None,
    device_state_before: dict[str, Any] | None,
    device_state_after: dict[str, Any] | None,
) -> RuleExecution:
    execution = RuleExecution(
        rule_id=rule_id,
        scheduled_execution_id=scheduled_execution_id,
        device_id=device_id,
        executed_at=executed_at,
        action_taken=action_taken,
        success=success,
        error_message=error_message,
        price_at_execution=price_at_execution,
        device_state_before=device_state_before,
        device_state_after=device_state_after,
    )
    db.add(execution)
    db.commit()
    db.refresh(execution)
    return execution


def list_rule_executions(
    db: Session,
    *,
    rule_id: int,
    limit: int = 50,
    offset: int = 0,
) -> list[RuleExecution]:
    return list(
        db.scalars(
            select(RuleExecution)
            .where(RuleExecution.rule_id == rule_id)
            .order_by(RuleExecution.executed_at.desc(), RuleExecution.id.desc())
            .offset(offset)
            .limit(limit)
        )
    )


def _to_view_row(row: ScheduledExecution) -> ScheduleViewRow:
    return ScheduleViewRow(
        id=int(row.id),
        rule_id=int(row.rule_id) if row.rule_id is not None else None,
        device_id=int(row.device_id),
        scheduled_hour=row.scheduled_hour,
        expected_action=row.expected_action,
        status=row.status,
        retry_count=int(row.retry_count),
        executed_at=row.executed_at,
        next_retry_at=row.next_retry_at,
    )
