from __future__ import annotations

from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class PlanResultResponse(BaseModel):
    date: date
    candidate_count: int
    planned_count: int
    default_off_count: int
    upserted_count: int
    removed_count: int
    price_hours: int
    skipped_rule_ids: list[int] = Field(default_factory=list)


class PlanRequestResponse(BaseModel):
    date: date
    status: str
    message: str


class SweepResultResponse(BaseModel):
    kind: str
    started_at: datetime
    finished_at: datetime | None = None
    released: int
    missed: int
    selected: int
    succeeded: int
    failed: int
    exhausted: int
    skipped: int
    errors: int
    device_count: int


class ScheduleItemResponse(BaseModel):
    id: int
    scheduled_hour: datetime
    hour: int
    device_id: int
    device_name: str | None = None
    rule_id: int | None = None
    rule_name: str | None = None
    action: str
    status: str
    retry_count: int
    executed_at: datetime | None = None
    next_retry_at: datetime | None = None
    price: float | None = None


class ScheduleResponse(BaseModel):
    date: date
    timezone: str
    items: list[ScheduleItemResponse]


class RuleRecomputeResponse(BaseModel):
    rule_id: int
    results: list[PlanResultResponse]


class RuleExecutionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    rule_id: int | None = None
    scheduled_execution_id: int | None = None
    device_id: int | None = None
    executed_at: datetime
    action_taken: str
    success: bool
    error_message: str | None = None
    price_at_execution: float | None = None
    device_state_before: dict[str, Any] | None = None
    device_state_after: dict[str, Any] | None = None


class RuleConfigValidateRequest(BaseModel):
    rule_type: str = Field(min_length=1, max_length=32)
    config: dict[str, Any] = Field(default_factory=dict)


class RuleConfigValidateResponse(BaseModel):
    valid: bool
    rule_type: str
    normalized_config: dict[str, Any] | None = None
    error: str | None = None


class AutomationRuntimeResponse(BaseModel):
    running: bool
    planner_enabled: bool
    execution_enabled: bool
    local_timezone: str
    last_error: str | None = None
    last_plan_ts: datetime | None = None
    last_due_sweep_ts: datetime | None = None
    last_retry_sweep_ts: datetime | None = None
    next_plan_ts: datetime | None = None
    next_due_sweep_ts: datetime | None = None
    next_retry_sweep_ts: datetime | None = None
    plan_request_in_progress: bool = False
    requested_plan_date: date | None = None
    last_plan_results: list[PlanResultResponse] = Field(default_factory=list)
    last_due_sweep: SweepResultResponse | None = None
    last_retry_sweep: SweepResultResponse | None = None
    retry_policy: dict[str, Any] = Field(default_factory=dict)
