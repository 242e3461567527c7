from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from pvpcheap.db.session import get_db
from pvpcheap.dependencies import get_automation_scheduler, get_execution_worker, get_schedule_planner
from pvpcheap.schemas.schedules import (
    AutomationRuntimeResponse,
    PlanRequestResponse,
    PlanResultResponse,
    ScheduleItemResponse,
    ScheduleResponse,
    SweepResultResponse,
)
from pvpcheap.services.automation_scheduler import AutomationSchedulerService
from pvpcheap.services.execution_worker import ExecutionWorkerService
from pvpcheap.services.schedule_planner import SchedulePlannerService


router = APIRouter(prefix="/api/schedule", tags=["schedule"])


@router.get("", response_model=ScheduleResponse)
def get_schedule(
    target_date: date | None = Query(default=None, alias="date"),
    db: Session = Depends(get_db),
    planner: SchedulePlannerService = Depends(get_schedule_planner),
) -> ScheduleResponse:
    day = target_date or planner.local_today()
    items = planner.get_schedule_for_date(db, day)
    return ScheduleResponse(
        date=day,
        timezone=str(planner.local_timezone),
        items=[ScheduleItemResponse.model_validate(item) for item in items],
    )


@router.post("/plan", response_model=PlanResultResponse)
def post_plan_day(
    target_date: date | None = Query(default=None, alias="date"),
    planner: SchedulePlannerService = Depends(get_schedule_planner),
) -> PlanResultResponse:
    day = target_date or planner.local_today()
    try:
        result = planner.plan_day(day)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except Exception as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    return PlanResultResponse.model_validate(result.to_dict())


@router.post("/plan/request", response_model=PlanRequestResponse, status_code=status.HTTP_202_ACCEPTED)
def post_plan_request(
    target_date: date | None = Query(default=None, alias="date"),
    planner: SchedulePlannerService = Depends(get_schedule_planner),
    scheduler: AutomationSchedulerService = Depends(get_automation_scheduler),
) -> PlanRequestResponse:
    day = target_date or planner.local_today()
    try:
        accepted = scheduler.request_plan(day)
    except RuntimeError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return PlanRequestResponse.model_validate(accepted)


@router.post("/executions/run-due", response_model=SweepResultResponse)
def post_run_due_executions(
    worker: ExecutionWorkerService = Depends(get_execution_worker),
) -> SweepResultResponse:
    try:
        result = worker.run_due_executions()
    except Exception as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    return SweepResultResponse.model_validate(result.to_dict())


@router.post("/executions/retry-sweep", response_model=SweepResultResponse)
def post_retry_sweep(
    worker: ExecutionWorkerService = Depends(get_execution_worker),
) -> SweepResultResponse:
    try:
        result = worker.run_retry_sweep()
    except Exception as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    return SweepResultResponse.model_validate(result.to_dict())


@router.get("/runtime", response_model=AutomationRuntimeResponse)
def get_automation_runtime(
    scheduler: AutomationSchedulerService = Depends(get_automation_scheduler),
) -> AutomationRuntimeResponse:
    return AutomationRuntimeResponse.model_validate(scheduler.get_status_snapshot())
