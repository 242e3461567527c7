from typing import TYPE_CHECKING

from fastapi import HTTPException, Request

if TYPE_CHECKING:
    from pvpcheap.services.automation_scheduler import AutomationSchedulerService
    from pvpcheap.services.execution_worker import ExecutionWorkerService
    from pvpcheap.services.schedule_planner import SchedulePlannerService


def get_schedule_planner(request: Request) -> "SchedulePlannerService":
    service = getattr(request.app.state, "schedule_planner", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Schedule planner is not initialized")
    return service


def get_execution_worker(request: Request) -> "ExecutionWorkerService":
    service = getattr(request.app.state, "execution_worker", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Execution worker is not initialized")
    return service


def get_automation_scheduler(request: Request) -> "AutomationSchedulerService":
    service = getattr(request.app.state, "automation_scheduler", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Automation scheduler is not initialized")
    return service
