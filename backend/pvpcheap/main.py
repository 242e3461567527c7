from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, Request
from sqlalchemy.orm import Session

from pvpcheap.api.rules import router as rules_router
from pvpcheap.api.schedules import router as schedules_router
from pvpcheap.core.config import Settings, get_settings
from pvpcheap.core.logging import configure_logging
from pvpcheap.db.session import SessionLocal, check_db_connection, get_db
from pvpcheap.services.automation_scheduler import AutomationSchedulerService
from pvpcheap.services.device_controller import build_device_controller
from pvpcheap.services.execution_worker import ExecutionWorkerService
from pvpcheap.services.schedule_planner import SchedulePlannerService


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    settings = get_settings()
    controller = build_device_controller(settings)
    schedule_planner = SchedulePlannerService(settings=settings, session_factory=SessionLocal)
    execution_worker = ExecutionWorkerService(
        settings=settings,
        session_factory=SessionLocal,
        controller=controller,
    )
    automation_scheduler = AutomationSchedulerService(
        settings=settings,
        planner=schedule_planner,
        worker=execution_worker,
    )

    app.state.settings = settings
    app.state.device_controller = controller
    app.state.schedule_planner = schedule_planner
    app.state.execution_worker = execution_worker
    app.state.automation_scheduler = automation_scheduler

    automation_scheduler.start()
    try:
        yield
    finally:
        automation_scheduler.stop()


app = FastAPI(title="pvpcheap automation backend", lifespan=lifespan)
app.include_router(schedules_router)
app.include_router(rules_router)


@app.get("/health")
def health():
    return {"status": "ok", "service": "backend"}


@app.get("/status")
def status(request: Request, db: Session = Depends(get_db)):
    db_ok, db_error = check_db_connection(db)
    automation_scheduler: AutomationSchedulerService | None = getattr(
        request.app.state,
        "automation_scheduler",
        None,
    )
    settings: Settings | None = getattr(request.app.state, "settings", None)

    db_status: dict[str, object] = {"ok": db_ok}
    if db_error:
        db_status["error"] = db_error

    if automation_scheduler is None:
        automation_status: dict[str, object] = {
            "running": False,
            "last_error": "Automation scheduler not initialized",
        }
    else:
        automation_status = automation_scheduler.get_status_snapshot()

    return {
        "status": "working",
        "service": "backend",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "db": db_status,
        "automation": automation_status,
        "config": {
            "local_timezone": settings.local_timezone if settings else None,
            "planner_enabled": settings.planner_enabled if settings else None,
            "plan_interval_seconds": settings.plan_interval_seconds if settings else None,
            "plan_days_ahead": settings.plan_days_ahead if settings else None,
            "default_off_enabled": settings.default_off_enabled if settings else None,
            "execution_enabled": settings.execution_enabled if settings else None,
            "due_sweep_seconds": settings.due_sweep_seconds if settings else None,
            "retry_sweep_seconds": settings.retry_sweep_seconds if settings else None,
            "execution_pool_size": settings.execution_pool_size if settings else None,
            "device_controller": (
                "http" if settings and settings.device_controller_base_url else "dry_run"
            ),
        },
    }
