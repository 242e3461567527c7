from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from pvpcheap.db.session import get_db
from pvpcheap.dependencies import get_schedule_planner
from pvpcheap.repositories.rules import get_rule
from pvpcheap.repositories.schedule import list_rule_executions
from pvpcheap.schemas.rule_configs import RuleConfigError, parse_rule_config
from pvpcheap.schemas.schedules import (
    PlanResultResponse,
    RuleConfigValidateRequest,
    RuleConfigValidateResponse,
    RuleExecutionResponse,
    RuleRecomputeResponse,
)
from pvpcheap.services.schedule_planner import SchedulePlannerService


router = APIRouter(prefix="/api/rules", tags=["rules"])


@router.post("/validate-config", response_model=RuleConfigValidateResponse)
def post_validate_rule_config(payload: RuleConfigValidateRequest) -> RuleConfigValidateResponse:
    try:
        config = parse_rule_config(payload.rule_type, payload.config)
    except RuleConfigError as exc:
        return RuleConfigValidateResponse(valid=False, rule_type=payload.rule_type, error=exc.detail)
    normalized = config.model_dump(mode="json", exclude={"rule_type"})
    return RuleConfigValidateResponse(valid=True, rule_type=payload.rule_type, normalized_config=normalized)


@router.post("/{rule_id}/recompute", response_model=RuleRecomputeResponse)
def post_recompute_rule(
    rule_id: int,
    planner: SchedulePlannerService = Depends(get_schedule_planner),
) -> RuleRecomputeResponse:
    try:
        results = planner.recompute_rule(rule_id)
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except Exception as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
    return RuleRecomputeResponse(
        rule_id=rule_id,
        results=[PlanResultResponse.model_validate(result.to_dict()) for result in results],
    )


@router.get("/{rule_id}/executions", response_model=list[RuleExecutionResponse])
def get_rule_executions(
    rule_id: int,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
) -> list[RuleExecutionResponse]:
    if get_rule(db, rule_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Rule not found")
    executions = list_rule_executions(db, rule_id=rule_id, limit=limit, offset=offset)
    return [RuleExecutionResponse.model_validate(execution) for execution in executions]
