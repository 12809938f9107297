"""Pipeline threshold configuration endpoints."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Path

from ..auth import MANAGE_THRESHOLDS, AuthorityChecker, Principal, get_current_principal
from ..dependencies import get_workflow
from ..domain import FlowThreshold
from ..schemas import ThresholdResponse, ThresholdUpdate
from ..services.workflow import ValidationWorkflowService

router = APIRouter(prefix="/pipelines", tags=["thresholds"])


@router.get("/{pipeline_id}/threshold", response_model=ThresholdResponse)
async def get_pipeline_threshold(
    pipeline_id: int = Path(gt=0),
    principal: Principal = Depends(get_current_principal),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    return await workflow.get_threshold(pipeline_id)


@router.put("/{pipeline_id}/threshold", response_model=ThresholdResponse)
async def put_pipeline_threshold(
    data: ThresholdUpdate,
    pipeline_id: int = Path(gt=0),
    principal: Principal = Depends(AuthorityChecker(MANAGE_THRESHOLDS)),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    """Replace the pipeline's active threshold."""
    threshold = FlowThreshold(pipeline_id=pipeline_id, **data.model_dump())
    return await workflow.save_threshold(threshold, actor_id=principal.user_id)
