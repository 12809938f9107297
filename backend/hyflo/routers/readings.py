"""Flow reading endpoints."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..auth import SUBMIT_READING, AuthorityChecker, Principal, get_current_principal
from ..dependencies import get_workflow
from ..schemas import (
    BatchRejectRequest,
    BatchResponse,
    BatchValidateRequest,
    EvaluateRequest,
    EvaluationResponse,
    ReadingCreate,
    ReadingHistoryItem,
    ReadingResponse,
    ReadingResubmitRequest,
    ReadingSubmitRequest,
    ReadingUpdate,
    RejectRequest,
)
from ..services.workflow import ReadingInput, ValidationWorkflowService

router = APIRouter(prefix="/readings", tags=["readings"])


@router.post("", response_model=ReadingResponse, status_code=201)
async def create_reading(
    data: ReadingCreate,
    principal: Principal = Depends(AuthorityChecker(SUBMIT_READING)),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    """Save a draft for the slot, submitting it when ``submit_immediately`` is set."""
    reading_input = ReadingInput(**data.model_dump(exclude={"severity"}))
    return await workflow.submit_reading(reading_input, actor_id=principal.user_id, severity=data.severity)


@router.get("/pending", response_model=list[ReadingResponse])
async def list_pending_readings(
    pipeline_id: Optional[int] = Query(None, gt=0),
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(get_current_principal),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    return await workflow.list_pending(pipeline_id=pipeline_id, limit=limit)


@router.post("/evaluate", response_model=EvaluationResponse)
async def evaluate_reading(
    data: EvaluateRequest,
    principal: Principal = Depends(get_current_principal),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    """Preview threshold status for values typed into the entry form."""
    values = data.model_dump(exclude={"pipeline_id"})
    return await workflow.evaluate_reading(values, pipeline_id=data.pipeline_id)


@router.post("/batch/validate", response_model=BatchResponse)
async def batch_validate_readings(
    data: BatchValidateRequest,
    principal: Principal = Depends(get_current_principal),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    return await workflow.batch_validate(data.reading_ids, validator_id=principal.user_id)


@router.post("/batch/reject", response_model=BatchResponse)
async def batch_reject_readings(
    data: BatchRejectRequest,
    principal: Principal = Depends(get_current_principal),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    return await workflow.batch_reject(data.reading_ids, validator_id=principal.user_id, reason=data.reason)


@router.get("/{reading_id}", response_model=ReadingResponse)
async def get_reading(
    reading_id: int,
    principal: Principal = Depends(get_current_principal),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    return await workflow.get_reading(reading_id)


@router.get("/{reading_id}/history", response_model=list[ReadingHistoryItem])
async def get_reading_history(
    reading_id: int,
    principal: Principal = Depends(get_current_principal),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    return await workflow.history(reading_id)


@router.put("/{reading_id}", response_model=ReadingResponse)
async def update_reading(
    reading_id: int,
    data: ReadingUpdate,
    principal: Principal = Depends(AuthorityChecker(SUBMIT_READING)),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    """Edit a draft or a rejected reading (which goes back to draft)."""
    changes = data.model_dump(exclude_unset=True)
    return await workflow.update_draft(reading_id, changes, actor_id=principal.user_id)


@router.post("/{reading_id}/submit", response_model=ReadingResponse)
async def submit_reading(
    reading_id: int,
    data: Optional[ReadingSubmitRequest] = None,
    principal: Principal = Depends(AuthorityChecker(SUBMIT_READING)),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    request = data or ReadingSubmitRequest()
    return await workflow.submit(reading_id, actor_id=principal.user_id, severity=request.severity)


@router.post("/{reading_id}/resubmit", response_model=ReadingResponse)
async def resubmit_reading(
    reading_id: int,
    data: ReadingResubmitRequest,
    principal: Principal = Depends(AuthorityChecker(SUBMIT_READING)),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    """Correct a rejected reading and send it back for validation."""
    changes = data.model_dump(exclude_unset=True, exclude={"severity"})
    return await workflow.resubmit(reading_id, changes, actor_id=principal.user_id, severity=data.severity)


@router.post("/{reading_id}/validate", response_model=ReadingResponse)
async def validate_reading(
    reading_id: int,
    principal: Principal = Depends(get_current_principal),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    return await workflow.validate(reading_id, validator_id=principal.user_id)


@router.post("/{reading_id}/reject", response_model=ReadingResponse)
async def reject_reading(
    reading_id: int,
    data: RejectRequest,
    principal: Principal = Depends(get_current_principal),
    workflow: ValidationWorkflowService = Depends(get_workflow),
):
    return await workflow.reject(reading_id, validator_id=principal.user_id, reason=data.reason)
