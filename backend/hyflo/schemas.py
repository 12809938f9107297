"""Pydantic schemas for API."""
from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Optional
from datetime import date, datetime
from uuid import UUID

from .domain import AlertLevel, ReadingStatus, Severity
from .services.reading_state import ReadingEventKind


# Reading schemas
class ReadingValues(BaseModel):
    """Measurement values as entered; ranges are checked by the workflow."""
    pressure: Optional[float] = None
    temperature: Optional[float] = None
    flow_rate: Optional[float] = None
    contained_volume: Optional[float] = None
    notes: Optional[str] = None


class ReadingCreate(ReadingValues):
    pipeline_id: int = Field(gt=0)
    reading_date: date
    reading_slot_id: int = Field(gt=0)
    submit_immediately: bool = False
    severity: Severity = Severity.NORMAL


class ReadingUpdate(ReadingValues):
    """Partial update: only fields present in the request are changed."""


class ReadingSubmitRequest(BaseModel):
    severity: Severity = Severity.NORMAL


class ReadingResubmitRequest(ReadingValues):
    severity: Severity = Severity.NORMAL


class RejectRequest(BaseModel):
    reason: str


class BatchValidateRequest(BaseModel):
    reading_ids: list[int] = Field(min_length=1)


class BatchRejectRequest(BatchValidateRequest):
    reason: str


class ReadingResponse(BaseModel):
    id: int
    pipeline_id: int
    reading_date: date
    reading_slot_id: int
    pressure: Optional[float] = None
    temperature: Optional[float] = None
    flow_rate: Optional[float] = None
    contained_volume: Optional[float] = None
    notes: Optional[str] = None
    recorded_by_id: int
    recorded_at: Optional[datetime] = None
    validation_status: ReadingStatus
    validated_by_id: Optional[int] = None
    validated_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    alert_level: Optional[AlertLevel] = None
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class ReadingHistoryItem(BaseModel):
    kind: ReadingEventKind
    actor_id: int
    old_status: Optional[ReadingStatus] = None
    new_status: ReadingStatus
    occurred_at: datetime
    details: dict[str, Any] = Field(default_factory=dict)
    model_config = ConfigDict(from_attributes=True)


class BatchFailureResponse(BaseModel):
    reading_id: int
    code: str
    message: str
    model_config = ConfigDict(from_attributes=True)


class BatchResponse(BaseModel):
    succeeded: list[ReadingResponse]
    failed: list[BatchFailureResponse]
    model_config = ConfigDict(from_attributes=True)


# Evaluation schemas
class EvaluateRequest(BaseModel):
    pipeline_id: int = Field(gt=0)
    pressure: Optional[float] = None
    temperature: Optional[float] = None
    flow_rate: Optional[float] = None
    contained_volume: Optional[float] = None


class ParameterEvaluationResponse(BaseModel):
    parameter: str
    value: float
    level: AlertLevel
    position: Optional[float] = None
    source: str
    min: Optional[float] = None
    max: Optional[float] = None
    band: float
    band_clamped: bool
    model_config = ConfigDict(from_attributes=True)


class EvaluationResponse(BaseModel):
    level: AlertLevel
    threshold_id: Optional[int] = None
    parameters: list[ParameterEvaluationResponse]
    model_config = ConfigDict(from_attributes=True)


# Threshold schemas
class ThresholdUpdate(BaseModel):
    pressure_min: Optional[float] = None
    pressure_max: Optional[float] = None
    temperature_min: Optional[float] = None
    temperature_max: Optional[float] = None
    flow_rate_min: Optional[float] = None
    flow_rate_max: Optional[float] = None
    contained_volume_min: Optional[float] = None
    contained_volume_max: Optional[float] = None
    alert_tolerance: float = 0.0
    active: bool = True


class ThresholdResponse(ThresholdUpdate):
    id: int
    pipeline_id: int
    updated_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


# Notification schemas
class UnreadCountResponse(BaseModel):
    count: int


class MarkReadResponse(BaseModel):
    event_id: UUID
    updated: bool
    unread_count: int


class MarkAllReadResponse(BaseModel):
    marked: int
    unread_count: int
