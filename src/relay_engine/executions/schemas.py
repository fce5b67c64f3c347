"""Pydantic schemas for execution API endpoints."""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


class ExecuteRequest(BaseModel):
    trigger_data: dict[str, Any] = Field(default_factory=dict, alias="triggerData")

    model_config = {"populate_by_name": True}


class ExecutionResultResponse(BaseModel):
    success: bool
    execution_id: str
    status: str
    completed_steps: int
    total_steps: int
    error_message: Optional[str] = None
    execution_time_ms: int = 0


class StepExecutionResponse(BaseModel):
    id: str
    execution_id: str
    step_id: str
    webhook_id: Optional[str] = None
    step_order: int
    status: str
    http_status: Optional[int] = None
    response_body: Optional[str] = None
    error: Optional[str] = None
    attempt_count: int
    started_at: datetime
    completed_at: datetime

    model_config = {"from_attributes": True}


class ExecutionResponse(BaseModel):
    id: str
    automation_id: str
    status: str
    trigger_data: dict[str, Any] = {}
    started_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    completed_steps: int
    total_steps: int

    model_config = {"from_attributes": True}


class ExecutionDetailResponse(ExecutionResponse):
    steps: list[StepExecutionResponse] = []


class FormSubmissionRequest(BaseModel):
    data: dict[str, Any] = {}


class FormSubmissionResponse(BaseModel):
    form_id: str
    execution_ids: list[str] = []


class CancelResponse(BaseModel):
    execution_id: str
    cancelled: bool
