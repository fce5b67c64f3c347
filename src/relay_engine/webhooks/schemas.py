"""Pydantic schemas for webhook API endpoints."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]
PayloadType = Literal["json", "pdf", "dynamic"]


class WebhookCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    url: str = Field(..., min_length=1, max_length=2048)
    method: HttpMethod = "POST"
    headers: dict[str, str] = {}
    payload_type: PayloadType = "json"
    payload_template: str = ""
    retry_enabled: bool = True
    retry_count: Optional[int] = Field(None, ge=0, le=10)
    retry_delay_seconds: Optional[int] = Field(None, ge=0, le=3600)
    timeout_seconds: Optional[int] = Field(None, ge=1, le=300)
    is_active: bool = True


class WebhookUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    url: Optional[str] = Field(None, min_length=1, max_length=2048)
    method: Optional[HttpMethod] = None
    headers: Optional[dict[str, str]] = None
    payload_type: Optional[PayloadType] = None
    payload_template: Optional[str] = None
    retry_enabled: Optional[bool] = None
    retry_count: Optional[int] = Field(None, ge=0, le=10)
    retry_delay_seconds: Optional[int] = Field(None, ge=0, le=3600)
    timeout_seconds: Optional[int] = Field(None, ge=1, le=300)
    is_active: Optional[bool] = None


class WebhookResponse(BaseModel):
    id: str
    name: str
    url: str
    method: str
    headers: dict[str, str] = {}
    payload_type: str
    payload_template: str
    retry_enabled: bool
    retry_count: int
    retry_delay_seconds: int
    timeout_seconds: int
    is_active: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class WebhookTestRequest(BaseModel):
    test_payload: dict[str, Any] = Field(default_factory=dict, alias="testPayload")

    model_config = {"populate_by_name": True}


class WebhookTestResponse(BaseModel):
    success: bool
    status_code: Optional[int] = None
    response_body: Optional[str] = None
    error_message: Optional[str] = None
    response_time_ms: int = 0


class WebhookVariablesResponse(BaseModel):
    webhook_id: str
    variables: list[str] = []
