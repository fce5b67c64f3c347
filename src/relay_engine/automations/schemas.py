"""Pydantic schemas for automations, steps, triggers and step conditions."""

from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

# ── Triggers ──


class ManualTrigger(BaseModel):
    type: Literal["manual"] = "manual"


class FormSubmissionTrigger(BaseModel):
    type: Literal["form_submission"] = "form_submission"
    # None matches submissions of any form.
    form_id: Optional[str] = None


class ScheduleTrigger(BaseModel):
    """Stored for the editor only; nothing invokes scheduled runs."""

    type: Literal["schedule"] = "schedule"
    cron: Optional[str] = None
    timezone: Optional[str] = None


TriggerConfig = Annotated[
    Union[ManualTrigger, FormSubmissionTrigger, ScheduleTrigger],
    Field(discriminator="type"),
]
trigger_adapter: TypeAdapter[TriggerConfig] = TypeAdapter(TriggerConfig)

TRIGGER_TYPES: frozenset[str] = frozenset({"manual", "form_submission", "schedule"})


def parse_trigger(trigger_type: str, trigger_config: dict[str, Any] | None) -> TriggerConfig:
    """Build the typed trigger variant from the stored (type, config) pair."""
    data = dict(trigger_config or {})
    data["type"] = trigger_type
    return trigger_adapter.validate_python(data)


# ── Step conditions ──

ConditionOperator = Literal[
    "equals", "not_equals", "contains", "in",
    "gt", "gte", "lt", "lte", "exists", "not_exists",
]


class ConditionRule(BaseModel):
    field: str = Field(..., min_length=1)
    operator: ConditionOperator = "equals"
    value: Any = None


class ConditionConfigV1(BaseModel):
    version: Literal[1] = 1
    match: Literal["all", "any"] = "all"
    rules: list[ConditionRule] = Field(..., min_length=1)

    model_config = {"extra": "forbid"}


# ── Steps ──


class StepCreate(BaseModel):
    webhook_id: str
    step_order: Optional[int] = Field(None, ge=1)
    is_conditional: bool = False
    condition_config: dict[str, Any] = {}
    delay_seconds: int = Field(0, ge=0)
    retry_on_failure: bool = True
    continue_on_failure: bool = False


class StepUpdate(BaseModel):
    webhook_id: Optional[str] = None
    is_conditional: Optional[bool] = None
    condition_config: Optional[dict[str, Any]] = None
    delay_seconds: Optional[int] = Field(None, ge=0)
    retry_on_failure: Optional[bool] = None
    continue_on_failure: Optional[bool] = None


class StepWebhookSummary(BaseModel):
    id: str
    name: str
    url: str
    method: str
    is_active: bool


class StepResponse(BaseModel):
    id: str
    automation_id: str
    webhook_id: str
    step_order: int
    is_conditional: bool
    condition_config: dict[str, Any] = {}
    delay_seconds: int
    retry_on_failure: bool
    continue_on_failure: bool
    webhook: Optional[StepWebhookSummary] = None
    created_at: datetime
    updated_at: datetime


class StepReorderRequest(BaseModel):
    step_ids: list[str] = Field(..., min_length=1)


# ── Automations ──


class AutomationCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    is_active: bool = True
    trigger: TriggerConfig = Field(default_factory=ManualTrigger)
    steps: list[StepCreate] = []


class AutomationUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    is_active: Optional[bool] = None
    trigger: Optional[TriggerConfig] = None
    # When present, replaces the whole step list.
    steps: Optional[list[StepCreate]] = None


class AutomationResponse(BaseModel):
    id: str
    name: str
    description: str
    is_active: bool
    trigger_type: str
    trigger_config: dict[str, Any] = {}
    steps: list[StepResponse] = []
    created_at: datetime
    updated_at: datetime
