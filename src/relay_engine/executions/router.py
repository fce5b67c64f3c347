"""Automation execution API router."""

from fastapi import APIRouter, HTTPException, Query

from relay_engine.common.exceptions import (
    AutomationInactiveError,
    AutomationNotFoundError,
    PersistenceError,
)
from relay_engine.executions.schemas import (
    CancelResponse,
    ExecuteRequest,
    ExecutionDetailResponse,
    ExecutionResponse,
    ExecutionResultResponse,
    FormSubmissionRequest,
    FormSubmissionResponse,
    StepExecutionResponse,
)

router = APIRouter()


def _get_engine():
    from relay_engine.deps import get_execution_engine
    return get_execution_engine()


def _get_recorder():
    from relay_engine.deps import get_execution_recorder
    return get_execution_recorder()


def _get_db():
    from relay_engine.deps import get_db
    return get_db()


@router.post(
    "/automations/{automation_id}/execute",
    response_model=ExecutionResultResponse,
)
async def execute_automation(
    automation_id: str,
    body: ExecuteRequest | None = None,
):
    engine = _get_engine()
    trigger_data = body.trigger_data if body else {}
    try:
        summary = await engine.execute_and_wait(automation_id, trigger_data)
    except AutomationNotFoundError:
        raise HTTPException(status_code=404, detail="Automation not found")
    except AutomationInactiveError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=e.message)
    return ExecutionResultResponse(
        success=summary.success,
        execution_id=summary.execution_id,
        status=summary.status,
        completed_steps=summary.completed_steps,
        total_steps=summary.total_steps,
        error_message=summary.error_message,
        execution_time_ms=summary.execution_time_ms,
    )


@router.get(
    "/automations/{automation_id}/executions",
    response_model=list[ExecutionResponse],
)
async def list_automation_executions(
    automation_id: str,
    limit: int = Query(20, ge=1, le=200),
):
    recorder = _get_recorder()
    db = _get_db()
    async with db.get_session() as session:
        executions = await recorder.list_executions(session, automation_id, limit=limit)
        return [ExecutionResponse.model_validate(e) for e in executions]


@router.get("/executions/{execution_id}", response_model=ExecutionDetailResponse)
async def get_execution(execution_id: str):
    recorder = _get_recorder()
    db = _get_db()
    async with db.get_session() as session:
        execution = await recorder.get(session, execution_id)
        if execution is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        steps = await recorder.get_steps(session, execution_id)
        detail = ExecutionResponse.model_validate(execution).model_dump()
        return ExecutionDetailResponse(
            **detail,
            steps=[StepExecutionResponse.model_validate(s) for s in steps],
        )


@router.post("/executions/{execution_id}/cancel", response_model=CancelResponse)
async def cancel_execution(execution_id: str):
    engine = _get_engine()
    if engine.cancel(execution_id):
        return CancelResponse(execution_id=execution_id, cancelled=True)

    recorder = _get_recorder()
    db = _get_db()
    async with db.get_session() as session:
        execution = await recorder.get(session, execution_id)
    if execution is None:
        raise HTTPException(status_code=404, detail="Execution not found")
    raise HTTPException(
        status_code=409,
        detail=f"Execution is not running (status: {execution.status})",
    )


@router.post(
    "/forms/{form_id}/submissions",
    response_model=FormSubmissionResponse,
    status_code=202,
)
async def submit_form(form_id: str, body: FormSubmissionRequest):
    engine = _get_engine()
    try:
        execution_ids = await engine.trigger_form_submission(form_id, body.data)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=e.message)
    return FormSubmissionResponse(form_id=form_id, execution_ids=execution_ids)
