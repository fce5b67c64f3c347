"""Automation and step management API router."""

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from relay_engine.automations.models import AutomationModel, AutomationStepModel
from relay_engine.automations.schemas import (
    AutomationCreate,
    AutomationResponse,
    AutomationUpdate,
    StepCreate,
    StepReorderRequest,
    StepResponse,
    StepUpdate,
    StepWebhookSummary,
)
from relay_engine.common.exceptions import AutomationNotFoundError, StepNotFoundError

router = APIRouter()


def _get_store():
    from relay_engine.deps import get_automation_store
    return get_automation_store()


def _get_registry():
    from relay_engine.deps import get_webhook_registry
    return get_webhook_registry()


def _get_db():
    from relay_engine.deps import get_db
    return get_db()


async def _check_webhooks(session: AsyncSession, webhook_ids: list[str]) -> None:
    registry = _get_registry()
    for webhook_id in dict.fromkeys(webhook_ids):
        if await registry.get_webhook(session, webhook_id) is None:
            raise HTTPException(status_code=422, detail=f"Webhook {webhook_id} not found")


async def _step_response(session: AsyncSession, step: AutomationStepModel) -> StepResponse:
    webhook = await _get_registry().get_webhook(session, step.webhook_id)
    return StepResponse(
        id=step.id,
        automation_id=step.automation_id,
        webhook_id=step.webhook_id,
        step_order=step.step_order,
        is_conditional=step.is_conditional,
        condition_config=step.condition_config or {},
        delay_seconds=step.delay_seconds,
        retry_on_failure=step.retry_on_failure,
        continue_on_failure=step.continue_on_failure,
        webhook=StepWebhookSummary(
            id=webhook.id, name=webhook.name, url=webhook.url,
            method=webhook.method, is_active=webhook.is_active,
        ) if webhook is not None else None,
        created_at=step.created_at,
        updated_at=step.updated_at,
    )


async def _automation_response(
    session: AsyncSession, automation: AutomationModel,
) -> AutomationResponse:
    steps = await _get_store().get_steps(session, automation.id)
    return AutomationResponse(
        id=automation.id,
        name=automation.name,
        description=automation.description,
        is_active=automation.is_active,
        trigger_type=automation.trigger_type,
        trigger_config=automation.trigger_config or {},
        steps=[await _step_response(session, s) for s in steps],
        created_at=automation.created_at,
        updated_at=automation.updated_at,
    )


# ── Automations ──


@router.post("/automations", response_model=AutomationResponse, status_code=201)
async def create_automation(body: AutomationCreate):
    store = _get_store()
    db = _get_db()
    async with db.get_session() as session:
        await _check_webhooks(session, [s.webhook_id for s in body.steps])
        try:
            automation = await store.create_automation(
                session,
                name=body.name,
                description=body.description,
                is_active=body.is_active,
                trigger=body.trigger,
                steps=[s.model_dump() for s in body.steps],
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return await _automation_response(session, automation)


@router.get("/automations", response_model=list[AutomationResponse])
async def list_automations(
    is_active: bool | None = Query(None),
    trigger_type: str | None = Query(None),
):
    store = _get_store()
    db = _get_db()
    async with db.get_session() as session:
        automations = await store.list_automations(
            session, is_active=is_active, trigger_type=trigger_type,
        )
        return [await _automation_response(session, a) for a in automations]


@router.get("/automations/{automation_id}", response_model=AutomationResponse)
async def get_automation(automation_id: str):
    store = _get_store()
    db = _get_db()
    async with db.get_session() as session:
        automation = await store.get_automation(session, automation_id)
        if automation is None:
            raise HTTPException(status_code=404, detail="Automation not found")
        return await _automation_response(session, automation)


@router.patch("/automations/{automation_id}", response_model=AutomationResponse)
async def update_automation(automation_id: str, body: AutomationUpdate):
    store = _get_store()
    db = _get_db()
    async with db.get_session() as session:
        steps = None
        if body.steps is not None:
            await _check_webhooks(session, [s.webhook_id for s in body.steps])
            steps = [s.model_dump() for s in body.steps]
        try:
            automation = await store.update_automation(
                session,
                automation_id,
                name=body.name,
                description=body.description,
                is_active=body.is_active,
                trigger=body.trigger,
                steps=steps,
            )
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        if automation is None:
            raise HTTPException(status_code=404, detail="Automation not found")
        return await _automation_response(session, automation)


@router.delete("/automations/{automation_id}", status_code=204)
async def delete_automation(automation_id: str):
    store = _get_store()
    db = _get_db()
    async with db.get_session() as session:
        deleted = await store.delete_automation(session, automation_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="Automation not found")
    return Response(status_code=204)


# ── Steps ──


@router.post(
    "/automations/{automation_id}/steps",
    response_model=StepResponse,
    status_code=201,
)
async def add_step(automation_id: str, body: StepCreate):
    store = _get_store()
    db = _get_db()
    async with db.get_session() as session:
        await _check_webhooks(session, [body.webhook_id])
        options = body.model_dump(exclude={"webhook_id", "step_order"})
        try:
            step = await store.add_step(
                session, automation_id, body.webhook_id,
                step_order=body.step_order, **options,
            )
        except AutomationNotFoundError:
            raise HTTPException(status_code=404, detail="Automation not found")
        except ValueError as e:
            raise HTTPException(status_code=409, detail=str(e))
        return await _step_response(session, step)


@router.patch(
    "/automations/{automation_id}/steps/{step_id}",
    response_model=StepResponse,
)
async def update_step(automation_id: str, step_id: str, body: StepUpdate):
    store = _get_store()
    db = _get_db()
    updates = body.model_dump(exclude_none=True)
    async with db.get_session() as session:
        existing = await store.get_step(session, step_id)
        if existing is None or existing.automation_id != automation_id:
            raise HTTPException(status_code=404, detail="Step not found")
        if "webhook_id" in updates:
            await _check_webhooks(session, [updates["webhook_id"]])
        try:
            step = await store.update_step(session, step_id, **updates)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return await _step_response(session, step)


@router.delete("/automations/{automation_id}/steps/{step_id}", status_code=204)
async def remove_step(automation_id: str, step_id: str):
    store = _get_store()
    db = _get_db()
    async with db.get_session() as session:
        existing = await store.get_step(session, step_id)
        if existing is None or existing.automation_id != automation_id:
            raise HTTPException(status_code=404, detail="Step not found")
        await store.remove_step(session, step_id)
    return Response(status_code=204)


@router.post(
    "/automations/{automation_id}/steps/reorder",
    response_model=list[StepResponse],
)
async def reorder_steps(automation_id: str, body: StepReorderRequest):
    """Renumber the steps 1..N in the order given."""
    store = _get_store()
    db = _get_db()
    async with db.get_session() as session:
        if await store.get_automation(session, automation_id) is None:
            raise HTTPException(status_code=404, detail="Automation not found")
        try:
            steps = await store.renumber_steps(session, automation_id, body.step_ids)
        except StepNotFoundError as e:
            raise HTTPException(status_code=422, detail=e.message)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return [await _step_response(session, s) for s in steps]
