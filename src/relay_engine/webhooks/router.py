"""Webhook management API router."""

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import Response

from relay_engine.common.exceptions import ConfigurationError, DispatchError, ValidationError
from relay_engine.webhooks.dispatcher import WebhookSpec
from relay_engine.webhooks.schemas import (
    WebhookCreate,
    WebhookResponse,
    WebhookTestRequest,
    WebhookTestResponse,
    WebhookUpdate,
    WebhookVariablesResponse,
)
from relay_engine.webhooks.renderer import find_tokens

router = APIRouter()


def _get_registry():
    from relay_engine.deps import get_webhook_registry
    return get_webhook_registry()


def _get_dispatcher():
    from relay_engine.deps import get_webhook_dispatcher
    return get_webhook_dispatcher()


def _get_renderer():
    from relay_engine.deps import get_payload_renderer
    return get_payload_renderer()


def _get_db():
    from relay_engine.deps import get_db
    return get_db()


@router.post("/webhooks", response_model=WebhookResponse, status_code=201)
async def create_webhook(body: WebhookCreate):
    registry = _get_registry()
    db = _get_db()
    async with db.get_session() as session:
        webhook = await registry.create_webhook(session, **body.model_dump())
        return WebhookResponse.model_validate(webhook)


@router.get("/webhooks", response_model=list[WebhookResponse])
async def list_webhooks(is_active: bool | None = Query(None)):
    registry = _get_registry()
    db = _get_db()
    async with db.get_session() as session:
        webhooks = await registry.list_webhooks(session, is_active=is_active)
        return [WebhookResponse.model_validate(w) for w in webhooks]


@router.get("/webhooks/{webhook_id}", response_model=WebhookResponse)
async def get_webhook(webhook_id: str):
    registry = _get_registry()
    db = _get_db()
    async with db.get_session() as session:
        webhook = await registry.get_webhook(session, webhook_id)
        if webhook is None:
            raise HTTPException(status_code=404, detail="Webhook not found")
        return WebhookResponse.model_validate(webhook)


@router.patch("/webhooks/{webhook_id}", response_model=WebhookResponse)
async def update_webhook(webhook_id: str, body: WebhookUpdate):
    registry = _get_registry()
    db = _get_db()
    updates = body.model_dump(exclude_none=True)
    async with db.get_session() as session:
        webhook = await registry.update_webhook(session, webhook_id, **updates)
        if webhook is None:
            raise HTTPException(status_code=404, detail="Webhook not found")
        return WebhookResponse.model_validate(webhook)


@router.delete("/webhooks/{webhook_id}", status_code=204)
async def delete_webhook(webhook_id: str):
    registry = _get_registry()
    db = _get_db()
    async with db.get_session() as session:
        deleted = await registry.delete_webhook(session, webhook_id)
        if not deleted:
            raise HTTPException(status_code=404, detail="Webhook not found")
    return Response(status_code=204)


@router.post("/webhooks/{webhook_id}/test", response_model=WebhookTestResponse)
async def test_webhook(webhook_id: str, body: WebhookTestRequest | None = None):
    """Fire one ad-hoc attempt without an automation or retries."""
    registry = _get_registry()
    db = _get_db()
    async with db.get_session() as session:
        webhook = await registry.get_webhook(session, webhook_id)
        if webhook is None:
            raise HTTPException(status_code=404, detail="Webhook not found")
        spec = WebhookSpec.from_model(webhook)

    test_payload = body.test_payload if body else {}
    try:
        payload = _get_renderer().render_webhook(spec, test_payload, test_payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.message)

    dispatcher = _get_dispatcher()
    try:
        result = await dispatcher.dispatch(spec, payload)
    except ConfigurationError as e:
        return WebhookTestResponse(success=False, error_message=e.message)
    except DispatchError as e:
        return WebhookTestResponse(
            success=False,
            status_code=e.status_code,
            response_body=e.body,
            error_message=e.message,
            response_time_ms=e.latency_ms,
        )
    return WebhookTestResponse(
        success=True,
        status_code=result.status_code,
        response_body=result.body,
        response_time_ms=result.latency_ms,
    )


@router.get("/webhooks/{webhook_id}/variables", response_model=WebhookVariablesResponse)
async def list_webhook_variables(webhook_id: str):
    """The ``{{...}}`` tokens a webhook's template can be bound with."""
    registry = _get_registry()
    db = _get_db()
    async with db.get_session() as session:
        webhook = await registry.get_webhook(session, webhook_id)
        if webhook is None:
            raise HTTPException(status_code=404, detail="Webhook not found")
        return WebhookVariablesResponse(
            webhook_id=webhook.id,
            variables=find_tokens(webhook.payload_template),
        )
