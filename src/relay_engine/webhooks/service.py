"""Webhook registry — CRUD and dispatch-time lookup of webhook definitions."""

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from relay_engine.common.config import RelaySettings
from relay_engine.common.exceptions import WebhookInactiveError, WebhookNotFoundError
from relay_engine.webhooks.dispatcher import WebhookSpec
from relay_engine.webhooks.models import WebhookModel

VALID_METHODS: frozenset[str] = frozenset({"GET", "POST", "PUT", "PATCH", "DELETE"})
VALID_PAYLOAD_TYPES: frozenset[str] = frozenset({"json", "pdf", "dynamic"})

_UPDATABLE_FIELDS = (
    "name", "url", "method", "headers", "payload_type", "payload_template",
    "retry_enabled", "retry_count", "retry_delay_seconds", "timeout_seconds",
    "is_active",
)


class WebhookRegistry:
    """Lookup and maintenance of reusable webhook definitions."""

    def __init__(self, settings: RelaySettings):
        self.settings = settings

    # ── CRUD ──

    async def create_webhook(
        self,
        session: AsyncSession,
        name: str,
        url: str,
        method: str = "POST",
        headers: dict[str, str] | None = None,
        payload_type: str = "json",
        payload_template: str = "",
        retry_enabled: bool = True,
        retry_count: int | None = None,
        retry_delay_seconds: int | None = None,
        timeout_seconds: int | None = None,
        is_active: bool = True,
    ) -> WebhookModel:
        method = method.upper()
        if method not in VALID_METHODS:
            raise ValueError(f"Unsupported method: {method}")
        if payload_type not in VALID_PAYLOAD_TYPES:
            raise ValueError(f"Unsupported payload type: {payload_type}")

        webhook = WebhookModel(
            name=name,
            url=url,
            method=method,
            headers=dict(headers or {}),
            payload_type=payload_type,
            payload_template=payload_template or "",
            retry_enabled=retry_enabled,
            retry_count=(
                self.settings.default_retry_count if retry_count is None else retry_count
            ),
            retry_delay_seconds=(
                self.settings.default_retry_delay_seconds
                if retry_delay_seconds is None else retry_delay_seconds
            ),
            timeout_seconds=timeout_seconds or self.settings.default_timeout_seconds,
            is_active=is_active,
        )
        session.add(webhook)
        await session.flush()
        return webhook

    async def get_webhook(
        self, session: AsyncSession, webhook_id: str,
    ) -> Optional[WebhookModel]:
        result = await session.execute(
            select(WebhookModel).where(WebhookModel.id == webhook_id)
        )
        return result.scalar_one_or_none()

    async def list_webhooks(
        self,
        session: AsyncSession,
        is_active: bool | None = None,
    ) -> list[WebhookModel]:
        query = select(WebhookModel)
        if is_active is not None:
            query = query.where(WebhookModel.is_active == is_active)
        query = query.order_by(WebhookModel.created_at.desc())
        result = await session.execute(query)
        return list(result.scalars().all())

    async def update_webhook(
        self,
        session: AsyncSession,
        webhook_id: str,
        **updates: Any,
    ) -> Optional[WebhookModel]:
        webhook = await self.get_webhook(session, webhook_id)
        if webhook is None:
            return None
        if updates.get("method") is not None:
            updates["method"] = updates["method"].upper()
            if updates["method"] not in VALID_METHODS:
                raise ValueError(f"Unsupported method: {updates['method']}")
        if updates.get("payload_type") is not None:
            if updates["payload_type"] not in VALID_PAYLOAD_TYPES:
                raise ValueError(f"Unsupported payload type: {updates['payload_type']}")
        for field in _UPDATABLE_FIELDS:
            if field in updates and updates[field] is not None:
                setattr(webhook, field, updates[field])
        await session.flush()
        return webhook

    async def delete_webhook(self, session: AsyncSession, webhook_id: str) -> bool:
        webhook = await self.get_webhook(session, webhook_id)
        if webhook is None:
            return False
        await session.delete(webhook)
        await session.flush()
        return True

    # ── Dispatch lookup ──

    async def resolve_for_dispatch(
        self, session: AsyncSession, webhook_id: str,
    ) -> WebhookSpec:
        """Return an immutable snapshot of an active webhook.

        Raises WebhookNotFoundError / WebhookInactiveError, both of which are
        configuration errors and must never be retried.
        """
        webhook = await self.get_webhook(session, webhook_id)
        if webhook is None:
            raise WebhookNotFoundError(f"Webhook {webhook_id} not found")
        if not webhook.is_active:
            raise WebhookInactiveError(f"Webhook {webhook.name} ({webhook_id}) is inactive")
        return WebhookSpec.from_model(webhook)
