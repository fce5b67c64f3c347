"""Webhook dispatcher — single HTTP attempts and fixed-delay retry sequences."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from relay_engine.common.cancellation import CancellationToken
from relay_engine.common.config import RelaySettings
from relay_engine.common.exceptions import (
    ConfigurationError,
    DispatchError,
    DispatchTimeoutError,
    HTTPStatusError,
    NetworkError,
    WebhookInactiveError,
)

logger = logging.getLogger(__name__)

BODY_METHODS: frozenset[str] = frozenset({"POST", "PUT", "PATCH"})

_CONTENT_TYPES = {
    "json": "application/json",
    "dynamic": "application/json",
    "pdf": "text/html; charset=utf-8",
}


@dataclass(frozen=True)
class WebhookSpec:
    """Immutable snapshot of a webhook taken for the duration of a dispatch."""

    id: str
    name: str
    url: str
    method: str = "POST"
    headers: tuple[tuple[str, str], ...] = ()
    payload_type: str = "json"
    payload_template: str = ""
    retry_enabled: bool = True
    retry_count: int = 3
    retry_delay_seconds: int = 30
    timeout_seconds: int = 30
    is_active: bool = True

    @classmethod
    def from_model(cls, model: Any) -> "WebhookSpec":
        return cls(
            id=model.id,
            name=model.name,
            url=model.url,
            method=(model.method or "POST").upper(),
            headers=tuple((str(k), str(v)) for k, v in (model.headers or {}).items()),
            payload_type=model.payload_type,
            payload_template=model.payload_template or "",
            retry_enabled=bool(model.retry_enabled),
            retry_count=model.retry_count,
            retry_delay_seconds=model.retry_delay_seconds,
            timeout_seconds=model.timeout_seconds,
            is_active=bool(model.is_active),
        )


@dataclass(frozen=True)
class RetryPolicy:
    """How many attempts a dispatch gets and how long to wait between them."""

    max_attempts: int = 1
    fixed_delay: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.fixed_delay < 0:
            raise ValueError("fixed_delay must be >= 0")

    @classmethod
    def for_step(cls, webhook: WebhookSpec, retry_on_failure: bool) -> "RetryPolicy":
        """Effective policy: the step gates the webhook's own retry settings."""
        if not retry_on_failure or not webhook.retry_enabled:
            return cls(max_attempts=1, fixed_delay=0.0)
        return cls(
            max_attempts=1 + max(webhook.retry_count, 0),
            fixed_delay=float(max(webhook.retry_delay_seconds, 0)),
        )


@dataclass
class DispatchResult:
    status_code: int
    body: str
    latency_ms: int


@dataclass
class DispatchOutcome:
    """Terminal result of a retry sequence."""

    attempts: int
    result: DispatchResult | None = None
    error: DispatchError | None = None

    @property
    def succeeded(self) -> bool:
        return self.result is not None

    @property
    def status_code(self) -> int | None:
        if self.result is not None:
            return self.result.status_code
        return self.error.status_code if self.error else None

    @property
    def body(self) -> str | None:
        if self.result is not None:
            return self.result.body
        return self.error.body if self.error else None

    @property
    def latency_ms(self) -> int:
        if self.result is not None:
            return self.result.latency_ms
        return self.error.latency_ms if self.error else 0

    @property
    def error_message(self) -> str | None:
        return self.error.message if self.error else None


class WebhookDispatcher:
    """Performs HTTP attempts against webhook definitions."""

    def __init__(self, settings: RelaySettings, http_client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._http_client = http_client

    def _get_http_client(self) -> httpx.AsyncClient:
        """Lazy-init httpx.AsyncClient."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    @staticmethod
    def build_headers(webhook: WebhookSpec) -> dict[str, str]:
        """Default content type first; the webhook's own headers override it."""
        headers = {"Content-Type": _CONTENT_TYPES.get(webhook.payload_type, "application/json")}
        for key, value in webhook.headers:
            # Header names are case-insensitive; keep the webhook's spelling.
            for existing in [k for k in headers if k.lower() == key.lower()]:
                del headers[existing]
            headers[key] = value
        return headers

    async def dispatch(self, webhook: WebhookSpec, payload: str) -> DispatchResult:
        """Perform exactly one attempt.

        Returns the response on 2xx; raises a DispatchError subclass otherwise.
        Configuration problems raise ConfigurationError before any I/O.
        """
        if not webhook.is_active:
            raise WebhookInactiveError(f"Webhook {webhook.name} ({webhook.id}) is inactive")

        headers = self.build_headers(webhook)
        content = payload.encode("utf-8") if webhook.method in BODY_METHODS else None

        started = time.perf_counter()
        try:
            client = self._get_http_client()
            resp = await client.request(
                webhook.method,
                webhook.url,
                content=content,
                headers=headers,
                timeout=webhook.timeout_seconds,
            )
        except httpx.InvalidURL as e:
            raise ConfigurationError(f"Invalid webhook URL {webhook.url!r}: {e}") from e
        except httpx.TimeoutException as e:
            raise DispatchTimeoutError(
                f"Timed out after {webhook.timeout_seconds}s",
                latency_ms=_elapsed_ms(started),
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(
                str(e) or e.__class__.__name__,
                latency_ms=_elapsed_ms(started),
            ) from e

        latency_ms = _elapsed_ms(started)
        body = resp.text
        if not 200 <= resp.status_code < 300:
            raise HTTPStatusError(
                f"HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=body,
                latency_ms=latency_ms,
            )
        return DispatchResult(status_code=resp.status_code, body=body, latency_ms=latency_ms)

    async def dispatch_with_retry(
        self,
        webhook: WebhookSpec,
        payload: str,
        policy: RetryPolicy,
        token: CancellationToken | None = None,
    ) -> DispatchOutcome:
        """Run up to ``policy.max_attempts`` attempts with a fixed delay between them.

        ConfigurationError propagates immediately with zero attempts made.
        ExecutionCancelledError propagates from the backoff sleep.
        """
        last_error: DispatchError | None = None

        for attempt in range(1, policy.max_attempts + 1):
            if token is not None:
                token.raise_if_cancelled()
            try:
                result = await self.dispatch(webhook, payload)
                return DispatchOutcome(attempts=attempt, result=result)
            except DispatchError as e:
                last_error = e

            if attempt < policy.max_attempts:
                logger.warning(
                    "Webhook %s attempt %d/%d failed: %s; retrying in %ss",
                    webhook.name, attempt, policy.max_attempts,
                    last_error.message, policy.fixed_delay,
                    extra={"webhook_id": webhook.id, "attempt": attempt},
                )
                if token is not None:
                    await token.sleep(policy.fixed_delay)
                else:
                    await asyncio.sleep(policy.fixed_delay)

        return DispatchOutcome(attempts=policy.max_attempts, error=last_error)


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
