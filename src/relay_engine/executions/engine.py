"""Execution engine — runs an automation's steps in order, one task per run.

A run walks the steps in ascending step_order. For each step it evaluates
the optional guard, waits out the step delay, resolves the webhook, renders
the payload and dispatches it under the step's effective retry policy. Each
step outcome is committed through the recorder before the next step starts.
A failed step aborts the run unless the step has continue_on_failure set.

Runs are cooperatively cancellable at the delay and retry-backoff sleeps; a
cancelled run finishes as ``failed`` with a "cancelled" error message.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from relay_engine.automations.conditions import ConditionEvaluator
from relay_engine.automations.service import AutomationPlan, AutomationStore, StepSpec
from relay_engine.common.cancellation import CancellationToken
from relay_engine.common.config import RelaySettings
from relay_engine.common.database import DatabaseManager
from relay_engine.common.exceptions import (
    ConfigurationError,
    ExecutionCancelledError,
    ExecutionNotFoundError,
    ExecutionStateError,
    PersistenceError,
    ValidationError,
)
from relay_engine.common.models import utcnow
from relay_engine.executions.recorder import ExecutionRecorder, StepExecutionResult
from relay_engine.webhooks.dispatcher import RetryPolicy, WebhookDispatcher, WebhookSpec
from relay_engine.webhooks.renderer import PayloadRenderer
from relay_engine.webhooks.service import WebhookRegistry

logger = logging.getLogger(__name__)


@dataclass
class ExecutionSummary:
    success: bool
    execution_id: str
    status: str
    completed_steps: int
    total_steps: int
    error_message: str | None
    execution_time_ms: int


@dataclass
class _Run:
    task: asyncio.Task
    token: CancellationToken


class ExecutionEngine:
    """Orchestrates automation runs over the store, registry and recorder."""

    def __init__(
        self,
        settings: RelaySettings,
        db: DatabaseManager,
        store: AutomationStore,
        registry: WebhookRegistry,
        dispatcher: WebhookDispatcher,
        recorder: ExecutionRecorder,
        renderer: PayloadRenderer | None = None,
        evaluator: ConditionEvaluator | None = None,
    ):
        self.settings = settings
        self.db = db
        self.store = store
        self.registry = registry
        self.dispatcher = dispatcher
        self.recorder = recorder
        self.renderer = renderer or PayloadRenderer()
        self.evaluator = evaluator or ConditionEvaluator()
        self._runs: dict[str, _Run] = {}

    # ── Public API ──

    async def execute(self, automation_id: str, trigger_data: dict[str, Any] | None = None) -> str:
        """Start a run and return its execution id without waiting for it.

        Raises AutomationNotFoundError / AutomationInactiveError before any
        execution record is created.
        """
        trigger_data = dict(trigger_data or {})
        try:
            async with self.db.get_session() as session:
                plan = await self.store.load_plan(session, automation_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not load automation {automation_id}: {e}") from e

        execution_id = await self.recorder.start(plan.automation_id, trigger_data, plan.total_steps)
        try:
            await self.recorder.mark_running(execution_id)
        except PersistenceError as e:
            await self._finish_after_error(execution_id, e.message)
            raise

        token = CancellationToken()
        task = asyncio.create_task(
            self._run(execution_id, plan, trigger_data, token),
            name=f"automation-execution-{execution_id}",
        )
        self._runs[execution_id] = _Run(task=task, token=token)
        task.add_done_callback(lambda _task: self._runs.pop(execution_id, None))

        logger.info(
            "Automation %s started with %d steps", plan.name, plan.total_steps,
            extra={"automation_id": plan.automation_id, "execution_id": execution_id},
        )
        return execution_id

    async def execute_and_wait(
        self, automation_id: str, trigger_data: dict[str, Any] | None = None,
    ) -> ExecutionSummary:
        """Start a run and wait until it reaches a terminal state."""
        started = time.perf_counter()
        execution_id = await self.execute(automation_id, trigger_data)
        await self.wait(execution_id)
        return await self.summarize(execution_id, int((time.perf_counter() - started) * 1000))

    async def wait(self, execution_id: str) -> None:
        run = self._runs.get(execution_id)
        if run is None:
            return
        # Shielded so a disconnecting caller does not kill the run itself.
        await asyncio.shield(run.task)

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._runs

    def cancel(self, execution_id: str, reason: str = "cancelled") -> bool:
        """Request cancellation; the run stops at its next suspension point."""
        run = self._runs.get(execution_id)
        if run is None:
            return False
        run.token.cancel(reason)
        return True

    async def shutdown(self) -> None:
        """Cancel every live run and wait for them to record their state."""
        runs = list(self._runs.values())
        if not runs:
            return
        for run in runs:
            run.token.cancel("cancelled: shutting down")
        tasks = [run.task for run in runs]
        _, pending = await asyncio.wait(tasks, timeout=self.settings.shutdown_grace_seconds)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def trigger_form_submission(
        self, form_id: str, submission: dict[str, Any],
    ) -> list[str]:
        """Start every active automation listening for ``form_id`` submissions."""
        async with self.db.get_session() as session:
            automations = await self.store.find_form_automations(session, form_id)
            automation_ids = [a.id for a in automations]

        trigger_data = {**submission, "form_id": form_id}
        execution_ids = []
        for automation_id in automation_ids:
            try:
                execution_ids.append(await self.execute(automation_id, trigger_data))
            except ConfigurationError as e:
                logger.warning(
                    "Form %s submission not run for automation %s: %s",
                    form_id, automation_id, e.message,
                    extra={"automation_id": automation_id},
                )
        return execution_ids

    async def summarize(self, execution_id: str, execution_time_ms: int = 0) -> ExecutionSummary:
        async with self.db.get_session() as session:
            execution = await self.recorder.get(session, execution_id)
            if execution is None:
                raise ExecutionNotFoundError(f"Execution {execution_id} not found")
            return ExecutionSummary(
                success=execution.status == "completed",
                execution_id=execution.id,
                status=execution.status,
                completed_steps=execution.completed_steps,
                total_steps=execution.total_steps,
                error_message=execution.error_message,
                execution_time_ms=execution_time_ms,
            )

    # ── Run loop ──

    async def _run(
        self,
        execution_id: str,
        plan: AutomationPlan,
        trigger_data: dict[str, Any],
        token: CancellationToken,
    ) -> None:
        log_extra = {"automation_id": plan.automation_id, "execution_id": execution_id}
        step_results: dict[str, dict[str, Any]] = {}
        abort_message: str | None = None

        try:
            for step in plan.steps:
                token.raise_if_cancelled()
                try:
                    result = await self._run_step(
                        execution_id, plan, step, trigger_data, step_results, token,
                    )
                except (ExecutionCancelledError, ExecutionStateError, PersistenceError):
                    raise
                except Exception as e:
                    logger.exception(
                        "Step %d crashed", step.step_order,
                        extra={**log_extra, "step_order": step.step_order},
                    )
                    result = await self._record_crashed_step(execution_id, step, e)
                step_results[str(step.step_order)] = _context_entry(result)

                if result.status == "failed" and not step.continue_on_failure:
                    abort_message = f"Step {step.step_order} failed: {result.error}"
                    break

            if abort_message is not None:
                await self.recorder.finish(execution_id, "failed", abort_message)
                logger.info("Automation %s failed: %s", plan.name, abort_message, extra=log_extra)
            else:
                await self.recorder.finish(execution_id, "completed")
                logger.info("Automation %s completed", plan.name, extra=log_extra)

        except ExecutionCancelledError as e:
            logger.info("Automation %s %s", plan.name, e.message, extra=log_extra)
            await self._finish_after_error(execution_id, e.message)
        except asyncio.CancelledError:
            await self._finish_after_error(execution_id, "Execution cancelled")
            raise
        except PersistenceError as e:
            logger.exception("Automation %s could not be recorded", plan.name, extra=log_extra)
            await self._finish_after_error(execution_id, e.message)
        except Exception as e:
            logger.exception("Automation %s crashed", plan.name, extra=log_extra)
            await self._finish_after_error(execution_id, f"Internal error: {e}")

    async def _run_step(
        self,
        execution_id: str,
        plan: AutomationPlan,
        step: StepSpec,
        trigger_data: dict[str, Any],
        step_results: dict[str, dict[str, Any]],
        token: CancellationToken,
    ) -> StepExecutionResult:
        log_extra = {
            "automation_id": plan.automation_id,
            "execution_id": execution_id,
            "step_order": step.step_order,
            "webhook_id": step.webhook_id,
        }
        started_at = utcnow()
        context = {
            **trigger_data,
            "steps": dict(step_results),
            "automation_id": plan.automation_id,
            "execution_id": execution_id,
        }

        def _result(status: str, **fields: Any) -> StepExecutionResult:
            return StepExecutionResult(
                step_id=step.id,
                step_order=step.step_order,
                webhook_id=step.webhook_id,
                status=status,
                started_at=started_at,
                completed_at=utcnow(),
                **fields,
            )

        # 1. Guard
        if step.is_conditional and not self.evaluator.evaluate(step.condition_config, context):
            result = _result("skipped", error="Condition not met")
            await self.recorder.record_step(execution_id, result)
            logger.info("Step %d skipped: condition not met", step.step_order, extra=log_extra)
            return result

        # 2. Delay
        if step.delay_seconds > 0:
            await token.sleep(step.delay_seconds)

        # 3. Resolve, render, dispatch
        try:
            webhook = await self._resolve_webhook(step.webhook_id)
        except ConfigurationError as e:
            result = _result("failed", error=e.message, attempt_count=0)
            await self.recorder.record_step(execution_id, result)
            logger.warning("Step %d not dispatched: %s", step.step_order, e.message, extra=log_extra)
            return result

        try:
            payload = self.renderer.render_webhook(webhook, context, trigger_data)
        except ValidationError as e:
            result = _result("skipped", error=e.message)
            await self.recorder.record_step(execution_id, result)
            logger.warning("Step %d skipped: %s", step.step_order, e.message, extra=log_extra)
            return result

        policy = RetryPolicy.for_step(webhook, step.retry_on_failure)
        try:
            outcome = await self.dispatcher.dispatch_with_retry(webhook, payload, policy, token)
        except ConfigurationError as e:
            result = _result("failed", error=e.message, attempt_count=0)
            await self.recorder.record_step(execution_id, result)
            logger.warning("Step %d not dispatched: %s", step.step_order, e.message, extra=log_extra)
            return result

        # 4./5. Record the eventual outcome
        result = _result(
            "succeeded" if outcome.succeeded else "failed",
            http_status=outcome.status_code,
            response_body=outcome.body,
            error=outcome.error_message,
            attempt_count=outcome.attempts,
        )
        await self.recorder.record_step(execution_id, result)
        logger.info(
            "Step %d %s after %d attempt(s)", step.step_order, result.status, outcome.attempts,
            extra=log_extra,
        )
        return result

    # ── Internal helpers ──

    async def _resolve_webhook(self, webhook_id: str) -> WebhookSpec:
        try:
            async with self.db.get_session() as session:
                return await self.registry.resolve_for_dispatch(session, webhook_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not load webhook {webhook_id}: {e}") from e

    async def _record_crashed_step(
        self, execution_id: str, step: StepSpec, error: Exception,
    ) -> StepExecutionResult:
        now = utcnow()
        result = StepExecutionResult(
            step_id=step.id,
            step_order=step.step_order,
            webhook_id=step.webhook_id,
            status="failed",
            started_at=now,
            completed_at=now,
            error=f"Internal error: {error}",
        )
        await self.recorder.record_step(execution_id, result)
        return result

    async def _finish_after_error(self, execution_id: str, message: str) -> None:
        try:
            await self.recorder.finish(execution_id, "failed", message)
        except Exception:
            logger.exception(
                "Could not mark execution %s failed", execution_id,
                extra={"execution_id": execution_id},
            )


def _context_entry(result: StepExecutionResult) -> dict[str, Any]:
    """What later steps can reference as ``steps.<step_order>.*``."""
    entry: dict[str, Any] = {
        "status": result.status,
        "status_code": result.http_status,
        "body": result.response_body,
        "error": result.error,
        "attempts": result.attempt_count,
    }
    if result.response_body:
        try:
            entry["json"] = json.loads(result.response_body)
        except ValueError:
            pass
    return entry
