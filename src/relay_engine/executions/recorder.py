"""Execution recorder — durable, incrementally updated log of automation runs."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from relay_engine.common.config import RelaySettings
from relay_engine.common.database import DatabaseManager
from relay_engine.common.exceptions import (
    ExecutionNotFoundError,
    ExecutionStateError,
    PersistenceError,
)
from relay_engine.common.models import utcnow
from relay_engine.executions.models import (
    STEP_STATUSES,
    TERMINAL_STATUSES,
    AutomationExecutionModel,
    StepExecutionModel,
)

TRUNCATION_MARKER = "…[truncated]"


@dataclass
class StepExecutionResult:
    step_id: str
    step_order: int
    status: str
    started_at: datetime
    completed_at: datetime
    webhook_id: str | None = None
    http_status: int | None = None
    response_body: str | None = None
    error: str | None = None
    attempt_count: int = 0

    def __post_init__(self) -> None:
        if self.status not in STEP_STATUSES:
            raise ValueError(f"Invalid step status: {self.status}")


class ExecutionRecorder:
    """Every write commits before returning, so readers see live progress."""

    def __init__(self, settings: RelaySettings, db: DatabaseManager):
        self.settings = settings
        self.db = db

    # ── Write ──

    async def start(
        self,
        automation_id: str,
        trigger_data: dict[str, Any],
        total_steps: int,
    ) -> str:
        """Create a ``pending`` execution and return its id."""
        try:
            async with self.db.get_session() as session:
                execution = AutomationExecutionModel(
                    automation_id=automation_id,
                    status="pending",
                    trigger_data=dict(trigger_data or {}),
                    started_at=utcnow(),
                    completed_steps=0,
                    total_steps=total_steps,
                )
                session.add(execution)
                await session.flush()
                return execution.id
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not create execution: {e}") from e

    async def mark_running(self, execution_id: str) -> None:
        try:
            async with self.db.get_session() as session:
                execution = await self._load_for_write(session, execution_id)
                execution.status = "running"
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not start execution {execution_id}: {e}") from e

    async def record_step(self, execution_id: str, result: StepExecutionResult) -> None:
        """Append one step outcome; a success also advances completed_steps."""
        try:
            async with self.db.get_session() as session:
                execution = await self._load_for_write(session, execution_id)
                if result.status == "succeeded":
                    if execution.completed_steps >= execution.total_steps:
                        raise ExecutionStateError(
                            f"Execution {execution_id} already completed "
                            f"{execution.completed_steps}/{execution.total_steps} steps"
                        )
                    execution.completed_steps += 1
                session.add(StepExecutionModel(
                    execution_id=execution_id,
                    step_id=result.step_id,
                    webhook_id=result.webhook_id,
                    step_order=result.step_order,
                    status=result.status,
                    http_status=result.http_status,
                    response_body=self._truncate(result.response_body),
                    error=result.error,
                    attempt_count=result.attempt_count,
                    started_at=result.started_at,
                    completed_at=result.completed_at,
                ))
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Could not record step {result.step_order} of execution {execution_id}: {e}"
            ) from e

    async def finish(
        self,
        execution_id: str,
        status: str,
        error_message: str | None = None,
    ) -> None:
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"Finish status must be one of {sorted(TERMINAL_STATUSES)}")
        try:
            async with self.db.get_session() as session:
                execution = await self._load_for_write(session, execution_id)
                execution.status = status
                execution.error_message = error_message
                execution.completed_at = utcnow()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not finish execution {execution_id}: {e}") from e

    # ── Read ──

    async def get(
        self, session: AsyncSession, execution_id: str,
    ) -> Optional[AutomationExecutionModel]:
        result = await session.execute(
            select(AutomationExecutionModel).where(
                AutomationExecutionModel.id == execution_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_executions(
        self,
        session: AsyncSession,
        automation_id: str,
        limit: int | None = None,
    ) -> list[AutomationExecutionModel]:
        """Most recent first."""
        limit = limit or self.settings.default_executions_limit
        limit = min(limit, self.settings.max_executions_limit)
        result = await session.execute(
            select(AutomationExecutionModel)
            .where(AutomationExecutionModel.automation_id == automation_id)
            .order_by(
                AutomationExecutionModel.started_at.desc(),
                AutomationExecutionModel.created_at.desc(),
            )
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_steps(
        self, session: AsyncSession, execution_id: str,
    ) -> list[StepExecutionModel]:
        result = await session.execute(
            select(StepExecutionModel)
            .where(StepExecutionModel.execution_id == execution_id)
            .order_by(StepExecutionModel.step_order.asc(), StepExecutionModel.started_at.asc())
        )
        return list(result.scalars().all())

    # ── Internal helpers ──

    async def _load_for_write(
        self, session: AsyncSession, execution_id: str,
    ) -> AutomationExecutionModel:
        execution = await self.get(session, execution_id)
        if execution is None:
            raise ExecutionNotFoundError(f"Execution {execution_id} not found")
        if execution.status in TERMINAL_STATUSES:
            raise ExecutionStateError(
                f"Execution {execution_id} is already {execution.status}"
            )
        return execution

    def _truncate(self, body: str | None) -> str | None:
        limit = self.settings.max_response_body_chars
        if body is None or len(body) <= limit:
            return body
        return body[:max(limit - len(TRUNCATION_MARKER), 0)] + TRUNCATION_MARKER
