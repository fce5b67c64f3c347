"""Automation store — CRUD, the step arena, and execution plans."""

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from relay_engine.automations.models import AutomationModel, AutomationStepModel
from relay_engine.automations.schemas import (
    FormSubmissionTrigger,
    ManualTrigger,
    TriggerConfig,
    parse_trigger,
)
from relay_engine.common.config import RelaySettings
from relay_engine.common.exceptions import (
    AutomationInactiveError,
    AutomationNotFoundError,
    StepNotFoundError,
)

_STEP_FIELDS = (
    "webhook_id", "is_conditional", "condition_config", "delay_seconds",
    "retry_on_failure", "continue_on_failure",
)


@dataclass(frozen=True)
class StepSpec:
    """Snapshot of one step, detached from the session."""

    id: str
    webhook_id: str
    step_order: int
    is_conditional: bool = False
    condition_config: dict[str, Any] = field(default_factory=dict)
    delay_seconds: int = 0
    retry_on_failure: bool = True
    continue_on_failure: bool = False

    @classmethod
    def from_model(cls, model: AutomationStepModel) -> "StepSpec":
        return cls(
            id=model.id,
            webhook_id=model.webhook_id,
            step_order=model.step_order,
            is_conditional=bool(model.is_conditional),
            condition_config=dict(model.condition_config or {}),
            delay_seconds=max(model.delay_seconds or 0, 0),
            retry_on_failure=bool(model.retry_on_failure),
            continue_on_failure=bool(model.continue_on_failure),
        )


@dataclass(frozen=True)
class AutomationPlan:
    """What an execution runs: the automation and its steps in step_order."""

    automation_id: str
    name: str
    trigger_type: str
    steps: tuple[StepSpec, ...]

    @property
    def total_steps(self) -> int:
        return len(self.steps)


class AutomationStore:
    """Automation definitions and their steps, indexed by (automation_id, step_order)."""

    def __init__(self, settings: RelaySettings):
        self.settings = settings

    # ── Automations ──

    async def create_automation(
        self,
        session: AsyncSession,
        name: str,
        description: str = "",
        is_active: bool = True,
        trigger: TriggerConfig | None = None,
        steps: list[dict[str, Any]] | None = None,
    ) -> AutomationModel:
        trigger = trigger or ManualTrigger()
        automation = AutomationModel(
            name=name,
            description=description or "",
            is_active=is_active,
            trigger_type=trigger.type,
            trigger_config=trigger.model_dump(exclude={"type"}, exclude_none=True),
        )
        session.add(automation)
        await session.flush()

        if steps:
            await self._insert_steps(session, automation.id, steps)
        await session.refresh(automation, attribute_names=["steps"])
        return automation

    async def get_automation(
        self, session: AsyncSession, automation_id: str,
    ) -> Optional[AutomationModel]:
        result = await session.execute(
            select(AutomationModel).where(AutomationModel.id == automation_id)
        )
        return result.scalar_one_or_none()

    async def list_automations(
        self,
        session: AsyncSession,
        is_active: bool | None = None,
        trigger_type: str | None = None,
    ) -> list[AutomationModel]:
        query = select(AutomationModel)
        if is_active is not None:
            query = query.where(AutomationModel.is_active == is_active)
        if trigger_type is not None:
            query = query.where(AutomationModel.trigger_type == trigger_type)
        query = query.order_by(AutomationModel.created_at.desc())
        result = await session.execute(query)
        return list(result.scalars().all())

    async def update_automation(
        self,
        session: AsyncSession,
        automation_id: str,
        name: str | None = None,
        description: str | None = None,
        is_active: bool | None = None,
        trigger: TriggerConfig | None = None,
        steps: list[dict[str, Any]] | None = None,
    ) -> Optional[AutomationModel]:
        """Update fields; a non-None ``steps`` replaces the whole step list."""
        automation = await self.get_automation(session, automation_id)
        if automation is None:
            return None
        if name is not None:
            automation.name = name
        if description is not None:
            automation.description = description
        if is_active is not None:
            automation.is_active = is_active
        if trigger is not None:
            automation.trigger_type = trigger.type
            automation.trigger_config = trigger.model_dump(exclude={"type"}, exclude_none=True)

        if steps is not None:
            for step in list(await self.get_steps(session, automation_id)):
                await session.delete(step)
            # Old rows must be gone before new ones reuse their step_order.
            await session.flush()
            await self._insert_steps(session, automation_id, steps)

        await session.flush()
        await session.refresh(automation, attribute_names=["steps"])
        return automation

    async def delete_automation(self, session: AsyncSession, automation_id: str) -> bool:
        automation = await self.get_automation(session, automation_id)
        if automation is None:
            return False
        await session.delete(automation)
        await session.flush()
        return True

    def trigger_of(self, automation: AutomationModel) -> TriggerConfig:
        return parse_trigger(automation.trigger_type, automation.trigger_config)

    async def find_form_automations(
        self, session: AsyncSession, form_id: str,
    ) -> list[AutomationModel]:
        """Active automations triggered by a submission of ``form_id``."""
        candidates = await self.list_automations(
            session, is_active=True, trigger_type="form_submission",
        )
        matched = []
        for automation in candidates:
            trigger = self.trigger_of(automation)
            if isinstance(trigger, FormSubmissionTrigger) and trigger.form_id in (None, form_id):
                matched.append(automation)
        return matched

    # ── Step arena ──

    async def get_steps(
        self, session: AsyncSession, automation_id: str,
    ) -> list[AutomationStepModel]:
        result = await session.execute(
            select(AutomationStepModel)
            .where(AutomationStepModel.automation_id == automation_id)
            .order_by(AutomationStepModel.step_order.asc())
        )
        return list(result.scalars().all())

    async def get_step(
        self, session: AsyncSession, step_id: str,
    ) -> Optional[AutomationStepModel]:
        result = await session.execute(
            select(AutomationStepModel).where(AutomationStepModel.id == step_id)
        )
        return result.scalar_one_or_none()

    async def add_step(
        self,
        session: AsyncSession,
        automation_id: str,
        webhook_id: str,
        step_order: int | None = None,
        **options: Any,
    ) -> AutomationStepModel:
        """Add a step at ``step_order`` (default: after the last step).

        An occupied order is rejected; use renumber_steps to make room.
        """
        if await self.get_automation(session, automation_id) is None:
            raise AutomationNotFoundError(f"Automation {automation_id} not found")
        if step_order is None:
            step_order = await self._max_order(session, automation_id) + 1
        elif step_order < 1:
            raise ValueError("step_order must be >= 1")
        else:
            taken = await session.execute(
                select(AutomationStepModel.id).where(
                    AutomationStepModel.automation_id == automation_id,
                    AutomationStepModel.step_order == step_order,
                )
            )
            if taken.scalar_one_or_none() is not None:
                raise ValueError(f"step_order {step_order} is already used")

        step = self._build_step(automation_id, step_order, webhook_id=webhook_id, **options)
        session.add(step)
        await session.flush()
        return step

    async def update_step(
        self, session: AsyncSession, step_id: str, **updates: Any,
    ) -> Optional[AutomationStepModel]:
        step = await self.get_step(session, step_id)
        if step is None:
            return None
        if updates.get("delay_seconds") is not None:
            self._check_delay(updates["delay_seconds"])
        for name in _STEP_FIELDS:
            if name in updates and updates[name] is not None:
                setattr(step, name, updates[name])
        await session.flush()
        return step

    async def remove_step(self, session: AsyncSession, step_id: str) -> bool:
        """Delete a step. Remaining orders are left as they are."""
        step = await self.get_step(session, step_id)
        if step is None:
            return False
        await session.delete(step)
        await session.flush()
        return True

    async def renumber_steps(
        self,
        session: AsyncSession,
        automation_id: str,
        ordered_step_ids: Iterable[str],
    ) -> list[AutomationStepModel]:
        """Assign step_order 1..N following ``ordered_step_ids``.

        The ids must be exactly the automation's current steps.
        """
        ordered_step_ids = list(ordered_step_ids)
        steps = await self.get_steps(session, automation_id)
        by_id = {step.id: step for step in steps}
        if len(ordered_step_ids) != len(set(ordered_step_ids)):
            raise ValueError("Duplicate step id in new order")
        if set(ordered_step_ids) != set(by_id):
            missing = set(by_id) - set(ordered_step_ids)
            unknown = set(ordered_step_ids) - set(by_id)
            if unknown:
                raise StepNotFoundError(f"Steps not in automation: {sorted(unknown)}")
            raise ValueError(f"New order omits steps: {sorted(missing)}")

        # Two passes so the unique (automation_id, step_order) index never collides.
        for offset, step in enumerate(steps, start=1):
            step.step_order = -offset
        await session.flush()
        for position, step_id in enumerate(ordered_step_ids, start=1):
            by_id[step_id].step_order = position
        await session.flush()
        return [by_id[step_id] for step_id in ordered_step_ids]

    # ── Execution plan ──

    async def load_plan(self, session: AsyncSession, automation_id: str) -> AutomationPlan:
        """Snapshot an active automation and its steps in ascending step_order."""
        automation = await self.get_automation(session, automation_id)
        if automation is None:
            raise AutomationNotFoundError(f"Automation {automation_id} not found")
        if not automation.is_active:
            raise AutomationInactiveError(f"Automation {automation.name} is inactive")
        steps = await self.get_steps(session, automation_id)
        specs = sorted((StepSpec.from_model(s) for s in steps), key=lambda s: s.step_order)
        return AutomationPlan(
            automation_id=automation.id,
            name=automation.name,
            trigger_type=automation.trigger_type,
            steps=tuple(specs),
        )

    # ── Internal helpers ──

    async def _max_order(self, session: AsyncSession, automation_id: str) -> int:
        result = await session.execute(
            select(func.max(AutomationStepModel.step_order)).where(
                AutomationStepModel.automation_id == automation_id,
            )
        )
        return result.scalar_one_or_none() or 0

    async def _insert_steps(
        self, session: AsyncSession, automation_id: str, steps: list[dict[str, Any]],
    ) -> list[AutomationStepModel]:
        explicit = [s["step_order"] for s in steps if s.get("step_order") is not None]
        if len(explicit) != len(set(explicit)):
            raise ValueError("step_order values must be unique within an automation")

        next_order = max(explicit, default=0)
        created = []
        for data in steps:
            data = dict(data)
            order = data.pop("step_order", None)
            if order is None:
                next_order += 1
                order = next_order
            step = self._build_step(automation_id, order, **data)
            session.add(step)
            created.append(step)
        await session.flush()
        return created

    def _build_step(self, automation_id: str, step_order: int, **data: Any) -> AutomationStepModel:
        delay = data.get("delay_seconds") or 0
        self._check_delay(delay)
        return AutomationStepModel(
            automation_id=automation_id,
            step_order=step_order,
            webhook_id=data["webhook_id"],
            is_conditional=bool(data.get("is_conditional", False)),
            condition_config=dict(data.get("condition_config") or {}),
            delay_seconds=delay,
            retry_on_failure=bool(data.get("retry_on_failure", True)),
            continue_on_failure=bool(data.get("continue_on_failure", False)),
        )

    def _check_delay(self, delay: int) -> None:
        if delay < 0 or delay > self.settings.max_delay_seconds:
            raise ValueError(
                f"delay_seconds must be between 0 and {self.settings.max_delay_seconds}"
            )
