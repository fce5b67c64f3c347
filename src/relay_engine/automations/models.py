"""SQLAlchemy models for automations and their ordered steps."""

from sqlalchemy import Boolean, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from relay_engine.common.models import Base, TimestampMixin, generate_uuid


class AutomationModel(Base, TimestampMixin):
    __tablename__ = "automations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    trigger_type: Mapped[str] = mapped_column(String(30), nullable=False, default="manual", index=True)
    trigger_config: Mapped[dict] = mapped_column(JSON, default=dict)

    steps: Mapped[list["AutomationStepModel"]] = relationship(
        back_populates="automation",
        cascade="all, delete-orphan",
        order_by="AutomationStepModel.step_order",
        lazy="selectin",
    )


class AutomationStepModel(Base, TimestampMixin):
    __tablename__ = "automation_steps"
    __table_args__ = (
        UniqueConstraint("automation_id", "step_order", name="uq_automation_step_order"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    automation_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("automations.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    webhook_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("webhooks.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_order: Mapped[int] = mapped_column(Integer, nullable=False)
    is_conditional: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    condition_config: Mapped[dict] = mapped_column(JSON, default=dict)
    delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_on_failure: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    continue_on_failure: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    automation: Mapped[AutomationModel] = relationship(back_populates="steps")
