from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Identity,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from pvpcheap.db.base import Base


RULE_TYPES = ("price_threshold", "cheapest_hours", "time_schedule", "manual")
RULE_ACTIONS = ("turn_on", "turn_off", "toggle")
EXECUTION_STATUSES = (
    "pending",
    "retrying",
    "in_flight",
    "completed_on",
    "completed_off",
    "failed",
    "missed",
)


def _in_list(column: str, values: tuple[str, ...]) -> str:
    quoted = ",".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class Price(Base):
    __tablename__ = "prices"

    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)


class Device(Base):
    __tablename__ = "devices"

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    integration_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    external_id: Mapped[str] = mapped_column(String(128), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    device_type: Mapped[str] = mapped_column(String(32), nullable=False)
    is_managed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )

    rules: Mapped[list["AutomationRule"]] = relationship(
        back_populates="device",
        cascade="all, delete-orphan",
    )


class AutomationRule(Base):
    __tablename__ = "automation_rules"
    __table_args__ = (
        CheckConstraint(_in_list("rule_type", RULE_TYPES), name="ck_automation_rules_rule_type"),
        CheckConstraint(_in_list("action", RULE_ACTIONS), name="ck_automation_rules_action"),
        Index("ix_automation_rules_user_id", "user_id"),
        Index("ix_automation_rules_device_id", "device_id"),
        Index(
            "ix_automation_rules_enabled",
            "is_enabled",
            postgresql_where=text("is_enabled = true"),
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    device_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    config: Mapped[dict] = mapped_column(
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )
    is_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default="true",
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default="100")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
    last_triggered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    device: Mapped[Device] = relationship(back_populates="rules")
    scheduled_executions: Mapped[list["ScheduledExecution"]] = relationship(
        back_populates="rule",
        cascade="all, delete-orphan",
    )
    executions: Mapped[list["RuleExecution"]] = relationship(
        back_populates="rule",
        cascade="all, delete-orphan",
    )


class RuleExecution(Base):
    __tablename__ = "rule_executions"
    __table_args__ = (
        CheckConstraint(_in_list("action_taken", RULE_ACTIONS), name="ck_rule_executions_action_taken"),
        Index("ix_rule_executions_rule_id", "rule_id"),
        Index("ix_rule_executions_executed_at", "executed_at"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    rule_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("automation_rules.id", ondelete="CASCADE"),
    )
    scheduled_execution_id: Mapped[int | None] = mapped_column(BigInteger)
    device_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    executed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    action_taken: Mapped[str] = mapped_column(String(16), nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    price_at_execution: Mapped[float | None] = mapped_column(Float)
    device_state_before: Mapped[dict | None] = mapped_column(JSONB)
    device_state_after: Mapped[dict | None] = mapped_column(JSONB)

    rule: Mapped[AutomationRule | None] = relationship(back_populates="executions")


class ScheduledExecution(Base):
    __tablename__ = "scheduled_executions"
    __table_args__ = (
        UniqueConstraint("rule_id", "scheduled_hour", name="uq_scheduled_executions_rule_hour"),
        Index(
            "uq_scheduled_executions_default_off_device_hour",
            "device_id",
            "scheduled_hour",
            unique=True,
            postgresql_where=text("rule_id IS NULL"),
        ),
        CheckConstraint(_in_list("status", EXECUTION_STATUSES), name="ck_scheduled_executions_status"),
        CheckConstraint(
            _in_list("expected_action", RULE_ACTIONS),
            name="ck_scheduled_executions_expected_action",
        ),
        Index("ix_scheduled_executions_status", "status"),
        Index("ix_scheduled_executions_scheduled_hour", "scheduled_hour"),
        Index(
            "ix_scheduled_executions_next_retry",
            "next_retry_at",
            postgresql_where=text("status = 'retrying'"),
        ),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(always=False), primary_key=True)
    rule_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("automation_rules.id", ondelete="CASCADE"),
    )
    device_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("devices.id", ondelete="CASCADE"),
        nullable=False,
    )
    scheduled_hour: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expected_action: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="pending",
        server_default="pending",
    )
    executed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    execution_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("rule_executions.id", ondelete="SET NULL"),
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    rule: Mapped[AutomationRule | None] = relationship(back_populates="scheduled_executions")
