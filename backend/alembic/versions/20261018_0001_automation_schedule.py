"""prices, devices, automation rules and the persisted execution schedule

Revision ID: 20261018_0001
Revises:
Create Date: 2026-10-18 09:00:00
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "20261018_0001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "prices",
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("price", sa.Float(), nullable=False),
        sa.Column("source", sa.String(length=64), nullable=False),
        sa.PrimaryKeyConstraint("timestamp"),
    )

    op.create_table(
        "devices",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("integration_id", sa.BigInteger(), nullable=False),
        sa.Column("external_id", sa.String(length=128), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("device_type", sa.String(length=32), nullable=False),
        sa.Column("is_managed", sa.Boolean(), nullable=False, server_default="false"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "automation_rules",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("user_id", sa.BigInteger(), nullable=False),
        sa.Column("device_id", sa.BigInteger(), nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("rule_type", sa.String(length=32), nullable=False),
        sa.Column("action", sa.String(length=16), nullable=False),
        sa.Column(
            "config",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_triggered_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "rule_type IN ('price_threshold','cheapest_hours','time_schedule','manual')",
            name="ck_automation_rules_rule_type",
        ),
        sa.CheckConstraint(
            "action IN ('turn_on','turn_off','toggle')",
            name="ck_automation_rules_action",
        ),
    )
    op.create_index("ix_automation_rules_user_id", "automation_rules", ["user_id"], unique=False)
    op.create_index("ix_automation_rules_device_id", "automation_rules", ["device_id"], unique=False)
    op.create_index(
        "ix_automation_rules_enabled",
        "automation_rules",
        ["is_enabled"],
        unique=False,
        postgresql_where=sa.text("is_enabled = true"),
    )

    op.create_table(
        "rule_executions",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("rule_id", sa.BigInteger(), nullable=True),
        sa.Column("scheduled_execution_id", sa.BigInteger(), nullable=True),
        sa.Column("device_id", sa.BigInteger(), nullable=False),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("action_taken", sa.String(length=16), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("price_at_execution", sa.Float(), nullable=True),
        sa.Column("device_state_before", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("device_state_after", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "action_taken IN ('turn_on','turn_off','toggle')",
            name="ck_rule_executions_action_taken",
        ),
    )
    op.create_index("ix_rule_executions_rule_id", "rule_executions", ["rule_id"], unique=False)
    op.create_index("ix_rule_executions_executed_at", "rule_executions", ["executed_at"], unique=False)

    op.create_table(
        "scheduled_executions",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), nullable=False),
        sa.Column("rule_id", sa.BigInteger(), nullable=True),
        sa.Column("device_id", sa.BigInteger(), nullable=False),
        sa.Column("scheduled_hour", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expected_action", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("execution_id", sa.BigInteger(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["rule_id"], ["automation_rules.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["device_id"], ["devices.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["execution_id"], ["rule_executions.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("rule_id", "scheduled_hour", name="uq_scheduled_executions_rule_hour"),
        sa.CheckConstraint(
            "status IN ('pending','retrying','in_flight','completed_on','completed_off','failed','missed')",
            name="ck_scheduled_executions_status",
        ),
        sa.CheckConstraint(
            "expected_action IN ('turn_on','turn_off','toggle')",
            name="ck_scheduled_executions_expected_action",
        ),
    )
    op.create_index(
        "uq_scheduled_executions_default_off_device_hour",
        "scheduled_executions",
        ["device_id", "scheduled_hour"],
        unique=True,
        postgresql_where=sa.text("rule_id IS NULL"),
    )
    op.create_index("ix_scheduled_executions_status", "scheduled_executions", ["status"], unique=False)
    op.create_index(
        "ix_scheduled_executions_scheduled_hour",
        "scheduled_executions",
        ["scheduled_hour"],
        unique=False,
    )
    op.create_index(
        "ix_scheduled_executions_next_retry",
        "scheduled_executions",
        ["next_retry_at"],
        unique=False,
        postgresql_where=sa.text("status = 'retrying'"),
    )


def downgrade() -> None:
    op.drop_index("ix_scheduled_executions_next_retry", table_name="scheduled_executions")
    op.drop_index("ix_scheduled_executions_scheduled_hour", table_name="scheduled_executions")
    op.drop_index("ix_scheduled_executions_status", table_name="scheduled_executions")
    op.drop_index("uq_scheduled_executions_default_off_device_hour", table_name="scheduled_executions")
    op.drop_table("scheduled_executions")

    op.drop_index("ix_rule_executions_executed_at", table_name="rule_executions")
    op.drop_index("ix_rule_executions_rule_id", table_name="rule_executions")
    op.drop_table("rule_executions")

    op.drop_index("ix_automation_rules_enabled", table_name="automation_rules")
    op.drop_index("ix_automation_rules_device_id", table_name="automation_rules")
    op.drop_index("ix_automation_rules_user_id", table_name="automation_rules")
    op.drop_table("automation_rules")

    op.drop_table("devices")
    op.drop_table("prices")
