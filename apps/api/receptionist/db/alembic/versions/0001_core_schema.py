"""Core schema: tenants, agents, phone numbers, calls and idempotency keys.

Revision ID: 0001
Revises:
Create Date: 2026-09-02
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ENUMS = (
    "tenant_status",
    "user_role",
    "booking_environment",
    "agent_status",
    "assignment_status",
    "assignment_type",
    "call_status",
)


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("slug", sa.String, nullable=False, unique=True),
        sa.Column("business_name", sa.String, nullable=False),
        sa.Column("timezone", sa.String, nullable=False),
        sa.Column("status", sa.Enum("pending", "active", "suspended", name="tenant_status"), nullable=False),
        _ts("trial_ends_at", nullable=True),
        sa.Column("settings", postgresql.JSONB, nullable=False),
        _ts("created_at"),
    )

    op.create_table(
        "tenant_users",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("tenant_id", sa.String, sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.String, nullable=False),
        sa.Column("role", sa.Enum("owner", "staff", name="user_role"), nullable=False),
        sa.Column("password_hash", sa.String, nullable=False),
        _ts("last_login_at", nullable=True),
    )
    op.create_index("uq_tenant_users_email", "tenant_users", ["tenant_id", sa.text("lower(email)")], unique=True)

    op.create_table(
        "booking_credentials",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column(
            "tenant_id", sa.String, sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("merchant_id", sa.String, nullable=False),
        sa.Column("location_id", sa.String, nullable=False),
        sa.Column(
            "environment", sa.Enum("sandbox", "production", name="booking_environment"), nullable=False
        ),
        sa.Column("access_token", sa.String, nullable=False),
        _ts("updated_at"),
    )

    op.create_table(
        "agents",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("tenant_id", sa.String, sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("external_agent_id", sa.String, nullable=False, unique=True),
        sa.Column("bearer_token_hash", sa.String, nullable=False),
        sa.Column("status", sa.Enum("draft", "active", "paused", name="agent_status"), nullable=False),
        sa.Column("voice_profile", postgresql.JSONB, nullable=False),
        _ts("created_at"),
    )
    op.create_index("ix_agents_tenant_id", "agents", ["tenant_id"])

    op.create_table(
        "phone_assignments",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("tenant_id", sa.String, sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("agent_id", sa.String, sa.ForeignKey("agents.id", ondelete="SET NULL")),
        sa.Column("external_phone_id", sa.String),
        sa.Column("phone_number", sa.String, nullable=False),
        sa.Column("status", sa.Enum("active", "released", name="assignment_status"), nullable=False),
        sa.Column("forwarding_number", sa.String),
        sa.Column("assignment_type", sa.Enum("new", "existing", name="assignment_type"), nullable=False),
        sa.Column("metadata", postgresql.JSONB, nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
    )
    op.create_index("ix_phone_assignments_tenant_id", "phone_assignments", ["tenant_id"])
    op.create_index(
        "uq_phone_assignments_active_number",
        "phone_assignments",
        ["phone_number"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "call_records",
        sa.Column("id", sa.String, primary_key=True),
        sa.Column("tenant_id", sa.String, sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("agent_id", sa.String, sa.ForeignKey("agents.id", ondelete="SET NULL")),
        sa.Column("call_id", sa.String, nullable=False, unique=True),
        sa.Column("direction", sa.String),
        sa.Column("from_number", sa.String),
        sa.Column("to_number", sa.String),
        _ts("started_at", nullable=True),
        _ts("ended_at", nullable=True),
        sa.Column("status", sa.Enum("in_progress", "ended", "failed", name="call_status"), nullable=False),
        sa.Column("cost_cents", sa.Integer),
        sa.Column("disconnection_reason", sa.String),
        _ts("analyzed_at", nullable=True),
        sa.Column("raw_payload", postgresql.JSONB, nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.CheckConstraint(
            "ended_at IS NULL OR started_at IS NULL OR ended_at >= started_at",
            name="ck_call_records_end_after_start",
        ),
    )
    op.create_index("ix_call_records_tenant_id", "call_records", ["tenant_id"])

    op.create_table(
        "call_analyses",
        sa.Column(
            "call_id", sa.String, sa.ForeignKey("call_records.call_id", ondelete="CASCADE"), primary_key=True
        ),
        sa.Column("tenant_id", sa.String, sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("summary", sa.Text),
        sa.Column("sentiment", sa.String),
        sa.Column("successful", sa.Boolean, nullable=False),
        sa.Column("booking_created", sa.Boolean, nullable=False),
        sa.Column("transcript", sa.Text),
        sa.Column("extracted_fields", postgresql.JSONB, nullable=False),
        _ts("analyzed_at"),
        _ts("created_at"),
    )

    op.create_table(
        "idempotency_keys",
        sa.Column("key", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String, sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("route", sa.String, nullable=False),
        sa.Column("response_snapshot", sa.Text),
        sa.Column("status_code", sa.Integer),
        _ts("expires_at"),
        _ts("created_at"),
    )
    op.create_index("ix_idempotency_keys_expires_at", "idempotency_keys", ["expires_at"])


def downgrade() -> None:
    for table in (
        "idempotency_keys",
        "call_analyses",
        "call_records",
        "phone_assignments",
        "agents",
        "booking_credentials",
        "tenant_users",
        "tenants",
    ):
        op.drop_table(table)
    for name in _ENUMS:
        op.execute(f"DROP TYPE IF EXISTS {name}")
