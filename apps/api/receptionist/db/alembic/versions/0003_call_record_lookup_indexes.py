"""Lookup indexes for call history and number routing.

Revision ID: 0003
Revises: 0002
Create Date: 2026-09-21
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "0003"
down_revision: Union[str, None] = "0002"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_index(
        "ix_call_records_tenant_started", "call_records", ["tenant_id", sa.text("started_at DESC")]
    )
    op.create_index("ix_phone_assignments_number", "phone_assignments", ["phone_number"])


def downgrade() -> None:
    op.drop_index("ix_phone_assignments_number", table_name="phone_assignments")
    op.drop_index("ix_call_records_tenant_started", table_name="call_records")
