"""Phone number assignment model."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_column, new_id, utcnow

if TYPE_CHECKING:
    from .tenant import Tenant


class AssignmentStatus(str, enum.Enum):
    ACTIVE = "active"
    RELEASED = "released"


class AssignmentType(str, enum.Enum):
    NEW = "new"
    EXISTING = "existing"


class PhoneAssignment(Base):
    """A provider phone number routed to a tenant's agent."""

    __tablename__ = "phone_assignments"
    __table_args__ = (
        Index(
            "uq_phone_assignments_active_number",
            "phone_number",
            unique=True,
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_id: Mapped[str | None] = mapped_column(ForeignKey("agents.id", ondelete="SET NULL"))
    external_phone_id: Mapped[str | None] = mapped_column(String)
    phone_number: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[AssignmentStatus] = mapped_column(
        enum_column(AssignmentStatus, "assignment_status"), default=AssignmentStatus.ACTIVE, nullable=False
    )
    forwarding_number: Mapped[str | None] = mapped_column(String)
    assignment_type: Mapped[AssignmentType] = mapped_column(
        enum_column(AssignmentType, "assignment_type"), default=AssignmentType.NEW, nullable=False
    )
    metadata_json: Mapped[dict] = mapped_column("metadata", JSONB, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="phone_assignments")
