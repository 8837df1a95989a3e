"""Call record and post-call analysis models."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_column, new_id, utcnow

if TYPE_CHECKING:
    from .tenant import Tenant


class CallStatus(str, enum.Enum):
    IN_PROGRESS = "in_progress"
    ENDED = "ended"
    FAILED = "failed"


class CallRecord(Base):
    """Lifecycle record for one provider call, keyed by the provider call id."""

    __tablename__ = "call_records"
    __table_args__ = (
        CheckConstraint(
            "ended_at IS NULL OR started_at IS NULL OR ended_at >= started_at",
            name="ck_call_records_end_after_start",
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True)
    agent_id: Mapped[str | None] = mapped_column(ForeignKey("agents.id", ondelete="SET NULL"))
    call_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    direction: Mapped[str | None] = mapped_column(String)
    from_number: Mapped[str | None] = mapped_column(String)
    to_number: Mapped[str | None] = mapped_column(String)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    status: Mapped[CallStatus] = mapped_column(
        enum_column(CallStatus, "call_status"), default=CallStatus.IN_PROGRESS, nullable=False
    )
    cost_cents: Mapped[int | None] = mapped_column(Integer)
    disconnection_reason: Mapped[str | None] = mapped_column(String)
    analyzed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    raw_payload: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    tenant: Mapped["Tenant"] = relationship("Tenant")
    analysis: Mapped["CallAnalysis | None"] = relationship(
        "CallAnalysis", back_populates="call", uselist=False, cascade="all, delete-orphan"
    )


class CallAnalysis(Base):
    """Post-call analysis; exists only once the provider has analyzed the call."""

    __tablename__ = "call_analyses"

    call_id: Mapped[str] = mapped_column(
        ForeignKey("call_records.call_id", ondelete="CASCADE"), primary_key=True
    )
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    summary: Mapped[str | None] = mapped_column(Text)
    sentiment: Mapped[str | None] = mapped_column(String)
    successful: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    booking_created: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    transcript: Mapped[str | None] = mapped_column(Text)
    extracted_fields: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)
    analyzed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    call: Mapped["CallRecord"] = relationship("CallRecord", back_populates="analysis")
