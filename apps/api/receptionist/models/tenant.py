"""Tenant, user and booking credential models."""
from __future__ import annotations

import enum
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, ForeignKey, Index, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, enum_column, new_id, utcnow

if TYPE_CHECKING:
    from .agent import Agent
    from .phone_assignment import PhoneAssignment


class TenantStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"


class UserRole(str, enum.Enum):
    OWNER = "owner"
    STAFF = "staff"


class BookingEnvironment(str, enum.Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class Tenant(Base):
    """One customer business."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    slug: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    business_name: Mapped[str] = mapped_column(String, nullable=False)
    timezone: Mapped[str] = mapped_column(String, nullable=False, default="America/New_York")
    status: Mapped[TenantStatus] = mapped_column(
        enum_column(TenantStatus, "tenant_status"), default=TenantStatus.PENDING, nullable=False
    )
    trial_ends_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    settings: Mapped[dict] = mapped_column(JSONB, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    users: Mapped[list["User"]] = relationship("User", back_populates="tenant")
    agents: Mapped[list["Agent"]] = relationship("Agent", back_populates="tenant")
    phone_assignments: Mapped[list["PhoneAssignment"]] = relationship(
        "PhoneAssignment", back_populates="tenant"
    )
    booking_credential: Mapped["BookingCredential | None"] = relationship(
        "BookingCredential", back_populates="tenant", uselist=False
    )


class User(Base):
    """Operator account belonging to a tenant."""

    __tablename__ = "tenant_users"
    __table_args__ = (Index("uq_tenant_users_email", "tenant_id", text("lower(email)"), unique=True),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False)
    email: Mapped[str] = mapped_column(String, nullable=False)
    role: Mapped[UserRole] = mapped_column(enum_column(UserRole, "user_role"), default=UserRole.OWNER, nullable=False)
    password_hash: Mapped[str] = mapped_column(String, nullable=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="users")


class BookingCredential(Base):
    """Per-tenant OAuth bearer for the booking platform."""

    __tablename__ = "booking_credentials"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    merchant_id: Mapped[str] = mapped_column(String, nullable=False)
    location_id: Mapped[str] = mapped_column(String, nullable=False)
    environment: Mapped[BookingEnvironment] = mapped_column(
        enum_column(BookingEnvironment, "booking_environment"),
        default=BookingEnvironment.PRODUCTION,
        nullable=False,
    )
    access_token: Mapped[str] = mapped_column(String, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    tenant: Mapped["Tenant"] = relationship("Tenant", back_populates="booking_credential")
