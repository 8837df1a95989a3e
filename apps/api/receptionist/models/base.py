"""Declarative base and metadata utilities."""
from __future__ import annotations

import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Enum
from sqlalchemy.orm import DeclarativeBase, declared_attr


class Base(DeclarativeBase):
    """Base model with naming conventions."""

    __abstract__ = True

    @declared_attr.directive
    def __tablename__(cls) -> str:  # type: ignore[misc]
        return cls.__name__.lower()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    """Enum type persisted by value so raw SQL can compare against 'active' etc."""

    return Enum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members])
