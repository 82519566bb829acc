"""Declarative base and shared columns for metering tables."""

from datetime import datetime

from sqlalchemy import DateTime, Integer
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from metering.clock import utcnow


class Base(DeclarativeBase):
    """Declarative base for all metering models."""

    pass


class TimestampMixin:
    """Surrogate primary key plus creation/update stamps."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
