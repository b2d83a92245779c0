"""Base model class for all SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import DateTime, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Declarative base shared by every table of the engine."""

    pass


class TimestampedModel(Base):
    """Abstract base model with automatic created/updated timestamps.

    Primary keys are supplied by the engine (execution ids, wake ids),
    so subclasses declare their own ``id`` column.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=func.now(), onupdate=func.now()
    )
