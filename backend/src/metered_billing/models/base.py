"""Base model with common fields for all entities."""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Uuid

from metered_billing.database import Base as DeclarativeBase


def utcnow() -> datetime:
    """Current time as naive UTC, the storage convention for all timestamps."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base model class with common fields."""

    __abstract__ = True

    id = Column(Uuid, primary_key=True, default=uuid4, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)


class UpdatedAtMixin:
    """Tracks the last mutation time of rows that are allowed to change."""

    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
