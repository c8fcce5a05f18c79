"""
Base Model Classes
==================

Shared base classes and mixins for the job store models.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def generate_job_id() -> str:
    """Generate a new random 32 character hex id."""
    return uuid.uuid4().hex


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """
    SQLAlchemy declarative base for all models.
    """


class HexIdMixin:
    """
    Mixin that adds a random hex string primary key.
    """

    id: Mapped[str] = mapped_column(
        String(32),
        primary_key=True,
        default=generate_job_id,
        doc="Unique identifier",
    )


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at timestamps.

    - created_at: Set automatically on insert
    - updated_at: Updated automatically on every change
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        nullable=False,
        doc="Record creation timestamp",
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utc_now,
        onupdate=utc_now,
        nullable=False,
        doc="Last update timestamp",
    )
