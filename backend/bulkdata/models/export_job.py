"""Export job model.

One row per bulk export job. The complete job state is kept as a JSON
snapshot that every save overwrites; ``status`` and ``created_at`` are
duplicated into columns so the cleanup sweep and admin queries can filter
without decoding the snapshot.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, String, Index
from sqlalchemy.orm import Mapped, mapped_column

from bulkdata.models.base import Base, HexIdMixin, TimestampMixin


class ExportJob(Base, HexIdMixin, TimestampMixin):
    __tablename__ = "export_jobs"

    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="UNDEFINED",
        doc="UNDEFINED|STARTED|EXPORTED",
    )

    state: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    __table_args__ = (
        Index("ix_export_jobs_created_at", "created_at"),
    )
