"""SQLAlchemy ORM models for snapshot persistence.

Design
------

One row per ``(workflow_name, run_id)`` under a composite unique key. The
snapshot document is stored whole (JSONB on PostgreSQL, JSON elsewhere) and is
only ever replaced with a merged copy inside a locking transaction.

``seq_id`` is a monotonic insertion sequence used for stable pagination;
creation timestamps can collide.

Table names are prefixed with ``al_`` to avoid collisions in shared databases.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, DateTime, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

SnapshotJSON = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


class WorkflowSnapshotRow(Base):
    """Row model for ``al_workflow_snapshot``."""

    __tablename__ = "al_workflow_snapshot"
    __table_args__ = (UniqueConstraint("workflow_name", "run_id", name="uq_al_workflow_snapshot_workflow_run"),)

    seq_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    workflow_name: Mapped[str] = mapped_column(String(255), index=True)
    run_id: Mapped[str] = mapped_column(String(255), index=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    snapshot: Mapped[Dict[str, Any]] = mapped_column(SnapshotJSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
