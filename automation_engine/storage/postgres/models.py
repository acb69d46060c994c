"""
SQLAlchemy models for PostgreSQL persistence.

Implements durable storage for workflows and their runs.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
    }


class WorkflowModel(Base):
    """
    Stores workflows.

    ``config`` holds the executable part (steps, returnValue, outputDisplay);
    the run aggregates are maintained by the run ledger.
    """

    __tablename__ = "workflows"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    organization_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    # Denormalized from the organization so execution needs no join
    organization_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft")

    trigger: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    config: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    # Run aggregates
    last_run: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    last_run_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    run_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now()
    )

    runs: Mapped[list["WorkflowRunModel"]] = relationship(
        back_populates="workflow",
        lazy="noload",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_workflows_status", "status"),
        Index("ix_workflows_user_status", "user_id", "status"),
    )


class WorkflowRunModel(Base):
    """
    One execution of a workflow.

    Written twice: at start (status=running) and at the terminal transition.
    """

    __tablename__ = "workflow_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    workflow_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("workflows.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    organization_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)

    trigger_type: Mapped[str] = mapped_column(String(50), nullable=False, default="manual")
    trigger_data: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # milliseconds

    output: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_step: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    workflow: Mapped[WorkflowModel] = relationship(back_populates="runs")

    __table_args__ = (
        Index("ix_workflow_runs_workflow_started", "workflow_id", "started_at"),
        Index("ix_workflow_runs_status_completed", "status", "completed_at"),
    )
