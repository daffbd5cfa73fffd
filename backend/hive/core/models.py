"""
Hive - Database Models
======================

SQLAlchemy models for the pipeline store: projects, tasks, pipeline runs
and step logs.

Status and stage columns hold the plain string values of the enums below,
so partial indexes and ad-hoc SQL can match them directly.
"""

import enum
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from hive.core.database import Base


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to the naive datetimes SQLite hands back."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ==========================================================================
# Enums
# ==========================================================================

class Stage(str, enum.Enum):
    """Board position of a task. Only implement..deploy are ever executed."""
    PLAN = "plan"
    IMPLEMENT = "implement"
    VERIFY = "verify"
    TEST = "test"
    DEPLOY = "deploy"
    DONE = "done"


class TaskStatus(str, enum.Enum):
    """Lifecycle flag of a task."""
    PLAN = "plan"
    GREENLIT = "greenlit"
    RUNNING = "running"
    PAUSED = "paused"
    DONE = "done"
    FAILED = "failed"
    ARCHIVED = "archived"


class TaskPriority(str, enum.Enum):
    """Informational only, no scheduling effect."""
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class RunStatus(str, enum.Enum):
    """Status of a single stage execution attempt."""
    RUNNING = "running"    # Awaiting the worker's callback
    PASSED = "passed"
    FAILED = "failed"


class LogLevel(str, enum.Enum):
    """Step log severity."""
    INFO = "info"
    SUCCESS = "success"
    WARN = "warn"
    ERROR = "error"


# ==========================================================================
# Mixins
# ==========================================================================

class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamps."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False,
    )


# ==========================================================================
# Models
# ==========================================================================

class Project(Base, TimestampMixin):
    """
    Deployable work context a task belongs to.

    Cannot be deleted while it still has tasks.
    """

    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    name: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        nullable=False,
    )
    description: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    repo_path: Mapped[Optional[str]] = mapped_column(
        String(1000),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Project {self.name}>"


class Task(Base, TimestampMixin):
    """
    Unit of work advanced through the pipeline.

    At most one PipelineRun per task may be running at a time; while one is
    outstanding, ``stage`` names its stage.
    """

    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    project_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("projects.id"),
        nullable=False,
        index=True,
    )

    # Content
    title: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
    )
    spec: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Pipeline state
    status: Mapped[str] = mapped_column(
        String(20),
        default=TaskStatus.PLAN.value,
        nullable=False,
        index=True,
    )
    stage: Mapped[str] = mapped_column(
        String(20),
        default=Stage.PLAN.value,
        nullable=False,
        index=True,
    )
    priority: Mapped[str] = mapped_column(
        String(20),
        default=TaskPriority.NORMAL.value,
        nullable=False,
    )
    greenlit: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    auto_run: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    max_retries: Mapped[int] = mapped_column(
        Integer,
        default=2,
        nullable=False,
    )

    # Lineage (non-owning back-references)
    parent_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("tasks.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    linked_from_id: Mapped[Optional[int]] = mapped_column(
        Integer,
        ForeignKey("tasks.id", ondelete="SET NULL"),
        nullable=True,
    )

    # Timing
    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Task {self.id} {self.title[:50]} [{self.status}/{self.stage}]>"


class PipelineRun(Base):
    """
    One execution attempt of one stage for one task.

    Created running when a step starts and moved exactly once to passed or
    failed when the worker calls back.
    """

    __tablename__ = "pipeline_runs"
    __table_args__ = (
        Index(
            "uq_pipeline_runs_one_running_per_task",
            "task_id",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
        Index("ix_pipeline_runs_task_stage", "task_id", "stage"),
    )

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    task_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("tasks.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    stage: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(
        String(20),
        default=RunStatus.RUNNING.value,
        nullable=False,
    )

    # Dispatch
    agent_session_key: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )  # Handle returned by the agent runtime
    callback_token: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
    )
    prompt: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    # Timing
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    duration_ms: Mapped[Optional[int]] = mapped_column(
        Integer,
        nullable=True,
    )

    # Results
    output: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )
    error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<PipelineRun {self.id} task={self.task_id} {self.stage} [{self.status}]>"


class StepLog(Base):
    """Append-only narration line for a pipeline run."""

    __tablename__ = "step_logs"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )
    run_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("pipeline_runs.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    level: Mapped[str] = mapped_column(
        String(10),
        default=LogLevel.INFO.value,
        nullable=False,
    )
    message: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<StepLog run={self.run_id} [{self.level}] {self.message[:40]}>"
