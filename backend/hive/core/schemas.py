"""
Hive - Pydantic Schemas
=======================

Request and response schemas for API validation.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from hive.core.models import TaskPriority


# ==========================================================================
# Base Schemas
# ==========================================================================

class BaseSchema(BaseModel):
    """Base schema with common configuration."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )


class TimestampSchema(BaseSchema):
    """Schema with timestamp fields."""

    created_at: datetime
    updated_at: datetime


# ==========================================================================
# Auth Schemas
# ==========================================================================

class LoginRequest(BaseSchema):
    """Admin credentials."""

    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class TokenResponse(BaseSchema):
    """Schema for authentication tokens."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds until access token expires


# ==========================================================================
# Project Schemas
# ==========================================================================

class ProjectCreate(BaseSchema):
    """Schema for creating a project."""

    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    repo_path: Optional[str] = Field(None, max_length=1000)


class ProjectUpdate(BaseSchema):
    """Schema for updating a project."""

    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    repo_path: Optional[str] = Field(None, max_length=1000)


class ProjectResponse(TimestampSchema):
    """Schema for project in responses."""

    id: int
    name: str
    description: Optional[str]
    repo_path: Optional[str]


# ==========================================================================
# Task Schemas
# ==========================================================================

class TaskCreate(BaseSchema):
    """Schema for creating a task. Tasks always start in plan."""

    project_id: int
    title: str = Field(min_length=1, max_length=500)
    spec: Optional[str] = None
    priority: TaskPriority = TaskPriority.NORMAL
    auto_run: bool = False
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    parent_id: Optional[int] = None


class TaskUpdate(BaseSchema):
    """Schema for updating a task. The project cannot be changed."""

    title: Optional[str] = Field(None, min_length=1, max_length=500)
    spec: Optional[str] = None
    priority: Optional[TaskPriority] = None
    auto_run: Optional[bool] = None
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    parent_id: Optional[int] = None


class TaskResponse(TimestampSchema):
    """Schema for task in responses."""

    id: int
    project_id: int
    title: str
    spec: Optional[str]
    status: str
    stage: str
    priority: str
    greenlit: bool
    auto_run: bool
    retry_count: int
    max_retries: int
    parent_id: Optional[int]
    linked_from_id: Optional[int]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]


class StepLogResponse(BaseSchema):
    id: int
    timestamp: datetime
    level: str
    message: str


class RunSummary(BaseSchema):
    """
    One pipeline run without its instructions.

    The prompt carries the run's callback token, so anything a worker can
    read must use this shape.
    """

    id: int
    task_id: int
    stage: str
    status: str
    agent_session_key: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]
    duration_ms: Optional[int]
    output: Optional[str]
    error: Optional[str]


class RunResponse(RunSummary):
    """One pipeline run with its instructions and step logs (operator only)."""

    prompt: Optional[str]
    logs: list[StepLogResponse] = []


class TaskDetailResponse(TaskResponse):
    """Task with subtasks and full run history."""

    project_name: Optional[str] = None
    subtasks: list[TaskResponse] = []
    runs: list[RunResponse] = []


class TaskListResponse(BaseSchema):
    items: list[TaskResponse]
    total: int


# ==========================================================================
# Transition Schemas
# ==========================================================================

class AdvanceRequest(BaseSchema):
    """Worker success report."""

    output: Optional[str] = None


class FailRequest(BaseSchema):
    """Worker failure report."""

    error: Optional[str] = None


class FeedbackRequest(BaseSchema):
    """Operator feedback that becomes the spec of the next iteration."""

    feedback: str = Field(min_length=1)


class TransitionResponse(BaseSchema):
    """Task state after a transition, with the runs it touched."""

    task: TaskResponse
    run: Optional[RunResponse] = None
    next_run: Optional[RunResponse] = None
    completed: bool = False
    retried: bool = False


class CallbackResponse(BaseSchema):
    """Answer to a worker callback. Runs are summarized, never with prompts."""

    task: TaskResponse
    run: Optional[RunSummary] = None
    next_run: Optional[RunSummary] = None
    completed: bool = False
    retried: bool = False


# ==========================================================================
# Dashboard Schemas
# ==========================================================================

class LatestRun(BaseSchema):
    id: int
    stage: str
    status: str
    duration_ms: Optional[int]
    error: Optional[str]


class DashboardTask(BaseSchema):
    """Task card on the board."""

    id: int
    project_id: int
    project_name: Optional[str]
    title: str
    status: str
    stage: str
    priority: str
    greenlit: bool
    auto_run: bool
    retry_count: int
    max_retries: int
    parent_id: Optional[int]
    parent_title: Optional[str] = None
    subtask_count: int = 0
    subtask_completed_count: int = 0
    latest_run: Optional[LatestRun] = None
    updated_at: datetime


class ArchivedTask(BaseSchema):
    id: int
    project_id: int
    project_name: Optional[str]
    title: str
    linked_from_id: Optional[int]
    linked_from_title: Optional[str] = None
    completed_at: Optional[datetime]
    updated_at: datetime


class DashboardCounts(BaseSchema):
    total: int
    by_status: dict[str, int]


class DashboardProject(BaseSchema):
    id: int
    name: str
    task_count: int = 0


class DashboardResponse(BaseSchema):
    """Read model for the board. Derived, never authoritative."""

    stages: dict[str, list[DashboardTask]]
    archived: list[ArchivedTask]
    counts: DashboardCounts
    projects: list[DashboardProject]


# ==========================================================================
# Common Response Schemas
# ==========================================================================

class MessageResponse(BaseSchema):
    """Generic message response."""

    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    """Error response schema."""

    error: str
    detail: Optional[str] = None
    code: Optional[str] = None


class HealthResponse(BaseSchema):
    """Health check response."""

    status: str
    version: str
    environment: str
    database: str
    dispatch_backend: str
