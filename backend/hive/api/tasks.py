"""
Hive - Tasks API
================

Task CRUD, operator transitions and the worker callbacks.

Operator endpoints need the admin bearer token. ``advance`` and ``fail``
are called by the agents themselves with the run's callback token
(``?token=...``) as embedded in their instructions.
"""

from typing import Optional

from fastapi import APIRouter, Query, status

from hive.api.deps import CallbackToken, CurrentAdmin, Orchestrator, http_error
from hive.core.models import PipelineRun, Task
from hive.core.pipeline.errors import HiveError
from hive.core.pipeline.orchestrator import PipelineOrchestrator, TransitionResult
from hive.core.schemas import (
    AdvanceRequest,
    CallbackResponse,
    FailRequest,
    FeedbackRequest,
    MessageResponse,
    RunResponse,
    RunSummary,
    StepLogResponse,
    TaskCreate,
    TaskDetailResponse,
    TaskListResponse,
    TaskResponse,
    TaskUpdate,
    TransitionResponse,
)

router = APIRouter(prefix="/hive/tasks", tags=["Tasks"])


# ==========================================================================
# Helper Functions
# ==========================================================================

def _run_to_response(run: Optional[PipelineRun]) -> Optional[RunResponse]:
    if run is None:
        return None
    return RunResponse.model_validate(run)


def _transition_to_response(result: TransitionResult) -> TransitionResponse:
    return TransitionResponse(
        task=TaskResponse.model_validate(result.task),
        run=_run_to_response(result.run),
        next_run=_run_to_response(result.next_run),
        completed=result.completed,
        retried=result.retried,
    )


def _callback_to_response(result: TransitionResult) -> CallbackResponse:
    return CallbackResponse(
        task=TaskResponse.model_validate(result.task),
        run=RunSummary.model_validate(result.run) if result.run else None,
        next_run=RunSummary.model_validate(result.next_run) if result.next_run else None,
        completed=result.completed,
        retried=result.retried,
    )


async def _task_detail(orchestrator: PipelineOrchestrator, task: Task) -> TaskDetailResponse:
    project = await orchestrator.get_project(task.project_id)
    subtasks = await orchestrator.list_subtasks(task.id)
    runs = await orchestrator.list_runs(task.id)
    logs = await orchestrator.list_step_logs([run.id for run in runs])

    detail = TaskDetailResponse.model_validate(task)
    detail.project_name = project.name
    detail.subtasks = [TaskResponse.model_validate(s) for s in subtasks]
    detail.runs = []
    for run in runs:
        response = RunResponse.model_validate(run)
        response.logs = [StepLogResponse.model_validate(log) for log in logs[run.id]]
        detail.runs.append(response)
    return detail


# ==========================================================================
# CRUD
# ==========================================================================

@router.get("", response_model=TaskListResponse, summary="List tasks")
async def list_tasks(
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
    project_id: Optional[int] = Query(None),
    status_filter: Optional[str] = Query(None, alias="status"),
    include_archived: bool = Query(False),
) -> TaskListResponse:
    """Archived tasks are hidden unless asked for (or filtered on)."""
    tasks = await orchestrator.list_tasks(
        project_id=project_id,
        status=status_filter,
        include_archived=include_archived,
    )
    return TaskListResponse(
        items=[TaskResponse.model_validate(t) for t in tasks],
        total=len(tasks),
    )


@router.post(
    "",
    response_model=TaskResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a task",
)
async def create_task(
    data: TaskCreate,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> TaskResponse:
    try:
        task = await orchestrator.create_task(
            project_id=data.project_id,
            title=data.title,
            spec=data.spec,
            priority=data.priority.value,
            auto_run=data.auto_run,
            max_retries=data.max_retries,
            parent_id=data.parent_id,
        )
    except HiveError as e:
        raise http_error(e) from e
    return TaskResponse.model_validate(task)


@router.get("/{task_id}", response_model=TaskDetailResponse, summary="Get a task")
async def get_task(
    task_id: int,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> TaskDetailResponse:
    """Task with its subtasks and every run, each with its step logs."""
    try:
        task = await orchestrator.get_task(task_id)
        return await _task_detail(orchestrator, task)
    except HiveError as e:
        raise http_error(e) from e


@router.patch("/{task_id}", response_model=TaskResponse, summary="Update a task")
async def update_task(
    task_id: int,
    data: TaskUpdate,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> TaskResponse:
    try:
        task = await orchestrator.update_task(task_id, **data.model_dump(exclude_unset=True))
    except HiveError as e:
        raise http_error(e) from e
    return TaskResponse.model_validate(task)


@router.delete("/{task_id}", response_model=MessageResponse, summary="Delete a task")
async def delete_task(
    task_id: int,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> MessageResponse:
    """Deletes the task with its runs and step logs."""
    try:
        await orchestrator.delete_task(task_id)
    except HiveError as e:
        raise http_error(e) from e
    return MessageResponse(message=f"Task {task_id} deleted")


# ==========================================================================
# Operator Transitions
# ==========================================================================

@router.post("/{task_id}/greenlight", response_model=TransitionResponse, summary="Toggle greenlight")
async def greenlight_task(
    task_id: int,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> TransitionResponse:
    """
    Toggle the greenlight gate.

    For ``auto_run`` tasks greenlighting starts the implement stage at once;
    a dispatch failure then returns 502 with the run left running.
    """
    try:
        result = await orchestrator.greenlight(task_id)
    except HiveError as e:
        raise http_error(e) from e
    return _transition_to_response(result)


@router.post("/{task_id}/start", response_model=TransitionResponse, summary="Start a greenlit task")
async def start_task(
    task_id: int,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> TransitionResponse:
    try:
        result = await orchestrator.start(task_id)
    except HiveError as e:
        raise http_error(e) from e
    return _transition_to_response(result)


@router.post("/{task_id}/pause", response_model=TaskResponse, summary="Pause a task")
async def pause_task(
    task_id: int,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> TaskResponse:
    """Marks the task paused. An agent already working is not stopped."""
    try:
        task = await orchestrator.pause(task_id)
    except HiveError as e:
        raise http_error(e) from e
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/resume", response_model=TaskResponse, summary="Resume a paused task")
async def resume_task(
    task_id: int,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> TaskResponse:
    try:
        task = await orchestrator.resume(task_id)
    except HiveError as e:
        raise http_error(e) from e
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/retry", response_model=TaskResponse, summary="Re-arm a failed task")
async def retry_task(
    task_id: int,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> TaskResponse:
    try:
        task = await orchestrator.retry(task_id)
    except HiveError as e:
        raise http_error(e) from e
    return TaskResponse.model_validate(task)


@router.post("/{task_id}/archive", response_model=TaskResponse, summary="Archive a task")
async def archive_task(
    task_id: int,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> TaskResponse:
    """Archives the task and its direct subtasks."""
    try:
        task = await orchestrator.archive(task_id)
    except HiveError as e:
        raise http_error(e) from e
    return TaskResponse.model_validate(task)


@router.post(
    "/{task_id}/feedback",
    response_model=TaskResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create the next iteration from feedback",
)
async def feedback_task(
    task_id: int,
    data: FeedbackRequest,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> TaskResponse:
    """Archives the task and returns the new iteration linked to it."""
    try:
        iteration = await orchestrator.feedback(task_id, data.feedback)
    except HiveError as e:
        raise http_error(e) from e
    return TaskResponse.model_validate(iteration)


# ==========================================================================
# Worker Callbacks
# ==========================================================================

@router.post("/{task_id}/advance", response_model=CallbackResponse, summary="Report stage success")
async def advance_task(
    task_id: int,
    token: CallbackToken,
    orchestrator: Orchestrator,
    data: Optional[AdvanceRequest] = None,
) -> CallbackResponse:
    """
    Called by the agent when its stage succeeded.

    409 when there is no outstanding run for the task's stage or the token
    belongs to another run; 502 when the next stage could not be dispatched.
    """
    try:
        result = await orchestrator.advance(
            task_id,
            output=data.output if data else None,
            callback_token=token,
        )
    except HiveError as e:
        raise http_error(e) from e
    return _callback_to_response(result)


@router.post("/{task_id}/fail", response_model=CallbackResponse, summary="Report stage failure")
async def fail_task(
    task_id: int,
    token: CallbackToken,
    orchestrator: Orchestrator,
    data: Optional[FailRequest] = None,
) -> CallbackResponse:
    """Called by the agent when its stage failed. Retries while attempts are left."""
    try:
        result = await orchestrator.fail(
            task_id,
            error=data.error if data else None,
            callback_token=token,
        )
    except HiveError as e:
        raise http_error(e) from e
    return _callback_to_response(result)
