"""
Pipeline errors surfaced to callers.

Routers translate these into HTTP responses; nothing in the core catches
them on the caller's behalf.
"""

from typing import Optional


class HiveError(Exception):
    """Base class for all orchestrator errors."""


class ProjectNotFoundError(HiveError):
    def __init__(self, project_id: int):
        self.project_id = project_id
        super().__init__(f"Project {project_id} not found")


class ProjectNotEmptyError(HiveError):
    def __init__(self, project_id: int, task_count: int):
        self.project_id = project_id
        self.task_count = task_count
        super().__init__(f"Project {project_id} still has {task_count} task(s)")


class DuplicateProjectError(HiveError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Project '{name}' already exists")


class InvalidTaskError(HiveError):
    """Task or project input that is well-formed but not acceptable."""


class TaskNotFoundError(HiveError):
    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class RunNotFoundError(HiveError):
    """No outstanding run matches the task's current stage."""

    def __init__(self, task_id: int, stage: str, message: Optional[str] = None):
        self.task_id = task_id
        self.stage = stage
        super().__init__(message or f"No pipeline run for task {task_id} at stage {stage}")


class StaleCallbackError(RunNotFoundError):
    """
    Callback for a run that is no longer the outstanding one.

    Raised for duplicate callbacks, callbacks after a retry superseded the
    run, and callbacks whose token belongs to a different run.
    """

    def __init__(self, task_id: int, stage: str, reason: str):
        self.reason = reason
        super().__init__(
            task_id,
            stage,
            f"Stale callback for task {task_id} at stage {stage}: {reason}",
        )


class RunConflictError(HiveError):
    """A step was requested while another run of the task is still running."""

    def __init__(self, task_id: int, running_run_id: Optional[int] = None):
        self.task_id = task_id
        self.running_run_id = running_run_id
        detail = f" (run {running_run_id})" if running_run_id else ""
        super().__init__(f"Task {task_id} already has a running pipeline run{detail}")


class InvalidTransitionError(HiveError):
    def __init__(self, task_id: int, action: str, status: str, stage: str):
        self.task_id = task_id
        self.action = action
        self.status = status
        self.stage = stage
        super().__init__(
            f"Cannot {action} task {task_id} in status '{status}' at stage '{stage}'"
        )


class DispatchError(HiveError):
    """The agent runtime did not acknowledge the start request."""

    def __init__(self, message: str, run_id: Optional[int] = None):
        self.run_id = run_id
        super().__init__(message)
