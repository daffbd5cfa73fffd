"""
Pipeline Orchestrator - task lifecycle state machine.

Drives tasks through the pipeline stages, one externally executed run at a
time. Progress only ever happens inside a request: an operator action or a
worker callback. Between dispatch and callback a run sits in ``running``
(awaiting external completion) and nothing here polls it.
"""

import hmac
import secrets
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from hive.core.config import Settings, settings as default_settings
from hive.core.models import (
    LogLevel,
    PipelineRun,
    Project,
    RunStatus,
    Stage,
    StepLog,
    Task,
    TaskPriority,
    TaskStatus,
    as_utc,
    utcnow,
)
from hive.core.pipeline.dispatch import AgentDispatcher
from hive.core.pipeline.errors import (
    DispatchError,
    DuplicateProjectError,
    InvalidTaskError,
    InvalidTransitionError,
    ProjectNotEmptyError,
    ProjectNotFoundError,
    RunConflictError,
    RunNotFoundError,
    StaleCallbackError,
    TaskNotFoundError,
)
from hive.core.pipeline.prompts import CallbackUrls, build_prompt
from hive.core.pipeline.stages import (
    FIRST_STAGE,
    PIPELINE_STAGES,
    is_pipeline_stage,
    next_stage,
    stage_value,
)

logger = structlog.get_logger()


@dataclass
class TransitionResult:
    """Outcome of a callback or greenlight."""
    task: Task
    run: Optional[PipelineRun] = None       # Run that was completed
    next_run: Optional[PipelineRun] = None  # Run that was started
    completed: bool = False                 # Task reached done
    retried: bool = False                   # Same stage restarted after a failure


class PipelineOrchestrator:
    """
    Owns every task and run transition.

    Flow of one task:
        plan → (greenlight) → implement → verify → test → deploy → done

    Each stage is one PipelineRun handed to an external worker. The worker
    resumes the pipeline by calling ``advance`` or ``fail``. A failed stage
    is restarted with the error in its instructions until ``max_retries`` is
    used up, then the task fails.
    """

    TASK_FIELDS = {"title", "spec", "priority", "auto_run", "max_retries", "parent_id"}
    PROJECT_FIELDS = {"name", "description", "repo_path"}
    # Fields that may be cleared by passing None
    NULLABLE_FIELDS = {"spec", "parent_id", "description", "repo_path"}

    def __init__(
        self,
        db: AsyncSession,
        dispatcher: Optional[AgentDispatcher] = None,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.settings = settings or default_settings

    # ======================================================================
    # Projects
    # ======================================================================

    async def list_projects(self) -> List[Project]:
        result = await self.db.execute(select(Project).order_by(Project.name))
        return list(result.scalars().all())

    async def get_project(self, project_id: int) -> Project:
        project = await self.db.get(Project, project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    async def create_project(
        self,
        name: str,
        description: Optional[str] = None,
        repo_path: Optional[str] = None,
    ) -> Project:
        await self._ensure_project_name_free(name)
        project = Project(name=name, description=description, repo_path=repo_path)
        self.db.add(project)
        await self.db.commit()

        logger.info("project_created", project_id=project.id, name=name)
        return project

    async def update_project(self, project_id: int, **changes: Any) -> Project:
        project = await self.get_project(project_id)
        unknown = set(changes) - self.PROJECT_FIELDS
        if unknown:
            raise InvalidTaskError(f"Unknown project field(s): {', '.join(sorted(unknown))}")
        self._check_required(changes)

        if changes.get("name") and changes["name"] != project.name:
            await self._ensure_project_name_free(changes["name"])

        for name, value in changes.items():
            setattr(project, name, value)
        await self.db.commit()
        return project

    async def delete_project(self, project_id: int) -> None:
        project = await self.get_project(project_id)
        count = await self.db.scalar(
            select(func.count()).select_from(Task).where(Task.project_id == project_id)
        )
        if count:
            raise ProjectNotEmptyError(project_id, count)

        await self.db.delete(project)
        await self.db.commit()
        logger.info("project_deleted", project_id=project_id)

    async def _ensure_project_name_free(self, name: str) -> None:
        existing = await self.db.scalar(select(Project.id).where(Project.name == name))
        if existing is not None:
            raise DuplicateProjectError(name)

    # ======================================================================
    # Task CRUD
    # ======================================================================

    async def get_task(self, task_id: int) -> Task:
        return await self._get_task(task_id)

    async def list_tasks(
        self,
        project_id: Optional[int] = None,
        status: Optional[str] = None,
        include_archived: bool = False,
    ) -> List[Task]:
        query = select(Task).order_by(Task.id)
        if project_id is not None:
            query = query.where(Task.project_id == project_id)
        if status:
            query = query.where(Task.status == status)
        elif not include_archived:
            query = query.where(Task.status != TaskStatus.ARCHIVED.value)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def list_subtasks(self, task_id: int) -> List[Task]:
        result = await self.db.execute(
            select(Task).where(Task.parent_id == task_id).order_by(Task.id)
        )
        return list(result.scalars().all())

    async def list_runs(self, task_id: int) -> List[PipelineRun]:
        """All runs of a task, oldest first."""
        result = await self.db.execute(
            select(PipelineRun).where(PipelineRun.task_id == task_id).order_by(PipelineRun.id)
        )
        return list(result.scalars().all())

    async def list_step_logs(self, run_ids: List[int]) -> Dict[int, List[StepLog]]:
        """Step logs grouped by run, in insertion order."""
        logs: Dict[int, List[StepLog]] = {run_id: [] for run_id in run_ids}
        if not run_ids:
            return logs
        result = await self.db.execute(
            select(StepLog).where(StepLog.run_id.in_(run_ids)).order_by(StepLog.id)
        )
        for log in result.scalars().all():
            logs[log.run_id].append(log)
        return logs

    async def create_task(
        self,
        project_id: int,
        title: str,
        spec: Optional[str] = None,
        priority: str = TaskPriority.NORMAL.value,
        auto_run: bool = False,
        max_retries: Optional[int] = None,
        parent_id: Optional[int] = None,
    ) -> Task:
        """
        Create a task in the plan column.

        Args:
            project_id: Owning project (immutable afterwards)
            title: Task title
            spec: Free-text specification handed to the workers
            priority: low, normal, high, urgent (informational)
            auto_run: Start the pipeline as soon as the task is greenlit
            max_retries: Automatic retries per failure streak
            parent_id: Parent task for subtasks

        Returns:
            Created Task
        """
        await self.get_project(project_id)
        if parent_id is not None:
            await self._check_parent(parent_id, project_id)

        task = Task(
            project_id=project_id,
            title=title,
            spec=spec,
            status=TaskStatus.PLAN.value,
            stage=Stage.PLAN.value,
            priority=priority.value if isinstance(priority, TaskPriority) else priority,
            greenlit=False,
            auto_run=auto_run,
            retry_count=0,
            max_retries=self.settings.HIVE_DEFAULT_MAX_RETRIES if max_retries is None else max_retries,
            parent_id=parent_id,
        )
        self.db.add(task)
        await self.db.commit()

        logger.info("task_created", task_id=task.id, project_id=project_id, title=title)
        return task

    async def update_task(self, task_id: int, **changes: Any) -> Task:
        """Edit task metadata. The owning project cannot be changed."""
        task = await self._get_task(task_id, lock=True)
        unknown = set(changes) - self.TASK_FIELDS
        if unknown:
            raise InvalidTaskError(f"Unknown or immutable task field(s): {', '.join(sorted(unknown))}")
        self._check_required(changes)

        if changes.get("parent_id") is not None:
            await self._check_parent(changes["parent_id"], task.project_id)
            await self._check_no_cycle(task.id, changes["parent_id"])

        for name, value in changes.items():
            setattr(task, name, value.value if isinstance(value, TaskPriority) else value)
        await self.db.commit()
        return task

    async def delete_task(self, task_id: int) -> None:
        """
        Delete a task with its runs and step logs.

        Subtasks and iterations pointing at it lose the reference but survive.
        """
        task = await self._get_task(task_id, lock=True)

        run_ids = select(PipelineRun.id).where(PipelineRun.task_id == task.id)
        await self.db.execute(
            delete(StepLog)
            .where(StepLog.run_id.in_(run_ids))
            .execution_options(synchronize_session=False)
        )
        await self.db.execute(delete(PipelineRun).where(PipelineRun.task_id == task.id))
        await self.db.execute(
            update(Task).where(Task.parent_id == task.id).values(parent_id=None)
        )
        await self.db.execute(
            update(Task).where(Task.linked_from_id == task.id).values(linked_from_id=None)
        )
        await self.db.delete(task)
        await self.db.commit()

        logger.info("task_deleted", task_id=task_id)

    def _check_required(self, changes: Dict[str, Any]) -> None:
        cleared = sorted(
            name
            for name, value in changes.items()
            if value is None and name not in self.NULLABLE_FIELDS
        )
        if cleared:
            raise InvalidTaskError(f"Field(s) cannot be cleared: {', '.join(cleared)}")

    async def _check_parent(self, parent_id: int, project_id: int) -> Task:
        parent = await self.db.get(Task, parent_id)
        if parent is None:
            raise TaskNotFoundError(parent_id)
        if parent.project_id != project_id:
            raise InvalidTaskError("Parent task belongs to a different project")
        return parent

    async def _check_no_cycle(self, task_id: int, parent_id: int) -> None:
        """Walk up from the new parent; meeting the task itself means a cycle."""
        seen = set()
        current: Optional[int] = parent_id
        while current is not None and current not in seen:
            if current == task_id:
                raise InvalidTaskError("A task cannot be nested under itself or its own subtasks")
            seen.add(current)
            current = await self.db.scalar(select(Task.parent_id).where(Task.id == current))

    # ======================================================================
    # Operator Transitions
    # ======================================================================

    async def greenlight(self, task_id: int) -> TransitionResult:
        """
        Toggle the greenlight gate of a task in the plan column.

        Turning it on starts the pipeline right away for ``auto_run`` tasks
        and parks the others in ``greenlit``. Turning it off sends a parked
        task back to ``plan``.
        """
        task = await self._get_task(task_id, lock=True)
        if task.status == TaskStatus.ARCHIVED or task.stage != Stage.PLAN:
            raise InvalidTransitionError(task.id, "greenlight", task.status, task.stage)

        task.greenlit = not task.greenlit

        if task.greenlit:
            if task.auto_run:
                logger.info("task_greenlit", task_id=task.id, auto_run=True)
                run = await self._start_step(task, FIRST_STAGE)
                return TransitionResult(task=task, next_run=run)
            task.status = TaskStatus.GREENLIT.value
        elif task.status == TaskStatus.GREENLIT:
            task.status = TaskStatus.PLAN.value

        await self.db.commit()
        logger.info("task_greenlight_toggled", task_id=task.id, greenlit=task.greenlit)
        return TransitionResult(task=task)

    async def start(self, task_id: int) -> TransitionResult:
        """
        Start the pipeline of a greenlit task by hand.

        Picks up at ``implement`` for tasks still in plan, otherwise re-runs
        the task's current stage (after a manual retry). The last failure at
        that stage is handed to the worker.
        """
        task = await self._get_task(task_id, lock=True)
        if task.status != TaskStatus.GREENLIT or task.stage == Stage.DONE:
            raise InvalidTransitionError(task.id, "start", task.status, task.stage)

        stage = task.stage if is_pipeline_stage(task.stage) else FIRST_STAGE.value
        error_context = None
        last = await self._latest_run(task.id, stage)
        if last is not None and last.status == RunStatus.FAILED:
            error_context = last.error

        run = await self._start_step(task, stage, error_context=error_context)
        return TransitionResult(task=task, next_run=run, retried=error_context is not None)

    async def pause(self, task_id: int) -> Task:
        """
        Mark a task paused.

        Bookkeeping only: the worker already dispatched keeps running and its
        callback is still accepted.
        """
        task = await self._get_task(task_id, lock=True)
        if task.status not in (TaskStatus.RUNNING, TaskStatus.GREENLIT):
            raise InvalidTransitionError(task.id, "pause", task.status, task.stage)

        task.status = TaskStatus.PAUSED.value
        await self.db.commit()
        logger.info("task_paused", task_id=task.id, stage=task.stage)
        return task

    async def resume(self, task_id: int) -> Task:
        task = await self._get_task(task_id, lock=True)
        if task.status != TaskStatus.PAUSED:
            raise InvalidTransitionError(task.id, "resume", task.status, task.stage)

        outstanding = await self._running_run(task.id)
        if outstanding is not None:
            task.status = TaskStatus.RUNNING.value
        else:
            task.status = TaskStatus.GREENLIT.value
            task.greenlit = True
        await self.db.commit()
        logger.info("task_resumed", task_id=task.id, status=task.status)
        return task

    async def retry(self, task_id: int) -> Task:
        """
        Manual retry: re-arm a failed or paused task.

        Softer than the automatic retry: the task goes back to ``greenlit``
        and waits for ``start``; no run is created here. A paused task whose
        worker is still out must be resumed instead.
        """
        task = await self._get_task(task_id, lock=True)
        if task.status not in (TaskStatus.FAILED, TaskStatus.PAUSED):
            raise InvalidTransitionError(task.id, "retry", task.status, task.stage)

        outstanding = await self._running_run(task.id)
        if outstanding is not None:
            raise RunConflictError(task.id, outstanding.id)

        task.status = TaskStatus.GREENLIT.value
        task.greenlit = True
        task.retry_count += 1
        task.completed_at = None
        await self.db.commit()
        logger.info("task_retry_armed", task_id=task.id, retry_count=task.retry_count)
        return task

    async def archive(self, task_id: int) -> Task:
        """Archive a task and its direct subtasks. Runs are kept for audit."""
        task = await self._get_task(task_id, lock=True)
        archived = await self._archive(task)
        await self.db.commit()
        logger.info("task_archived", task_id=task.id, subtasks=archived)
        return task

    async def feedback(self, task_id: int, feedback: str) -> Task:
        """
        Turn operator feedback into a new iteration of a task.

        The original is archived, never reset; the new task starts in plan
        and links back to it.
        """
        original = await self._get_task(task_id, lock=True)

        iteration = Task(
            project_id=original.project_id,
            title=f"{original.title} (iteration)",
            spec=feedback,
            status=TaskStatus.PLAN.value,
            stage=Stage.PLAN.value,
            priority=original.priority,
            greenlit=False,
            auto_run=original.auto_run,
            retry_count=0,
            max_retries=original.max_retries,
            linked_from_id=original.id,
        )
        self.db.add(iteration)
        await self._archive(original)
        await self.db.commit()

        logger.info("task_feedback", task_id=original.id, iteration_id=iteration.id)
        return iteration

    async def _archive(self, task: Task) -> List[int]:
        task.status = TaskStatus.ARCHIVED.value
        subtasks = await self.list_subtasks(task.id)
        for subtask in subtasks:
            subtask.status = TaskStatus.ARCHIVED.value
        return [subtask.id for subtask in subtasks]

    # ======================================================================
    # Worker Callbacks
    # ======================================================================

    async def advance(
        self,
        task_id: int,
        output: Optional[str] = None,
        callback_token: Optional[str] = None,
    ) -> TransitionResult:
        """
        Worker reports success for the task's current stage.

        Args:
            task_id: Task the worker ran for
            output: Free-text summary from the worker
            callback_token: Token from the callback URL; when given it must
                belong to the outstanding run

        Returns:
            TransitionResult with the passed run and, unless the task is now
            done, the next stage's run

        Raises:
            RunNotFoundError: No run for the current stage
            StaleCallbackError: The current run is not outstanding
            DispatchError: Next stage could not be dispatched
        """
        task = await self._get_task(task_id, lock=True)
        run = await self._claim_current_run(task, callback_token)

        self._finish_run(run, RunStatus.PASSED, output=output)
        self._log(run, LogLevel.SUCCESS, f"Step passed: {run.stage}")
        await self.db.flush()

        logger.info("pipeline_step_passed", task_id=task.id, stage=run.stage, run_id=run.id)

        if task.status == TaskStatus.ARCHIVED:
            await self.db.commit()
            return TransitionResult(task=task, run=run)

        following = next_stage(task.stage)
        if following is None or following == Stage.DONE:
            now = utcnow()
            task.status = TaskStatus.DONE.value
            task.stage = Stage.DONE.value
            task.completed_at = now
            self._log(run, LogLevel.SUCCESS, "Pipeline complete")
            await self.db.commit()

            logger.info("pipeline_complete", task_id=task.id)
            return TransitionResult(task=task, run=run, completed=True)

        next_run = await self._start_step(task, following)
        return TransitionResult(task=task, run=run, next_run=next_run)

    async def fail(
        self,
        task_id: int,
        error: Optional[str] = None,
        callback_token: Optional[str] = None,
    ) -> TransitionResult:
        """
        Worker reports failure for the task's current stage.

        Restarts the same stage with the error attached while retries are
        left, otherwise fails the task.
        """
        task = await self._get_task(task_id, lock=True)
        run = await self._claim_current_run(task, callback_token)

        self._finish_run(run, RunStatus.FAILED, error=error)
        self._log(run, LogLevel.ERROR, f"Step failed: {error or 'no error reported'}")
        await self.db.flush()

        logger.warning("pipeline_step_failed", task_id=task.id, stage=run.stage, run_id=run.id)

        if task.status == TaskStatus.ARCHIVED:
            await self.db.commit()
            return TransitionResult(task=task, run=run)

        if task.retry_count < task.max_retries:
            task.retry_count += 1
            task.status = TaskStatus.RUNNING.value
            self._log(
                run,
                LogLevel.WARN,
                f"Retrying {run.stage} (attempt {task.retry_count}/{task.max_retries})",
            )
            next_run = await self._start_step(
                task,
                task.stage,
                error_context=error or "The previous attempt failed without reporting an error.",
            )
            return TransitionResult(task=task, run=run, next_run=next_run, retried=True)

        task.status = TaskStatus.FAILED.value
        task.completed_at = utcnow()
        self._log(run, LogLevel.ERROR, f"Retries exhausted ({task.max_retries}); task failed")
        await self.db.commit()

        logger.error("pipeline_task_failed", task_id=task.id, stage=task.stage)
        return TransitionResult(task=task, run=run)

    async def _claim_current_run(
        self,
        task: Task,
        callback_token: Optional[str],
    ) -> PipelineRun:
        """Locate the outstanding run for the task's stage or reject the callback."""
        run = await self._latest_run(task.id, task.stage)
        if run is None:
            raise RunNotFoundError(task.id, task.stage)
        if run.status != RunStatus.RUNNING:
            raise StaleCallbackError(task.id, task.stage, f"run {run.id} is already {run.status}")
        if callback_token is not None and not hmac.compare_digest(
            run.callback_token.encode(), callback_token.encode()
        ):
            raise StaleCallbackError(
                task.id, task.stage, "callback token does not belong to the outstanding run"
            )
        return run

    # ======================================================================
    # Step Execution
    # ======================================================================

    async def _start_step(
        self,
        task: Task,
        stage: Any,
        error_context: Optional[str] = None,
    ) -> PipelineRun:
        """
        Start one stage of a task.

        The new run and the task update are committed together before the
        worker is dispatched, so a failed dispatch leaves a running run with
        no session handle behind.
        """
        stage = stage_value(stage)
        # Read before the flush; a rollback expires every loaded attribute
        task_id = task.id

        outstanding = await self._running_run(task_id)
        if outstanding is not None:
            raise RunConflictError(task.id, outstanding.id)

        project = await self.get_project(task.project_id)
        previous_output = await self._previous_output(task.id, stage)

        now = utcnow()
        run = PipelineRun(
            task_id=task.id,
            stage=stage,
            status=RunStatus.RUNNING.value,
            callback_token=secrets.token_urlsafe(24),
            started_at=now,
        )
        self.db.add(run)
        try:
            await self.db.flush()
        except IntegrityError as e:
            # Another request inserted a running run first
            await self.db.rollback()
            raise RunConflictError(task_id) from e

        callbacks = CallbackUrls.for_task(
            self.settings.HIVE_CALLBACK_BASE_URL,
            task.id,
            run.callback_token,
            api_prefix=self.settings.API_V1_PREFIX,
        )
        run.prompt = build_prompt(
            task,
            project,
            stage,
            previous_output=previous_output,
            error_context=error_context,
            callbacks=callbacks,
        )

        task.status = TaskStatus.RUNNING.value
        task.stage = stage
        if task.started_at is None:
            task.started_at = now

        self._log(run, LogLevel.INFO, f"Step started: {stage}")
        await self.db.commit()

        logger.info("pipeline_step_started", task_id=task.id, stage=stage, run_id=run.id)

        await self._dispatch(task, project, run)
        return run

    async def _dispatch(self, task: Task, project: Project, run: PipelineRun) -> None:
        if self.dispatcher is None:
            error = DispatchError("No agent dispatcher configured", run_id=run.id)
            await self._record_dispatch_failure(task, run, error)
            raise error

        try:
            handle = await self.dispatcher.start(
                run.prompt,
                model=self.settings.model_for_stage(run.stage),
                label=f"hive-task-{task.id}-{run.stage}-run-{run.id}",
                workdir=project.repo_path,
            )
        except DispatchError as e:
            e.run_id = run.id
            await self._record_dispatch_failure(task, run, e)
            raise
        except Exception as e:
            # Anything a backend raises counts as a failed dispatch
            error = DispatchError(f"Agent dispatcher error: {e!r}", run_id=run.id)
            await self._record_dispatch_failure(task, run, error)
            raise error from e

        run.agent_session_key = handle.session_key
        self._log(run, LogLevel.INFO, f"Agent dispatched: {handle.session_key}")
        await self.db.commit()

    async def _record_dispatch_failure(self, task: Task, run: PipelineRun, error: DispatchError) -> None:
        self._log(run, LogLevel.ERROR, f"Agent dispatch failed: {error}")
        await self.db.commit()
        logger.error(
            "pipeline_dispatch_failed",
            task_id=task.id,
            stage=run.stage,
            run_id=run.id,
            error=str(error),
        )

    # ======================================================================
    # Helpers
    # ======================================================================

    async def _get_task(self, task_id: int, lock: bool = False) -> Task:
        query = select(Task).where(Task.id == task_id)
        if lock:
            query = query.with_for_update()
        task = (await self.db.execute(query)).scalar_one_or_none()
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def _latest_run(self, task_id: int, stage: str) -> Optional[PipelineRun]:
        result = await self.db.execute(
            select(PipelineRun)
            .where(PipelineRun.task_id == task_id, PipelineRun.stage == stage_value(stage))
            .order_by(PipelineRun.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _running_run(self, task_id: int) -> Optional[PipelineRun]:
        result = await self.db.execute(
            select(PipelineRun)
            .where(
                PipelineRun.task_id == task_id,
                PipelineRun.status == RunStatus.RUNNING.value,
            )
            .order_by(PipelineRun.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _previous_output(self, task_id: int, stage: str) -> Optional[str]:
        """Output of the latest passed run of the stage before ``stage``."""
        values = [s.value for s in PIPELINE_STAGES]
        if stage not in values or values.index(stage) == 0:
            return None
        prior = values[values.index(stage) - 1]
        result = await self.db.execute(
            select(PipelineRun.output)
            .where(
                PipelineRun.task_id == task_id,
                PipelineRun.stage == prior,
                PipelineRun.status == RunStatus.PASSED.value,
            )
            .order_by(PipelineRun.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    def _finish_run(
        self,
        run: PipelineRun,
        status: RunStatus,
        output: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        now = utcnow()
        run.status = status.value
        run.completed_at = now
        if run.started_at is not None:
            delta = now - as_utc(run.started_at)
            run.duration_ms = max(0, int(delta.total_seconds() * 1000))
        if output is not None:
            run.output = output
        if error is not None:
            run.error = error

    def _log(self, run: PipelineRun, level: LogLevel, message: str) -> None:
        """Append a step log line; it commits with the surrounding transition."""
        self.db.add(StepLog(run_id=run.id, level=level.value, message=message, timestamp=utcnow()))
