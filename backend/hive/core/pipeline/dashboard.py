"""
Dashboard Projection - board read model.

Groups the live tasks by board column and attaches the latest run of each.
Purely derived from the store; nothing here writes.
"""

from collections import defaultdict
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from hive.core.config import settings
from hive.core.models import PipelineRun, Project, Task, TaskStatus, as_utc
from hive.core.pipeline.stages import BOARD_STAGES, stage_value
from hive.core.schemas import (
    ArchivedTask,
    DashboardCounts,
    DashboardProject,
    DashboardResponse,
    DashboardTask,
    LatestRun,
)


async def _latest_runs(db: AsyncSession, task_ids: List[int]) -> Dict[int, PipelineRun]:
    if not task_ids:
        return {}
    latest_ids = (
        select(func.max(PipelineRun.id))
        .where(PipelineRun.task_id.in_(task_ids))
        .group_by(PipelineRun.task_id)
    )
    result = await db.execute(select(PipelineRun).where(PipelineRun.id.in_(latest_ids)))
    return {run.task_id: run for run in result.scalars().all()}


async def build_dashboard(
    db: AsyncSession,
    project_id: Optional[int] = None,
    archive_limit: Optional[int] = None,
) -> DashboardResponse:
    """
    Build the board.

    Args:
        db: Database session
        project_id: Restrict the board to one project
        archive_limit: Max archived tasks returned, most recently updated first

    Returns:
        DashboardResponse with one list per board column
    """
    if archive_limit is None:
        archive_limit = settings.HIVE_ARCHIVE_LIMIT

    projects = (await db.execute(select(Project).order_by(Project.name))).scalars().all()
    project_names = {p.id: p.name for p in projects}

    task_query = select(Task).order_by(Task.id)
    if project_id is not None:
        task_query = task_query.where(Task.project_id == project_id)
    tasks = (await db.execute(task_query)).scalars().all()
    titles = {t.id: t.title for t in tasks}

    live = [t for t in tasks if t.status != TaskStatus.ARCHIVED]
    archived = sorted(
        (t for t in tasks if t.status == TaskStatus.ARCHIVED),
        key=lambda t: (as_utc(t.updated_at), t.id),
        reverse=True,
    )[:archive_limit]

    subtask_total: Dict[int, int] = defaultdict(int)
    subtask_done: Dict[int, int] = defaultdict(int)
    for task in live:
        if task.parent_id is not None:
            subtask_total[task.parent_id] += 1
            if task.status == TaskStatus.DONE:
                subtask_done[task.parent_id] += 1

    runs = await _latest_runs(db, [t.id for t in live])

    columns = [s.value for s in BOARD_STAGES]
    stages: Dict[str, List[DashboardTask]] = {column: [] for column in columns}
    for task in live:
        column = stage_value(task.stage)
        if column not in stages:
            column = columns[0]
        run = runs.get(task.id)
        stages[column].append(
            DashboardTask(
                id=task.id,
                project_id=task.project_id,
                project_name=project_names.get(task.project_id),
                title=task.title,
                status=task.status,
                stage=task.stage,
                priority=task.priority,
                greenlit=task.greenlit,
                auto_run=task.auto_run,
                retry_count=task.retry_count,
                max_retries=task.max_retries,
                parent_id=task.parent_id,
                parent_title=titles.get(task.parent_id) if task.parent_id else None,
                subtask_count=subtask_total[task.id],
                subtask_completed_count=subtask_done[task.id],
                latest_run=LatestRun.model_validate(run) if run else None,
                updated_at=task.updated_at,
            )
        )

    # Iterations may point at tasks outside the filtered set
    missing = {t.linked_from_id for t in archived if t.linked_from_id and t.linked_from_id not in titles}
    if missing:
        result = await db.execute(select(Task.id, Task.title).where(Task.id.in_(missing)))
        titles.update({row.id: row.title for row in result})

    by_status: Dict[str, int] = defaultdict(int)
    per_project: Dict[int, int] = defaultdict(int)
    for task in tasks:
        by_status[task.status] += 1
        per_project[task.project_id] += 1

    return DashboardResponse(
        stages=stages,
        archived=[
            ArchivedTask(
                id=t.id,
                project_id=t.project_id,
                project_name=project_names.get(t.project_id),
                title=t.title,
                linked_from_id=t.linked_from_id,
                linked_from_title=titles.get(t.linked_from_id) if t.linked_from_id else None,
                completed_at=t.completed_at,
                updated_at=t.updated_at,
            )
            for t in archived
        ],
        counts=DashboardCounts(total=len(tasks), by_status=dict(by_status)),
        projects=[
            DashboardProject(id=p.id, name=p.name, task_count=per_project[p.id])
            for p in projects
        ],
    )
