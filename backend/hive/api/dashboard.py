"""
Hive - Dashboard API
====================

Board read model: tasks per column with their latest run.
"""

from typing import Optional

from fastapi import APIRouter, Query

from hive.api.deps import CurrentAdmin, DbSession
from hive.core.config import settings
from hive.core.pipeline.dashboard import build_dashboard
from hive.core.schemas import DashboardResponse

router = APIRouter(prefix="/hive", tags=["Dashboard"])


@router.get("/dashboard", response_model=DashboardResponse, summary="Pipeline board")
async def get_dashboard(
    admin: CurrentAdmin,
    db: DbSession,
    project_id: Optional[int] = Query(None, description="Only this project's tasks"),
    archive_limit: int = Query(settings.HIVE_ARCHIVE_LIMIT, ge=0, le=500),
) -> DashboardResponse:
    """
    Get the board.

    Returns, per column (plan, implement, verify, test, deploy, done), the
    non-archived tasks with their latest run, the most recently archived
    tasks, counts per status and the project list.
    """
    return await build_dashboard(db, project_id=project_id, archive_limit=archive_limit)
