"""
Hive - Projects API
===================

Project CRUD. A project cannot be deleted while it still has tasks.
"""

from fastapi import APIRouter, status

from hive.api.deps import CurrentAdmin, Orchestrator, http_error
from hive.core.pipeline.errors import HiveError
from hive.core.schemas import (
    MessageResponse,
    ProjectCreate,
    ProjectResponse,
    ProjectUpdate,
)

router = APIRouter(prefix="/hive/projects", tags=["Projects"])


@router.get("", response_model=list[ProjectResponse], summary="List projects")
async def list_projects(
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> list[ProjectResponse]:
    projects = await orchestrator.list_projects()
    return [ProjectResponse.model_validate(p) for p in projects]


@router.post(
    "",
    response_model=ProjectResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a project",
)
async def create_project(
    data: ProjectCreate,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> ProjectResponse:
    try:
        project = await orchestrator.create_project(
            name=data.name,
            description=data.description,
            repo_path=data.repo_path,
        )
    except HiveError as e:
        raise http_error(e) from e
    return ProjectResponse.model_validate(project)


@router.get("/{project_id}", response_model=ProjectResponse, summary="Get a project")
async def get_project(
    project_id: int,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> ProjectResponse:
    try:
        project = await orchestrator.get_project(project_id)
    except HiveError as e:
        raise http_error(e) from e
    return ProjectResponse.model_validate(project)


@router.patch("/{project_id}", response_model=ProjectResponse, summary="Update a project")
async def update_project(
    project_id: int,
    data: ProjectUpdate,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> ProjectResponse:
    try:
        project = await orchestrator.update_project(
            project_id, **data.model_dump(exclude_unset=True)
        )
    except HiveError as e:
        raise http_error(e) from e
    return ProjectResponse.model_validate(project)


@router.delete("/{project_id}", response_model=MessageResponse, summary="Delete a project")
async def delete_project(
    project_id: int,
    admin: CurrentAdmin,
    orchestrator: Orchestrator,
) -> MessageResponse:
    """Refused with 409 while the project has tasks."""
    try:
        await orchestrator.delete_project(project_id)
    except HiveError as e:
        raise http_error(e) from e
    return MessageResponse(message=f"Project {project_id} deleted")
