from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, status

from ...domain.models import Project, ProjectCreate
from ...infrastructure.repository import ProjectRepository, get_repo
from ...security.auth import User
from ...security.rbac import Permission, require_permission

router = APIRouter(prefix="/projects", tags=["projects"])


def get_owned_project(
    project_id: str,
    user: User = Depends(require_permission(Permission.ARTIFACT_READ)),
    repo: ProjectRepository = Depends(get_repo),
) -> Project:
    """Resolve ``project_id`` for its owner; anyone else gets the same 404."""
    project = repo.get(project_id)
    if project is None or project.owner_id != user.id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Project not found")
    return project


@router.get("", response_model=List[Project])
def list_projects(
    user: User = Depends(require_permission(Permission.ARTIFACT_READ)),
    repo: ProjectRepository = Depends(get_repo),
) -> List[Project]:
    return repo.list(owner_id=user.id)


@router.post("", response_model=Project, status_code=status.HTTP_201_CREATED)
def create_project(
    payload: ProjectCreate,
    user: User = Depends(require_permission(Permission.ARTIFACT_WRITE)),
    repo: ProjectRepository = Depends(get_repo),
) -> Project:
    return repo.create(payload, owner_id=user.id)


@router.get("/{project_id}", response_model=Project)
def get_project(project: Project = Depends(get_owned_project)) -> Project:
    return project


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_project(
    project: Project = Depends(get_owned_project),
    user: User = Depends(require_permission(Permission.ARTIFACT_WRITE)),
    repo: ProjectRepository = Depends(get_repo),
) -> None:
    repo.delete(project.project_id)
