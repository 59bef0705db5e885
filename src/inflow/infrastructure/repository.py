from __future__ import annotations

import uuid
from datetime import UTC, datetime
from threading import RLock
from typing import Dict, List, Optional, Protocol

from ..domain.artifact_models import PipelineState
from ..domain.models import Project, ProjectCreate


class ProjectRepository(Protocol):
    def list(self, owner_id: Optional[str] = None) -> List[Project]: ...
    def get(self, project_id: str) -> Optional[Project]: ...
    def create(self, payload: ProjectCreate, owner_id: str, project_id: Optional[str] = None) -> Project: ...
    def update_pipeline_state(self, project_id: str, state: PipelineState) -> Optional[Project]: ...
    def delete(self, project_id: str) -> bool: ...


class InMemoryProjectRepository:
    """In-memory project registry used for ownership checks and the pipeline hint."""

    def __init__(self) -> None:
        self._projects: Dict[str, Project] = {}
        self._lock = RLock()

    def list(self, owner_id: Optional[str] = None) -> List[Project]:
        with self._lock:
            projects = list(self._projects.values())
        if owner_id is None:
            return projects
        return [p for p in projects if p.owner_id == owner_id]

    def get(self, project_id: str) -> Optional[Project]:
        with self._lock:
            return self._projects.get(project_id)

    def create(self, payload: ProjectCreate, owner_id: str, project_id: Optional[str] = None) -> Project:
        with self._lock:
            pid = project_id or str(uuid.uuid4())
            now = datetime.now(UTC)
            project = Project(
                project_id=pid,
                owner_id=owner_id,
                name=payload.name,
                description=payload.description,
                created_at=now,
                updated_at=now,
            )
            self._projects[pid] = project
            return project

    def update_pipeline_state(self, project_id: str, state: PipelineState) -> Optional[Project]:
        with self._lock:
            proj = self._projects.get(project_id)
            if not proj:
                return None
            proj.pipeline_state = state
            proj.updated_at = datetime.now(UTC)
            return proj

    def delete(self, project_id: str) -> bool:
        with self._lock:
            return self._projects.pop(project_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._projects.clear()


_repo: Optional[ProjectRepository] = None


def get_repo() -> ProjectRepository:
    global _repo
    if _repo is None:
        _repo = InMemoryProjectRepository()
    return _repo


def reset_repo() -> None:
    global _repo
    _repo = None
