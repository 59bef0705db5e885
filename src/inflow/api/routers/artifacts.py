from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends

from ...domain.artifact_models import (
    Artifact,
    ArtifactEditRequest,
    ArtifactRestoreRequest,
    ArtifactType,
    ArtifactVersion,
    PipelineStatusResponse,
)
from ...domain.models import Project
from ...security.auth import User
from ...security.rbac import Permission, require_permission
from ...services.pipeline_service import ArtifactPipeline, get_pipeline
from .projects import get_owned_project

router = APIRouter(prefix="/projects/{project_id}", tags=["artifacts"])


@router.get("/pipeline", response_model=PipelineStatusResponse)
def pipeline_status(
    project: Project = Depends(get_owned_project),
    pipeline: ArtifactPipeline = Depends(get_pipeline),
) -> PipelineStatusResponse:
    return pipeline.status(project.project_id)


@router.get("/artifacts", response_model=List[Artifact])
def list_artifacts(
    project: Project = Depends(get_owned_project),
    pipeline: ArtifactPipeline = Depends(get_pipeline),
) -> List[Artifact]:
    return pipeline.list_artifacts(project.project_id)


@router.post("/artifacts/{artifact_type}/approve", response_model=Artifact)
def approve_artifact(
    artifact_type: ArtifactType,
    project: Project = Depends(get_owned_project),
    user: User = Depends(require_permission(Permission.ARTIFACT_APPROVE)),
    pipeline: ArtifactPipeline = Depends(get_pipeline),
) -> Artifact:
    return pipeline.approve(project.project_id, artifact_type, approved_by=user.id)


@router.put("/artifacts/{artifact_type}", response_model=Artifact)
def edit_artifact(
    artifact_type: ArtifactType,
    payload: ArtifactEditRequest,
    project: Project = Depends(get_owned_project),
    user: User = Depends(require_permission(Permission.ARTIFACT_WRITE)),
    pipeline: ArtifactPipeline = Depends(get_pipeline),
) -> Artifact:
    return pipeline.edit(project.project_id, artifact_type, payload.content, payload.title)


@router.get("/artifacts/{artifact_type}/versions", response_model=List[ArtifactVersion])
def list_versions(
    artifact_type: ArtifactType,
    project: Project = Depends(get_owned_project),
    pipeline: ArtifactPipeline = Depends(get_pipeline),
) -> List[ArtifactVersion]:
    return pipeline.list_versions(project.project_id, artifact_type)


@router.post("/artifacts/{artifact_type}/restore", response_model=Artifact)
def restore_version(
    artifact_type: ArtifactType,
    payload: ArtifactRestoreRequest,
    project: Project = Depends(get_owned_project),
    user: User = Depends(require_permission(Permission.ARTIFACT_WRITE)),
    pipeline: ArtifactPipeline = Depends(get_pipeline),
) -> Artifact:
    return pipeline.restore_version(project.project_id, artifact_type, payload.version)
