from __future__ import annotations

"""Persisted transitions of the artifact pipeline.

Every content change snapshots the outgoing content into an ArtifactVersion
first. When a change lands on an artifact that was approved, each approved
artifact downstream of it is marked stale.
"""

import functools
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Callable, Dict, List, Literal, Optional, TypeVar, Union

from ..core.state_machine import (
    ARTIFACT_SEQUENCE,
    StageGatingError,
    can_approve,
    can_generate,
    coerce_stage,
    downstream_stages,
    is_complete,
    last_approved_stage,
    next_required_stage,
)
from ..domain.artifact_models import (
    Artifact,
    ArtifactType,
    ArtifactVersion,
    PipelineState,
    PipelineStatusResponse,
)
from ..infrastructure.artifact_store import ArtifactNotFoundError, ArtifactStore, get_artifact_store, new_artifact
from ..infrastructure.events import publish_event
from ..infrastructure.repository import ProjectRepository, get_repo
from .telemetry_sink import TelemetryEvent, record_event

_logger = logging.getLogger("inflow.pipeline")

StageRef = Union[str, ArtifactType]
GenerationAction = Literal["created", "updated", "unchanged"]


@dataclass
class GenerationResult:
    artifact: Artifact
    action: GenerationAction


def _utc_now() -> datetime:
    return datetime.now(UTC)


# Transitions read, snapshot and write back; callers on worker threads must not interleave
_transition_lock = RLock()

_F = TypeVar("_F", bound=Callable[..., Any])


def _serialized(method: _F) -> _F:
    @functools.wraps(method)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        with _transition_lock:
            return method(*args, **kwargs)

    return wrapper  # type: ignore[return-value]


class ArtifactPipeline:
    def __init__(
        self,
        store: Optional[ArtifactStore] = None,
        repo: Optional[ProjectRepository] = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._repo = repo
        self._clock = clock

    @property
    def store(self) -> ArtifactStore:
        return self._store or get_artifact_store()

    @property
    def repo(self) -> ProjectRepository:
        return self._repo or get_repo()

    # --- queries ---

    def list_artifacts(self, project_id: str) -> List[Artifact]:
        order = {stage: i for i, stage in enumerate(ARTIFACT_SEQUENCE)}
        return sorted(self.store.list_artifacts(project_id), key=lambda a: order[a.artifact_type])

    def statuses(self, project_id: str) -> Dict[ArtifactType, str]:
        return {a.artifact_type: a.status for a in self.store.list_artifacts(project_id)}

    def next_required(self, project_id: str) -> Optional[ArtifactType]:
        return next_required_stage(self.statuses(project_id))

    def is_complete(self, project_id: str) -> bool:
        return is_complete(self.statuses(project_id))

    def status(self, project_id: str) -> PipelineStatusResponse:
        statuses = self.statuses(project_id)
        project = self.repo.get(project_id)
        return PipelineStatusResponse(
            project_id=project_id,
            last_approved=last_approved_stage(statuses),
            next_required=next_required_stage(statuses),
            complete=is_complete(statuses),
            stages={stage.value: statuses.get(stage) for stage in ARTIFACT_SEQUENCE},
            missing=[stage for stage in ARTIFACT_SEQUENCE if stage not in statuses],
            state=project.pipeline_state if project else None,
        )

    def _require(self, project_id: str, stage: ArtifactType) -> Artifact:
        existing = self.store.get_artifact(project_id, stage)
        if existing is None:
            raise ArtifactNotFoundError(project_id, stage)
        return existing

    def list_versions(self, project_id: str, stage: StageRef) -> List[ArtifactVersion]:
        existing = self._require(project_id, coerce_stage(stage))
        return self.store.list_versions(existing.id)

    # --- transitions ---

    @_serialized
    def generate(self, project_id: str, stage: StageRef, content: str, title: Optional[str] = None) -> GenerationResult:
        """Create or regenerate the artifact for ``stage``.

        Stages after the next-required one are refused with StageGatingError
        and nothing is written. Regenerating with identical content is a no-op.
        """
        target = coerce_stage(stage)
        statuses = self.statuses(project_id)
        if not can_generate(target, statuses):
            raise StageGatingError(target, next_required_stage(statuses))

        existing = self.store.get_artifact(project_id, target)
        if existing is None:
            created = self.store.upsert_artifact(new_artifact(project_id, target, content, title))
            self._announce(created, "created")
            return GenerationResult(created, "created")
        if existing.content == content:
            _logger.debug("artifact_unchanged", extra={"project_id": project_id, "artifact_type": target.value})
            return GenerationResult(existing, "unchanged")
        updated = self._replace_content(existing, content, title, "regenerated")
        return GenerationResult(updated, "updated")

    @_serialized
    def approve(self, project_id: str, stage: StageRef, approved_by: str) -> Artifact:
        target = coerce_stage(stage)
        existing = self._require(project_id, target)
        if existing.status == "approved":
            return existing
        statuses = self.statuses(project_id)
        if not can_approve(target, statuses):
            raise StageGatingError(target, next_required_stage(statuses), action="approve")

        now = self._clock()
        approved = existing.model_copy(
            update={
                "status": "approved",
                "approved_at": now,
                "approved_by": approved_by,
                "stale_reason": None,
                "updated_at": now,
            }
        )
        approved = self.store.upsert_artifact(approved)
        self._announce(approved, "approved", actor=approved_by)
        return approved

    @_serialized
    def edit(self, project_id: str, stage: StageRef, content: str, title: Optional[str] = None) -> Artifact:
        existing = self._require(project_id, coerce_stage(stage))
        return self._replace_content(existing, content, title, "edited")

    @_serialized
    def restore_version(self, project_id: str, stage: StageRef, version: int) -> Artifact:
        target = coerce_stage(stage)
        existing = self._require(project_id, target)
        snapshot = self.store.get_version(existing.id, version)
        if snapshot is None:
            raise ArtifactNotFoundError(project_id, target, version)

        already_snapshotted = any(
            v.version == existing.version and v.content == existing.content for v in self.store.list_versions(existing.id)
        )
        return self._replace_content(
            existing, snapshot.content, None, f"restored_v{version}", snapshot_current=not already_snapshotted
        )

    @_serialized
    def mark_stale(self, project_id: str, stage: StageRef, reason: str) -> Optional[Artifact]:
        target = coerce_stage(stage)
        existing = self.store.get_artifact(project_id, target)
        if existing is None or existing.status != "approved":
            return None
        stale = existing.model_copy(update={"status": "stale", "stale_reason": reason, "updated_at": self._clock()})
        stale = self.store.upsert_artifact(stale)
        self._announce(stale, "stale")
        return stale

    def update_state_hint(self, project_id: str, mode: str, pipeline_stage: Optional[str]) -> None:
        state = PipelineState(mode="quick" if mode.upper() == "QUICK" else "standard", pipeline_stage=pipeline_stage)
        if self.repo.update_pipeline_state(project_id, state) is None:
            _logger.debug("pipeline_hint_no_project", extra={"project_id": project_id})

    def _replace_content(
        self,
        existing: Artifact,
        content: str,
        title: Optional[str],
        reason: str,
        snapshot_current: bool = True,
    ) -> Artifact:
        now = self._clock()
        if snapshot_current:
            self.store.insert_version(
                ArtifactVersion(
                    artifact_id=existing.id,
                    artifact_type=existing.artifact_type,
                    content=existing.content,
                    version=existing.version,
                    created_at=now,
                )
            )
        updated = existing.model_copy(
            update={
                "content": content,
                "title": title or existing.title,
                "version": existing.version + 1,
                "status": "draft",
                "approved_at": None,
                "approved_by": None,
                "stale_reason": None,
                "updated_at": now,
            }
        )
        updated = self.store.upsert_artifact(updated)
        self._announce(updated, reason)
        if existing.status == "approved":
            self._propagate_staleness(updated)
        return updated

    def _propagate_staleness(self, changed: Artifact) -> None:
        reason = f"Upstream {changed.artifact_type.value} changed (v{changed.version})"
        for stage in downstream_stages(changed.artifact_type):
            if self.mark_stale(changed.project_id, stage, reason) is not None:
                _logger.info(
                    "artifact_marked_stale",
                    extra={"project_id": changed.project_id, "artifact_type": stage.value, "upstream": changed.artifact_type.value},
                )

    def _announce(self, artifact: Artifact, action: str, actor: Optional[str] = None) -> None:
        payload = {
            "project_id": artifact.project_id,
            "artifact_id": artifact.id,
            "artifact_type": artifact.artifact_type.value,
            "status": artifact.status,
            "version": artifact.version,
            "action": action,
        }
        try:
            publish_event("artifact.updated", payload)
        except Exception as exc:
            _logger.warning("artifact_event_failed", extra={"artifact_id": artifact.id, "error": str(exc)})
        record_event(TelemetryEvent(name=f"artifact_{action}", properties=payload, actor=actor))


_pipeline: Optional[ArtifactPipeline] = None


def get_pipeline() -> ArtifactPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = ArtifactPipeline()
    return _pipeline


def reset_pipeline() -> None:
    global _pipeline
    _pipeline = None
