from __future__ import annotations

"""Ordering rules for the nine-stage artifact pipeline.

Pure functions over a ``{ArtifactType: status}`` mapping; persistence lives in
``services.pipeline_service``.
"""

from typing import List, Mapping, Optional, Union

from ..domain.artifact_models import ArtifactType

ARTIFACT_SEQUENCE: List[ArtifactType] = list(ArtifactType)

StatusMap = Mapping[ArtifactType, Optional[str]]


class StageGatingError(Exception):
    """A stage was generated or approved before its predecessors were approved."""

    def __init__(self, stage: ArtifactType, next_required: Optional[ArtifactType], action: str = "generate"):
        self.stage = stage
        self.next_required = next_required
        self.action = action
        expected = next_required.value if next_required else "none"
        super().__init__(f"Cannot {action} {stage.value} before {expected} is approved")


def coerce_stage(value: Union[str, ArtifactType]) -> ArtifactType:
    """Return the ArtifactType for ``value``; raises ValueError when unknown."""
    if isinstance(value, ArtifactType):
        return value
    return ArtifactType(value)


def stage_index(stage: Union[str, ArtifactType]) -> int:
    return ARTIFACT_SEQUENCE.index(coerce_stage(stage))


def last_approved_stage(statuses: StatusMap) -> Optional[ArtifactType]:
    last: Optional[ArtifactType] = None
    for stage in ARTIFACT_SEQUENCE:
        if statuses.get(stage) == "approved":
            last = stage
    return last


def next_required_stage(statuses: StatusMap) -> Optional[ArtifactType]:
    """First stage after the last approved one that is absent or not approved.

    Returns None once every stage is approved.
    """
    last = last_approved_stage(statuses)
    start = 0 if last is None else stage_index(last) + 1
    for stage in ARTIFACT_SEQUENCE[start:]:
        if statuses.get(stage) != "approved":
            return stage
    return None


def is_complete(statuses: StatusMap) -> bool:
    return all(statuses.get(stage) == "approved" for stage in ARTIFACT_SEQUENCE)


def can_generate(stage: Union[str, ArtifactType], statuses: StatusMap) -> bool:
    """Stages at or before the next-required one may be (re)generated."""
    target = coerce_stage(stage)
    required = next_required_stage(statuses)
    if required is None:
        return True
    return stage_index(target) <= stage_index(required)


def can_approve(stage: Union[str, ArtifactType], statuses: StatusMap) -> bool:
    target = coerce_stage(stage)
    if statuses.get(target) is None:
        return False
    return all(statuses.get(prev) == "approved" for prev in ARTIFACT_SEQUENCE[: stage_index(target)])


def downstream_stages(stage: Union[str, ArtifactType]) -> List[ArtifactType]:
    return ARTIFACT_SEQUENCE[stage_index(stage) + 1 :]
