from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class ArtifactType(str, Enum):
    """The nine deliverables, declared in pipeline order."""

    PHASE_1_CONTRACT = "phase_1_contract"
    DISCOVERY_REPORT = "discovery_report"
    LEARNER_PERSONA = "learner_persona"
    DESIGN_STRATEGY = "design_strategy"
    DESIGN_BLUEPRINT = "design_blueprint"
    SCENARIO_BANK = "scenario_bank"
    ASSESSMENT_KIT = "assessment_kit"
    FINAL_AUDIT = "final_audit"
    PERFORMANCE_RECOMMENDATION_REPORT = "performance_recommendation_report"


ArtifactStatus = Literal["draft", "approved", "stale"]
PipelineMode = Literal["standard", "quick"]


class Artifact(BaseModel):
    id: str
    project_id: str
    artifact_type: ArtifactType
    title: Optional[str] = None
    content: str
    status: ArtifactStatus = "draft"
    version: int = Field(default=1, ge=1)
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    stale_reason: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ArtifactVersion(BaseModel):
    artifact_id: str
    artifact_type: ArtifactType
    content: str
    version: int
    created_at: datetime


class PipelineState(BaseModel):
    mode: PipelineMode = "standard"
    pipeline_stage: Optional[str] = None


class ArtifactEditRequest(BaseModel):
    content: str = Field(min_length=1)
    title: Optional[str] = None


class ArtifactRestoreRequest(BaseModel):
    version: int = Field(ge=1)


class PipelineStatusResponse(BaseModel):
    project_id: str
    last_approved: Optional[ArtifactType] = None
    next_required: Optional[ArtifactType] = None
    complete: bool = False
    stages: Dict[str, Optional[ArtifactStatus]]
    missing: List[ArtifactType]
    state: Optional[PipelineState] = None
