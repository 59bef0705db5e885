from __future__ import annotations

"""Structured response envelope the model is instructed to emit every turn."""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from ..config import MIN_ARTIFACT_CONTENT_LENGTH
from .artifact_models import ArtifactType


class EnvelopeArtifact(BaseModel):
    type: ArtifactType
    title: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=MIN_ARTIFACT_CONTENT_LENGTH)
    status: Literal["draft", "ready_for_review"] = "draft"


class EnvelopeState(BaseModel):
    mode: Literal["STANDARD", "QUICK"]
    pipeline_stage: str
    threshold_percent: Optional[float] = Field(default=None, ge=0, le=100)


class Envelope(BaseModel):
    message: str = Field(min_length=1)
    artifact: Optional[EnvelopeArtifact] = None
    state: Optional[EnvelopeState] = None
    next_actions: Optional[List[str]] = None
