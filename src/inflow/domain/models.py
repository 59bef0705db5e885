from __future__ import annotations

from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field

from .artifact_models import PipelineState


class ProjectCreate(BaseModel):
    name: str
    description: Optional[str] = Field(default=None, description="Short project summary")


class Project(BaseModel):
    project_id: str
    owner_id: str
    name: str
    description: Optional[str] = None
    pipeline_state: PipelineState = Field(default_factory=PipelineState)
    created_at: datetime
    updated_at: Optional[datetime] = None
