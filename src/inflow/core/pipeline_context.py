from __future__ import annotations

"""Pipeline state block appended to the system prompt.

The block is recomputed from stored artifacts on every turn; conversation
history is never consulted for what comes next.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..domain.artifact_models import Artifact, ArtifactType
from .state_machine import ARTIFACT_SEQUENCE, last_approved_stage, next_required_stage

_logger = logging.getLogger("inflow.pipeline")

PREVIEW_LENGTH = 200


@dataclass
class StageSummary:
    stage: ArtifactType
    status: str
    updated_at: str = ""
    preview: str = ""


@dataclass
class PipelineContext:
    last_approved: Optional[ArtifactType] = None
    next_required: Optional[ArtifactType] = ARTIFACT_SEQUENCE[0]
    existing: List[StageSummary] = field(default_factory=list)
    missing: List[ArtifactType] = field(default_factory=list)

    @property
    def statuses(self) -> Dict[ArtifactType, str]:
        return {s.stage: s.status for s in self.existing}


def _preview(content: str) -> str:
    return content[:PREVIEW_LENGTH].replace("\n", " ").strip()


def build_pipeline_context(artifacts: Iterable[Artifact]) -> PipelineContext:
    by_type: Dict[ArtifactType, StageSummary] = {}
    for art in artifacts:
        by_type[art.artifact_type] = StageSummary(
            stage=art.artifact_type,
            status=art.status or "draft",
            updated_at=art.updated_at.isoformat() if art.updated_at else "",
            preview=_preview(art.content or ""),
        )

    statuses = {stage: summary.status for stage, summary in by_type.items()}
    return PipelineContext(
        last_approved=last_approved_stage(statuses),
        next_required=next_required_stage(statuses),
        existing=[by_type[s] for s in ARTIFACT_SEQUENCE if s in by_type],
        missing=[s for s in ARTIFACT_SEQUENCE if s not in by_type],
    )


def render_pipeline_context(ctx: PipelineContext) -> str:
    last = ctx.last_approved.value if ctx.last_approved else "none (no approvals yet)"
    nxt = ctx.next_required.value if ctx.next_required else "none (pipeline complete)"
    existing = ", ".join(f"{s.stage.value} ({s.status})" for s in ctx.existing) or "none"
    missing = ", ".join(s.value for s in ctx.missing) or "all complete"
    previews = "\n".join(f'- {s.stage.value} [{s.status}]: "{s.preview}..."' for s in ctx.existing)

    return f"""

## PROJECT PIPELINE CONTEXT (SYSTEM - READ CAREFULLY)
This is the ACTUAL state of deliverables in the database. Your conversation history may be incomplete.

### Current Pipeline State:
- **Last approved stage:** {last}
- **Next stage to generate on APPROVE:** {nxt}
- **Existing deliverables:** {existing}
- **Missing deliverables:** {missing}

### Existing Artifact Previews:
{previews or "No artifacts generated yet."}

### CRITICAL INSTRUCTIONS:
1. If user says "APPROVE" → Generate "{nxt}" IMMEDIATELY in your response
2. If user asks to regenerate a specific deliverable → Generate that deliverable
3. If user asks about missing deliverables → Acknowledge what's missing and offer to generate
4. If user seems confused about state → Explain what exists vs what's missing
5. NEVER say "I'll now generate..." without including the artifact in THIS response

### Understanding User Intent:
- "regenerate X" or "redo X" → Generate artifact type X with new content
- "where is X" or "I don't see X" → X is in the missing list above, offer to generate
- "approve" → Generate {nxt}
"""


def load_pipeline_context(artifact_store: Any, project_id: str, request_id: Optional[str] = None) -> str:
    """Read the project's artifacts and render the block; empty string on failure."""
    try:
        artifacts = artifact_store.list_artifacts(project_id)
        return render_pipeline_context(build_pipeline_context(artifacts))
    except Exception as exc:
        _logger.warning(
            "pipeline_context_failed",
            extra={"request_id": request_id, "project_id": project_id, "error": str(exc)},
        )
        return ""
