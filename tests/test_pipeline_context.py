from datetime import UTC, datetime

from src.inflow.core.pipeline_context import (
    build_pipeline_context,
    load_pipeline_context,
    render_pipeline_context,
)
from src.inflow.domain.artifact_models import Artifact, ArtifactType


def _artifact(stage: ArtifactType, status: str, content: str = "Body") -> Artifact:
    now = datetime(2025, 1, 1, tzinfo=UTC)
    return Artifact(
        id=f"a-{stage.value}",
        project_id="p1",
        artifact_type=stage,
        content=content,
        status=status,
        created_at=now,
        updated_at=now,
    )


def test_empty_project_context():
    ctx = build_pipeline_context([])
    assert ctx.last_approved is None
    assert ctx.next_required is ArtifactType.PHASE_1_CONTRACT
    assert len(ctx.missing) == 9
    text = render_pipeline_context(ctx)
    assert "PROJECT PIPELINE CONTEXT" in text
    assert "none (no approvals yet)" in text
    assert "No artifacts generated yet." in text


def test_context_lists_existing_and_missing_in_order():
    ctx = build_pipeline_context(
        [
            _artifact(ArtifactType.DISCOVERY_REPORT, "draft", "line one\nline two"),
            _artifact(ArtifactType.PHASE_1_CONTRACT, "approved"),
        ]
    )
    assert [s.stage for s in ctx.existing] == [ArtifactType.PHASE_1_CONTRACT, ArtifactType.DISCOVERY_REPORT]
    assert ctx.next_required is ArtifactType.DISCOVERY_REPORT
    assert ctx.existing[1].preview == "line one line two"
    text = render_pipeline_context(ctx)
    assert "**Last approved stage:** phase_1_contract" in text
    assert 'Generate "discovery_report" IMMEDIATELY' in text
    assert "learner_persona" in text.split("**Missing deliverables:**")[1]


def test_preview_is_truncated():
    ctx = build_pipeline_context([_artifact(ArtifactType.PHASE_1_CONTRACT, "draft", "x" * 500)])
    assert len(ctx.existing[0].preview) == 200


def test_complete_pipeline_renders_none():
    ctx = build_pipeline_context([_artifact(stage, "approved") for stage in ArtifactType])
    text = render_pipeline_context(ctx)
    assert "none (pipeline complete)" in text
    assert "all complete" in text


def test_load_swallows_store_failures():
    class BrokenStore:
        def list_artifacts(self, project_id):
            raise RuntimeError("db down")

    assert load_pipeline_context(BrokenStore(), "p1", "req_1") == ""
