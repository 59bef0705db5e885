import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from src.inflow.core.state_machine import StageGatingError
from src.inflow.domain.artifact_models import ArtifactType as T
from src.inflow.domain.models import ProjectCreate
from src.inflow.infrastructure.artifact_store import ArtifactNotFoundError, InMemoryArtifactStore
from src.inflow.infrastructure.repository import InMemoryProjectRepository
from src.inflow.services.pipeline_service import ArtifactPipeline
from src.inflow.services.telemetry_sink import list_recent_events

CONTENT = "Initial contract content for the programme."


@pytest.fixture
def store():
    return InMemoryArtifactStore()


@pytest.fixture
def pipeline(store):
    return ArtifactPipeline(store=store, repo=InMemoryProjectRepository())


def _approve_through(pipeline, stage_count):
    for stage in list(T)[:stage_count]:
        pipeline.generate("p1", stage, f"Content for {stage.value} stage.")
        pipeline.approve("p1", stage, approved_by="u1")


def test_generate_creates_first_stage(pipeline):
    result = pipeline.generate("p1", T.PHASE_1_CONTRACT, CONTENT, "Contract")
    assert result.action == "created"
    assert result.artifact.version == 1
    assert result.artifact.status == "draft"
    assert result.artifact.title == "Contract"
    assert pipeline.next_required("p1") is T.PHASE_1_CONTRACT


def test_generate_beyond_next_required_is_refused(pipeline, store):
    with pytest.raises(StageGatingError) as exc:
        pipeline.generate("p1", T.DISCOVERY_REPORT, CONTENT)
    assert exc.value.next_required is T.PHASE_1_CONTRACT
    assert store.list_artifacts("p1") == []


def test_regenerate_identical_content_is_unchanged(pipeline, store):
    first = pipeline.generate("p1", T.PHASE_1_CONTRACT, CONTENT)
    again = pipeline.generate("p1", T.PHASE_1_CONTRACT, CONTENT)
    assert again.action == "unchanged"
    assert again.artifact.version == 1
    assert store.list_versions(first.artifact.id) == []


def test_approve_unlocks_next_stage(pipeline):
    pipeline.generate("p1", T.PHASE_1_CONTRACT, CONTENT)
    approved = pipeline.approve("p1", "phase_1_contract", approved_by="u1")
    assert approved.status == "approved"
    assert approved.approved_by == "u1"
    assert approved.approved_at is not None
    assert pipeline.next_required("p1") is T.DISCOVERY_REPORT
    result = pipeline.generate("p1", T.DISCOVERY_REPORT, "Discovery findings and analysis.")
    assert result.action == "created"


def test_approve_missing_artifact_raises(pipeline):
    with pytest.raises(ArtifactNotFoundError):
        pipeline.approve("p1", T.PHASE_1_CONTRACT, approved_by="u1")


def test_approve_is_idempotent(pipeline):
    pipeline.generate("p1", T.PHASE_1_CONTRACT, CONTENT)
    first = pipeline.approve("p1", T.PHASE_1_CONTRACT, approved_by="u1")
    second = pipeline.approve("p1", T.PHASE_1_CONTRACT, approved_by="u2")
    assert second.approved_by == "u1"
    assert second.approved_at == first.approved_at


def test_edit_approved_artifact_invalidates_it(pipeline, store):
    pipeline.generate("p1", T.PHASE_1_CONTRACT, CONTENT)
    approved = pipeline.approve("p1", T.PHASE_1_CONTRACT, approved_by="u1")

    edited = pipeline.edit("p1", T.PHASE_1_CONTRACT, "Edited contract content for the programme.")

    assert edited.version == approved.version + 1
    assert edited.status == "draft"
    assert edited.approved_at is None
    assert edited.approved_by is None
    versions = store.list_versions(approved.id)
    assert len(versions) == 1
    assert versions[0].version == approved.version
    assert versions[0].content == CONTENT


def test_regenerating_approved_stage_marks_downstream_stale(pipeline):
    _approve_through(pipeline, 3)
    result = pipeline.generate("p1", T.PHASE_1_CONTRACT, "A different contract for the programme.")
    assert result.action == "updated"

    statuses = pipeline.statuses("p1")
    assert statuses[T.PHASE_1_CONTRACT] == "draft"
    assert statuses[T.DISCOVERY_REPORT] == "stale"
    assert statuses[T.LEARNER_PERSONA] == "stale"
    stale = pipeline.store.get_artifact("p1", T.DISCOVERY_REPORT)
    assert stale.stale_reason == "Upstream phase_1_contract changed (v2)"
    assert pipeline.next_required("p1") is T.PHASE_1_CONTRACT


def test_editing_a_draft_does_not_touch_downstream(pipeline):
    _approve_through(pipeline, 1)
    pipeline.generate("p1", T.DISCOVERY_REPORT, "Discovery findings and analysis.")
    pipeline.edit("p1", T.DISCOVERY_REPORT, "Revised discovery findings.")
    assert pipeline.statuses("p1")[T.PHASE_1_CONTRACT] == "approved"


def test_restore_version_snapshots_current_content(pipeline, store):
    created = pipeline.generate("p1", T.PHASE_1_CONTRACT, CONTENT).artifact
    pipeline.edit("p1", T.PHASE_1_CONTRACT, "Second draft of the contract.")

    restored = pipeline.restore_version("p1", T.PHASE_1_CONTRACT, 1)

    assert restored.content == CONTENT
    assert restored.version == 3
    assert [v.version for v in store.list_versions(created.id)] == [1, 2]


def test_restore_unknown_version_raises(pipeline):
    pipeline.generate("p1", T.PHASE_1_CONTRACT, CONTENT)
    with pytest.raises(ArtifactNotFoundError):
        pipeline.restore_version("p1", T.PHASE_1_CONTRACT, 7)


def test_mark_stale_only_applies_to_approved(pipeline):
    pipeline.generate("p1", T.PHASE_1_CONTRACT, CONTENT)
    assert pipeline.mark_stale("p1", T.PHASE_1_CONTRACT, "manual") is None
    pipeline.approve("p1", T.PHASE_1_CONTRACT, approved_by="u1")
    stale = pipeline.mark_stale("p1", T.PHASE_1_CONTRACT, "manual")
    assert stale.status == "stale"
    assert stale.stale_reason == "manual"


def test_status_summary(pipeline):
    repo = pipeline.repo
    project = repo.create(ProjectCreate(name="Demo"), owner_id="u1")
    pipeline.generate(project.project_id, T.PHASE_1_CONTRACT, CONTENT)
    pipeline.update_state_hint(project.project_id, "QUICK", "phase_1_contract")

    status = pipeline.status(project.project_id)

    assert status.next_required is T.PHASE_1_CONTRACT
    assert status.last_approved is None
    assert not status.complete
    assert status.stages["phase_1_contract"] == "draft"
    assert status.stages["final_audit"] is None
    assert T.PHASE_1_CONTRACT not in status.missing
    assert status.state.mode == "quick"


def test_transitions_emit_telemetry(pipeline):
    pipeline.generate("p1", T.PHASE_1_CONTRACT, CONTENT)
    pipeline.approve("p1", T.PHASE_1_CONTRACT, approved_by="u1")
    names = [e.name for e in list_recent_events()]
    assert names[-2:] == ["artifact_created", "artifact_approved"]


def test_concurrent_edits_get_distinct_versions():
    class SlowStore(InMemoryArtifactStore):
        def get_artifact(self, project_id, artifact_type):
            found = super().get_artifact(project_id, artifact_type)
            time.sleep(0.002)
            return found

    store = SlowStore()
    pipeline = ArtifactPipeline(store=store, repo=InMemoryProjectRepository())
    created = pipeline.generate("p1", T.PHASE_1_CONTRACT, CONTENT).artifact

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(lambda i: pipeline.edit("p1", T.PHASE_1_CONTRACT, f"{CONTENT} revision {i}"), range(16)))

    assert store.get_artifact("p1", T.PHASE_1_CONTRACT).version == 17
    versions = [v.version for v in store.list_versions(created.id)]
    assert sorted(versions) == list(range(1, 17))
