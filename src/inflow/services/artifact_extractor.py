from __future__ import annotations

"""Turn a finished assistant response into pipeline updates."""

import logging
from dataclasses import dataclass
from typing import Optional

from ..core.state_machine import StageGatingError
from ..domain.artifact_models import Artifact
from .envelope_codec import EnvelopeResult, parse_envelope, preview_message
from .pipeline_service import ArtifactPipeline, GenerationAction, get_pipeline

_logger = logging.getLogger("inflow.pipeline")


@dataclass
class ExtractionOutcome:
    result: EnvelopeResult
    artifact: Optional[Artifact] = None
    action: Optional[GenerationAction] = None
    # The envelope carried an artifact for a stage that is not open yet
    deferred: bool = False

    @property
    def display_text(self) -> str:
        if self.result.ok and self.result.envelope is not None:
            return self.result.envelope.message
        return preview_message(self.result.raw or "")


class ArtifactExtractor:
    def __init__(self, pipeline: Optional[ArtifactPipeline] = None) -> None:
        self._pipeline = pipeline

    @property
    def pipeline(self) -> ArtifactPipeline:
        return self._pipeline or get_pipeline()

    def preview(self, partial_text: str) -> str:
        return preview_message(partial_text)

    def extract(self, text: str) -> EnvelopeResult:
        result = parse_envelope(text)
        if not result.ok:
            _logger.warning("envelope_parse_failed", extra={"error": result.error, "content_length": len(text)})
        return result

    def apply(self, project_id: Optional[str], text: str) -> ExtractionOutcome:
        """Parse ``text`` and, for a scoped project, persist its artifact and state hint."""
        result = self.extract(text)
        outcome = ExtractionOutcome(result=result)
        if not result.ok or result.envelope is None or not project_id:
            return outcome

        envelope = result.envelope
        if envelope.state is not None:
            self.pipeline.update_state_hint(project_id, envelope.state.mode, envelope.state.pipeline_stage)

        if envelope.artifact is not None:
            art = envelope.artifact
            try:
                generated = self.pipeline.generate(project_id, art.type, art.content, art.title)
            except StageGatingError as exc:
                _logger.warning(
                    "artifact_deferred",
                    extra={"project_id": project_id, "artifact_type": art.type.value, "error": str(exc)},
                )
                outcome.deferred = True
                return outcome
            outcome.artifact = generated.artifact
            outcome.action = generated.action
        return outcome
