import json

import pytest

from src.inflow.domain.artifact_models import ArtifactType
from src.inflow.domain.envelope_models import Envelope
from src.inflow.services.envelope_codec import (
    encode_envelope,
    extract_string_value,
    parse_envelope,
    preview_message,
    sanitize_response,
)
from tests.utils import ENVELOPE_TEXT


def test_parse_bare_envelope():
    result = parse_envelope(ENVELOPE_TEXT)
    assert result.ok
    assert result.envelope.message == "Here is the Phase 1 contract draft."
    assert result.envelope.artifact.type is ArtifactType.PHASE_1_CONTRACT
    assert result.envelope.state.mode == "STANDARD"
    assert not result.recovered


def test_encode_then_parse_fenced_is_equivalent():
    envelope = Envelope.model_validate(json.loads(ENVELOPE_TEXT))
    fenced = encode_envelope(envelope, fenced=True)
    assert fenced.startswith("```json\n")
    result = parse_envelope(fenced)
    assert result.ok
    assert result.envelope == envelope


def test_sanitize_strips_prefix_and_trailing_text():
    raw = 'Sure! Here you go: {"message": "hi"} hope that helps'
    assert sanitize_response(raw) == '{"message": "hi"}'


def test_sanitize_synthesizes_brace_for_bare_message_key():
    assert sanitize_response('"message": "hi"}') == '{"message": "hi"}'


def test_sanitize_drops_json_language_tag():
    assert sanitize_response('json{"message": "hi"}') == '{"message": "hi"}'


def test_partial_message_is_not_extracted():
    assert extract_string_value('{"message": "Hello wor', "message") is None
    result = parse_envelope('{"message": "Hello wor')
    assert not result.ok
    assert result.error.startswith("JSON parse error")


def test_escaped_quotes_are_unescaped():
    raw = '{"message": "She said \\"hi\\"\\nthen left", "artifact": {'
    assert extract_string_value(raw, "message") == 'She said "hi"\nthen left'


def test_manual_recovery_from_truncated_envelope():
    raw = '{"message": "Draft ready", "state": {"mode": "QUICK", "pipeline_stage": "discovery_report"}, "next_actions": ['
    result = parse_envelope(raw)
    assert result.ok
    assert result.recovered
    assert result.envelope.message == "Draft ready"
    assert result.envelope.state.mode == "QUICK"
    assert result.envelope.artifact is None


def test_manual_recovery_skips_short_or_unknown_artifact():
    raw = '{"message": "x", "artifact": {"type": "not_a_stage", "title": "T", "content": "long enough content here"'
    result = parse_envelope(raw)
    assert result.ok
    assert result.envelope.artifact is None


def test_validation_error_names_offending_field():
    raw = json.dumps({"message": "hi", "artifact": {"type": "bogus", "title": "T", "content": "x" * 30}})
    result = parse_envelope(raw)
    assert not result.ok
    assert "artifact.type" in result.error


def test_empty_message_fails_validation():
    result = parse_envelope('{"message": ""}')
    assert not result.ok
    assert "message" in result.error


def test_non_object_json_is_rejected():
    result = parse_envelope("[1, 2, 3]")
    assert not result.ok


def test_none_input_raises_type_error():
    with pytest.raises(TypeError):
        parse_envelope(None)  # type: ignore[arg-type]


def test_preview_prefers_full_then_partial_message():
    assert preview_message(ENVELOPE_TEXT) == "Here is the Phase 1 contract draft."
    assert preview_message('{"message": "Done so far", "artifact": {"type": "pha') == "Done so far"


def test_preview_hides_structured_fragments():
    assert preview_message('{"mess') == ""
    assert preview_message('```json\n{"message": "Hel') == ""
    assert preview_message("") == ""


def test_preview_passes_plain_prose_through():
    text = "This reply ignored the JSON instructions and is just prose."
    assert preview_message(text) == text
