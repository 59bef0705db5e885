from __future__ import annotations

"""Extract the structured response envelope from free-form model output.

The model is told to answer with a bare JSON object, but streamed output is
often fenced, prefixed, cut off mid-string or otherwise malformed.
``parse_envelope`` never raises for such input; it returns an
``EnvelopeResult`` whose ``ok`` flag callers branch on.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from ..config import MIN_ARTIFACT_CONTENT_LENGTH, MIN_STREAMING_PREVIEW_LENGTH
from ..domain.artifact_models import ArtifactType
from ..domain.envelope_models import Envelope

_FENCED_BLOCK = re.compile(r"^```(?:json)?\s*([\s\S]*?)```$")
_OPEN_FENCE = re.compile(r"^```(?:json)?\s*")
_LANG_TAG = re.compile(r"^json\s*")
_FIRST_OBJECT = re.compile(r"\{[\s\S]*\}")
_CODE_HINTS = re.compile(r"^\s*(?:[\[{\"']|```|def |class |import |function |const |let |var |<\w+)")

_VALID_TYPES = {t.value for t in ArtifactType}
_MANUAL_ESCAPES = (("\\n", "\n"), ("\\r", "\r"), ("\\t", "\t"), ('\\"', '"'), ("\\\\", "\\"))


@dataclass
class EnvelopeResult:
    ok: bool
    envelope: Optional[Envelope] = None
    error: Optional[str] = None
    raw: Optional[str] = None
    # Full JSON parse failed; fields were recovered by scanning
    recovered: bool = False

    @property
    def message(self) -> Optional[str]:
        return self.envelope.message if self.envelope else None


def sanitize_response(raw: str) -> str:
    """Strip fences and stray prefixes so the text is (ideally) one JSON object."""
    cleaned = raw.strip()

    match = _FENCED_BLOCK.match(cleaned)
    if match:
        cleaned = match.group(1).strip()
    if cleaned.startswith("```"):
        cleaned = _OPEN_FENCE.sub("", cleaned, count=1).strip()
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3].strip()
    if cleaned.startswith(("json\n", "json{", "json ", 'json"')):
        cleaned = _LANG_TAG.sub("", cleaned, count=1).strip()

    if not cleaned.startswith("{"):
        if cleaned.startswith(('"message"', "'message'")):
            cleaned = "{" + cleaned
        else:
            obj = _FIRST_OBJECT.search(cleaned)
            if obj:
                cleaned = obj.group(0)

    if not cleaned.endswith("}"):
        last_brace = cleaned.rfind("}")
        if last_brace > 0:
            cleaned = cleaned[: last_brace + 1]

    return cleaned


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts)


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except ValueError:
        for src, dst in _MANUAL_ESCAPES:
            value = value.replace(src, dst)
        return value


def extract_string_value(raw: str, key: str) -> Optional[str]:
    """Scan for ``"key": "<value>"`` without requiring well-formed JSON.

    Backslash escapes are honoured when looking for the closing quote. A value
    whose closing quote has not arrived yet yields None, as does an empty one.
    """
    pattern = f'"{key}"'
    key_index = raw.find(pattern)
    if key_index < 0:
        return None
    colon = raw.find(":", key_index + len(pattern))
    if colon < 0:
        return None
    start = raw.find('"', colon + 1)
    if start < 0:
        return None

    end = -1
    escaped = False
    for i in range(start + 1, len(raw)):
        ch = raw[i]
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == '"':
            end = i
            break

    if end <= start + 1:
        return None
    return _unescape(raw[start + 1 : end])


def extract_fields_manually(raw: str) -> Optional[Dict[str, Any]]:
    message = extract_string_value(raw, "message")
    if not message:
        return None

    fields: Dict[str, Any] = {"message": message}

    art_type = extract_string_value(raw, "type")
    title = extract_string_value(raw, "title")
    if art_type and title:
        content = extract_string_value(raw, "content")
        if art_type in _VALID_TYPES and content and len(content) >= MIN_ARTIFACT_CONTENT_LENGTH:
            fields["artifact"] = {"type": art_type, "title": title, "content": content, "status": "draft"}

    mode = extract_string_value(raw, "mode")
    stage = extract_string_value(raw, "pipeline_stage")
    if mode in ("STANDARD", "QUICK") and stage:
        fields["state"] = {"mode": mode, "pipeline_stage": stage}

    return fields


def parse_envelope(raw: str) -> EnvelopeResult:
    if raw is None:
        raise TypeError("parse_envelope() requires a string, got None")
    if not isinstance(raw, str):
        raise TypeError(f"parse_envelope() requires a string, got {type(raw).__name__}")

    candidate = sanitize_response(raw)
    try:
        data = json.loads(candidate)
    except ValueError as exc:
        manual = extract_fields_manually(raw)
        if manual is not None:
            try:
                return EnvelopeResult(ok=True, envelope=Envelope.model_validate(manual), raw=raw, recovered=True)
            except ValidationError:
                pass
        return EnvelopeResult(ok=False, error=f"JSON parse error: {exc}", raw=raw)

    if not isinstance(data, dict):
        return EnvelopeResult(ok=False, error="envelope must be a JSON object", raw=raw)
    try:
        return EnvelopeResult(ok=True, envelope=Envelope.model_validate(data), raw=raw)
    except ValidationError as exc:
        return EnvelopeResult(ok=False, error=_format_validation_error(exc), raw=raw)


def _looks_structured(text: str) -> bool:
    return bool(_CODE_HINTS.match(text)) or '"message"' in text


def preview_message(raw: str) -> str:
    """Best-effort display text for a (possibly incomplete) response."""
    if not raw or not raw.strip():
        return ""

    result = parse_envelope(raw)
    if result.ok and result.envelope is not None:
        return result.envelope.message

    partial = extract_string_value(raw, "message")
    if partial:
        return partial

    text = raw.strip()
    if _looks_structured(text):
        return ""
    if len(text) < MIN_STREAMING_PREVIEW_LENGTH and any(c in text for c in "{}[]\""):
        return ""
    return text


def encode_envelope(envelope: Union[Envelope, Dict[str, Any]], fenced: bool = False) -> str:
    if not isinstance(envelope, Envelope):
        envelope = Envelope.model_validate(envelope)
    body = json.dumps(envelope.model_dump(mode="json", exclude_none=True), ensure_ascii=False, indent=2)
    if fenced:
        return f"```json\n{body}\n```"
    return body
