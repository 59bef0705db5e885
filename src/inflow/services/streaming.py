# --- inflow-stream ---
from __future__ import annotations

"""Server-sent-event framing shared by the gateway and the streaming consumer.

Decoding is split into small pull-based pieces so each can be tested without
an event loop: ``SSELineBuffer`` turns raw bytes into complete lines,
``parse_data_line`` turns one line into a ``StreamChunk`` and ``StreamTee``
accumulates the text and token usage of a whole response.
"""

import asyncio
import codecs
import json
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Union

from ..config import REPLAY_CHUNK_SIZE, REPLAY_DELAY_SECONDS

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"
DONE_FRAME = b"data: [DONE]\n\n"


@dataclass
class StreamChunk:
    delta: str = ""
    done: bool = False
    usage: Optional[Dict[str, int]] = None


class SSELineBuffer:
    """Incremental UTF-8 decoder and newline splitter.

    A multi-byte character split across reads is held by the decoder and an
    unterminated trailing line is held until the next ``feed`` or ``flush``.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    @property
    def pending(self) -> str:
        return self._pending

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        text = chunk if isinstance(chunk, str) else self._decoder.decode(chunk)
        if not text:
            return []
        data = self._pending + text
        lines = data.split("\n")
        self._pending = lines.pop()
        return [line[:-1] if line.endswith("\r") else line for line in lines]

    def flush(self) -> List[str]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        lines = []
        for raw in tail.split("\n"):
            line = raw[:-1] if raw.endswith("\r") else raw
            if line.strip():
                lines.append(line)
        return lines


def parse_data_line(line: str) -> Optional[StreamChunk]:
    """Decode one ``data: <json>`` line; None for anything that carries nothing."""
    if not line or line.startswith(":") or not line.startswith(DATA_PREFIX):
        return None
    payload = line[len(DATA_PREFIX) :].strip()
    if payload == DONE_SENTINEL:
        return StreamChunk(done=True)
    try:
        parsed = json.loads(payload)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None

    delta = ""
    choices = parsed.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        raw_delta = choices[0].get("delta")
        content = raw_delta.get("content") if isinstance(raw_delta, dict) else None
        if isinstance(content, str):
            delta = content

    usage = None
    raw_usage = parsed.get("usage")
    if isinstance(raw_usage, dict):
        usage = {
            k: int(v) for k, v in raw_usage.items() if k in ("prompt_tokens", "completion_tokens") and isinstance(v, (int, float))
        }
    if not delta and usage is None:
        return None
    return StreamChunk(delta=delta, usage=usage)


def format_delta_frame(content: str) -> bytes:
    body = {"choices": [{"delta": {"content": content}, "index": 0}]}
    return f"data: {json.dumps(body, ensure_ascii=False, separators=(',', ':'))}\n\n".encode("utf-8")


async def replay_cached(
    response: str,
    chunk_size: int = REPLAY_CHUNK_SIZE,
    delay: float = REPLAY_DELAY_SECONDS,
) -> AsyncIterator[bytes]:
    """Re-emit a cached response in the live delta framing, then DONE."""
    size = max(1, chunk_size)
    for start in range(0, len(response), size):
        yield format_delta_frame(response[start : start + size])
        if delay > 0:
            await asyncio.sleep(delay)
    yield DONE_FRAME


@dataclass
class StreamTee:
    """Accumulates a response as its bytes pass through to the client."""

    _buffer: SSELineBuffer = field(default_factory=SSELineBuffer)
    _parts: List[str] = field(default_factory=list)
    tokens_in: Optional[int] = None
    tokens_out: Optional[int] = None
    done: bool = False
    bytes_seen: int = 0
    broken: bool = False

    def _consume(self, lines: List[str]) -> None:
        for line in lines:
            chunk = parse_data_line(line)
            if chunk is None:
                continue
            if chunk.done:
                self.done = True
                continue
            if chunk.delta:
                self._parts.append(chunk.delta)
            if chunk.usage:
                self.tokens_in = chunk.usage.get("prompt_tokens", self.tokens_in)
                self.tokens_out = chunk.usage.get("completion_tokens", self.tokens_out)

    def observe(self, chunk: bytes) -> None:
        self.bytes_seen += len(chunk)
        self._consume(self._buffer.feed(chunk))

    def finish(self) -> None:
        self._consume(self._buffer.flush())

    @property
    def text(self) -> str:
        return "".join(self._parts)
