from __future__ import annotations

"""Client side of the chat protocol.

``StreamingConsumer.send`` persists the user's message, posts the
conversation to ``/chat`` and reads the event stream back, exposing the
growing text through ``on_delta``. At most one send is in flight per
conversation: a newer send cancels the older one, and the cancelled send
reports ``aborted`` instead of raising.
"""

import asyncio
import logging
import random
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Sequence, Set

import httpx

from ..config import ConsumerSettings
from ..infrastructure.chat_store import ChatStore, DuplicateMessageError, get_chat_store
from .artifact_extractor import ArtifactExtractor, ExtractionOutcome
from .chat_gateway import generate_request_id
from .streaming import SSELineBuffer, parse_data_line

_logger = logging.getLogger("inflow.consumer")

DeltaCallback = Callable[[str], None]
Sleeper = Callable[[float], Awaitable[None]]
SendStatus = Literal["completed", "aborted", "failed"]


class ChatErrorType(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    CREDITS = "credits"
    SERVER = "server"
    STREAM_INTERRUPTED = "stream_interrupted"
    VALIDATION = "validation"


class ChatError(Exception):
    def __init__(self, type: ChatErrorType, message: str, can_retry: bool, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.type = type
        self.message = message
        self.can_retry = can_retry
        self.status = status


def error_for_status(status: int, body: Optional[Mapping[str, Any]] = None) -> ChatError:
    if status == 429:
        return ChatError(ChatErrorType.RATE_LIMIT, "Rate limit exceeded. Please wait a moment.", True, status)
    if status == 402:
        return ChatError(ChatErrorType.CREDITS, "Usage limit reached. Please add credits.", False, status)
    if status >= 500:
        return ChatError(ChatErrorType.SERVER, "Server error. Please try again.", True, status)
    message = (body or {}).get("error") or "Failed to get AI response"
    return ChatError(ChatErrorType.SERVER, str(message), True, status)


def calculate_backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    rng: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff capped at ``max_delay`` with +/-25% jitter, in seconds."""
    capped = min(base_delay * (2 ** attempt), max_delay)
    return max(capped + capped * 0.25 * (rng() * 2 - 1), 0.0)


@dataclass
class SendOutcome:
    status: SendStatus
    conversation_id: str
    request_id: Optional[str] = None
    text: str = ""
    user_message_id: Optional[str] = None
    assistant_message_id: Optional[str] = None
    error: Optional[ChatError] = None
    extraction: Optional[ExtractionOutcome] = None


@dataclass
class PendingRetry:
    conversation_id: str
    content: str
    history: List[Dict[str, str]]
    project_id: Optional[str]
    attempt: int = 0


@dataclass
class _LastSend:
    content: str
    project_id: Optional[str]
    history: List[Dict[str, str]] = field(default_factory=list)


class StreamingConsumer:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        token: Optional[str] = None,
        settings: Optional[ConsumerSettings] = None,
        chat_store: Optional[ChatStore] = None,
        extractor: Optional[ArtifactExtractor] = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._client = client
        self._token = token
        self.settings = settings or ConsumerSettings.from_env()
        self._chat_store = chat_store
        self._extractor = extractor or ArtifactExtractor()
        self._sleep = sleep
        self._inflight: Dict[str, asyncio.Task] = {}
        self._pending_ids: Set[str] = set()
        self._last: Dict[str, _LastSend] = {}
        self.pending_retry: Optional[PendingRetry] = None
        self.last_error: Optional[ChatError] = None

    @property
    def chat_store(self) -> ChatStore:
        return self._chat_store or get_chat_store()

    # --- realtime de-duplication ---

    def is_pending(self, message_id: str) -> bool:
        return message_id in self._pending_ids

    def should_apply_realtime(self, event: Mapping[str, Any]) -> bool:
        """False for a realtime echo of a message this client is still writing."""
        record = event.get("new") if isinstance(event.get("new"), Mapping) else event
        message_id = record.get("id") if record else None
        return not (message_id and message_id in self._pending_ids)

    # --- sending ---

    def is_streaming(self, conversation_id: str) -> bool:
        task = self._inflight.get(conversation_id)
        return task is not None and not task.done()

    def cancel(self, conversation_id: str) -> bool:
        task = self._inflight.get(conversation_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def _validate(self, content: str) -> str:
        trimmed = (content or "").strip()
        if not trimmed:
            raise ChatError(ChatErrorType.VALIDATION, "Message cannot be empty", False)
        if len(trimmed) > self.settings.max_message_length:
            raise ChatError(
                ChatErrorType.VALIDATION,
                f"Message must be less than {self.settings.max_message_length:,} characters",
                False,
            )
        return trimmed

    async def send(
        self,
        conversation_id: str,
        content: str,
        history: Sequence[Mapping[str, str]] = (),
        *,
        project_id: Optional[str] = None,
        on_delta: Optional[DeltaCallback] = None,
        skip_user_insert: bool = False,
        retry_attempt: int = 0,
    ) -> SendOutcome:
        """Send one user turn and stream the reply.

        Raises:
            ChatError (type ``validation``) for empty or oversized input, before any I/O.
        """
        trimmed = self._validate(content)
        turns = [{"role": m["role"], "content": m["content"]} for m in history]

        previous = self._inflight.get(conversation_id)
        if previous is not None and not previous.done():
            previous.cancel()

        self._last[conversation_id] = _LastSend(trimmed, project_id, turns)
        task = asyncio.create_task(
            self._send(conversation_id, trimmed, turns, project_id, on_delta, skip_user_insert, retry_attempt)
        )
        self._inflight[conversation_id] = task
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current and current.cancelling()):
                _logger.debug("send_superseded", extra={"conversation_id": conversation_id})
                return SendOutcome(status="aborted", conversation_id=conversation_id)
            raise
        finally:
            if self._inflight.get(conversation_id) is task:
                del self._inflight[conversation_id]

    async def _persist(self, message_id: str, conversation_id: str, role: str, content: str) -> None:
        try:
            await asyncio.to_thread(self.chat_store.insert_message, message_id, conversation_id, role, content)
        except DuplicateMessageError:
            _logger.debug("message_already_exists", extra={"message_id": message_id})

    async def _send(
        self,
        conversation_id: str,
        content: str,
        history: List[Dict[str, str]],
        project_id: Optional[str],
        on_delta: Optional[DeltaCallback],
        skip_user_insert: bool,
        retry_attempt: int,
    ) -> SendOutcome:
        self.last_error = None
        user_message_id = str(uuid.uuid4())
        self._pending_ids.add(user_message_id)
        outcome = SendOutcome(status="failed", conversation_id=conversation_id, user_message_id=user_message_id)
        try:
            if not skip_user_insert:
                try:
                    await self._persist(user_message_id, conversation_id, "user", content)
                except Exception as exc:
                    _logger.error("user_message_persist_failed", extra={"conversation_id": conversation_id, "error": str(exc)})
                    return self._fail(outcome, ChatError(ChatErrorType.SERVER, "Failed to send message", True))

            outcome.request_id = generate_request_id()
            body: Dict[str, Any] = {"messages": [*history, {"role": "user", "content": content}]}
            if project_id:
                body["project_id"] = project_id
            try:
                text = await self._stream(outcome.request_id, body, on_delta)
            except ChatError as err:
                if err.type == ChatErrorType.NETWORK:
                    self.pending_retry = PendingRetry(conversation_id, content, history, project_id, retry_attempt)
                return self._fail(outcome, err)

            outcome.status = "completed"
            outcome.text = text
            if text:
                outcome.assistant_message_id = await self._finish(conversation_id, project_id, text, outcome)
            return outcome
        finally:
            self._pending_ids.discard(user_message_id)

    def _fail(self, outcome: SendOutcome, error: ChatError) -> SendOutcome:
        _logger.warning("chat_send_failed", extra={"error_type": error.type.value, "status": error.status})
        self.last_error = error
        outcome.status = "failed"
        outcome.error = error
        return outcome

    async def _stream(self, request_id: str, body: Dict[str, Any], on_delta: Optional[DeltaCallback]) -> str:
        headers = {"X-Request-ID": request_id}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        request = self._client.build_request("POST", self.settings.chat_endpoint, json=body, headers=headers)
        try:
            response = await self._client.send(request, stream=True)
        except httpx.TransportError as exc:
            raise ChatError(ChatErrorType.NETWORK, "Unable to reach the server. Will retry automatically...", True) from exc

        try:
            if response.status_code != 200:
                await response.aread()
                try:
                    data = response.json()
                except ValueError:
                    data = {}
                raise error_for_status(response.status_code, data if isinstance(data, dict) else {})
            return await self._read_events(response, on_delta)
        finally:
            await response.aclose()

    async def _read_events(self, response: httpx.Response, on_delta: Optional[DeltaCallback]) -> str:
        buffer = SSELineBuffer()
        parts: List[str] = []
        chunks = response.aiter_bytes().__aiter__()
        timeout = self.settings.stream_timeout_seconds

        def consume(lines: List[str]) -> bool:
            for line in lines:
                chunk = parse_data_line(line)
                if chunk is None:
                    continue
                if chunk.done:
                    return True
                if chunk.delta:
                    parts.append(chunk.delta)
                    if on_delta is not None:
                        on_delta("".join(parts))
            return False

        while True:
            try:
                raw = await asyncio.wait_for(chunks.__anext__(), timeout=timeout)
            except StopAsyncIteration:
                break
            except TimeoutError as exc:
                raise ChatError(ChatErrorType.TIMEOUT, "Response timed out. The AI may be overloaded.", True) from exc
            except httpx.HTTPError as exc:
                raise ChatError(ChatErrorType.STREAM_INTERRUPTED, "Response was interrupted. Try again.", True) from exc
            if consume(buffer.feed(raw)):
                return "".join(parts)

        consume(buffer.flush())
        return "".join(parts)

    async def _finish(self, conversation_id: str, project_id: Optional[str], text: str, outcome: SendOutcome) -> str:
        assistant_id = str(uuid.uuid4())
        self._pending_ids.add(assistant_id)
        try:
            await self._persist(assistant_id, conversation_id, "assistant", text)
        except Exception as exc:
            _logger.error("assistant_message_persist_failed", extra={"conversation_id": conversation_id, "error": str(exc)})
        finally:
            self._pending_ids.discard(assistant_id)

        try:
            outcome.extraction = await asyncio.to_thread(self._extractor.apply, project_id, text)
        except Exception as exc:
            _logger.error("artifact_extraction_failed", extra={"conversation_id": conversation_id, "error": str(exc)})
        return assistant_id

    # --- retries ---

    async def retry_last(self, conversation_id: str, attempt: int = 0) -> Optional[SendOutcome]:
        """Resend the last message of a conversation after a backoff delay."""
        last = self._last.get(conversation_id)
        if last is None:
            return None
        if 0 < attempt < self.settings.max_retry_attempts:
            await self._sleep(self._backoff(attempt))
        return await self.send(
            conversation_id,
            last.content,
            last.history,
            project_id=last.project_id,
            skip_user_insert=True,
            retry_attempt=attempt,
        )

    async def resume_pending(self) -> Optional[SendOutcome]:
        """Retry a send that failed on a network error, if attempts remain."""
        pending = self.pending_retry
        if pending is None or self.is_streaming(pending.conversation_id):
            return None
        self.pending_retry = None
        next_attempt = pending.attempt + 1
        if next_attempt >= self.settings.max_retry_attempts:
            _logger.info("retry_attempts_exhausted", extra={"conversation_id": pending.conversation_id})
            return None
        await self._sleep(self._backoff(next_attempt))
        return await self.send(
            pending.conversation_id,
            pending.content,
            pending.history,
            project_id=pending.project_id,
            skip_user_insert=True,
            retry_attempt=next_attempt,
        )

    def _backoff(self, attempt: int) -> float:
        return calculate_backoff_delay(
            attempt, self.settings.retry_base_delay_seconds, self.settings.retry_max_delay_seconds
        )
