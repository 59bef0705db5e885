from __future__ import annotations

"""Server side of ``POST /chat``.

Each request runs the same fixed sequence and stops at the first failure:

    auth -> rate limit -> credit -> validate -> build prompt -> cache lookup
         -> replay (HIT) | upstream (MISS) -> stream + tee

Authentication happens in the route dependency; everything after it lives in
``ChatGateway.handle``. Failures before streaming raise ``GatewayError``,
which the API layer renders as ``{"error": ...}``. Once bytes are flowing,
nothing in the caching or audit path can fail the response.
"""

import json
import logging
import random
import re
import string
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx
from starlette.background import BackgroundTask
from starlette.responses import StreamingResponse

from ..config import RATE_LIMIT_RETRY_AFTER_SECONDS, GatewaySettings
from ..core.pipeline_context import load_pipeline_context
from ..domain.chat_models import ALLOWED_ROLES, ChatRequest
from ..infrastructure.artifact_store import ArtifactStore, get_artifact_store
from ..infrastructure.cache_store import CacheEntry, CacheStore, compute_prompt_hash, get_cache_store, schedule_hit
from ..infrastructure.repository import ProjectRepository, get_repo
from ..observability.metrics import record_cache_lookup, record_envelope_parse, record_upstream_failure
from ..security.auth import User
from ..security.credits import CreditLedger, CreditsExhausted, CreditsUnavailable, build_credit_ledger, consume_credit, get_credit_ledger
from ..security.rate_limit import (
    RateLimiter,
    RateLimitExceeded,
    RateLimitUnavailable,
    build_rate_limiter,
    enforce_rate_limit,
    get_rate_limiter,
)
from .envelope_codec import parse_envelope, sanitize_response
from .streaming import StreamTee, replay_cached
from .system_prompt import PromptStore, get_prompt_store, resolve_system_prompt
from .telemetry_sink import AIRequestLog, record_ai_request, redact_pii
from .upstream import UpstreamClient, UpstreamError

_logger = logging.getLogger("inflow.gateway")

UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
LOG_PREVIEW_LENGTH = 800
SERVICE_UNAVAILABLE = "Service temporarily unavailable."


class GatewayError(Exception):
    def __init__(self, status: int, message: str, retry_after: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.retry_after = retry_after

    @property
    def headers(self) -> Dict[str, str]:
        if self.retry_after is None:
            return {}
        return {"Retry-After": str(self.retry_after)}


def generate_request_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=7))
    return f"req_{int(time.time() * 1000)}_{suffix}"


def validate_chat_body(raw: Any, settings: GatewaySettings) -> ChatRequest:
    """Check a decoded request body; raises GatewayError(400) on the first violation."""
    if not isinstance(raw, dict):
        raise GatewayError(400, "Invalid request body")

    messages = raw.get("messages")
    if not isinstance(messages, list) or not messages:
        raise GatewayError(400, "Invalid messages format")
    if len(messages) > settings.max_messages:
        raise GatewayError(400, f"Maximum {settings.max_messages} messages allowed")

    for msg in messages:
        if not isinstance(msg, dict) or not msg.get("role") or not msg.get("content"):
            raise GatewayError(400, "Each message must have role and content")
        if msg["role"] not in ALLOWED_ROLES:
            raise GatewayError(400, "Invalid message role")
        content = msg["content"]
        if not isinstance(content, str) or len(content) > settings.max_content_length:
            raise GatewayError(400, f"Message content must be under {settings.max_content_length} characters")

    project_id = raw.get("project_id")
    if project_id is not None:
        if not isinstance(project_id, str) or not UUID_RE.match(project_id):
            raise GatewayError(400, "Invalid project ID format")

    return ChatRequest(
        messages=[{"role": m["role"], "content": m["content"]} for m in messages],
        project_id=project_id,
    )


@dataclass
class ChatContext:
    request_id: str
    user: User
    chat: ChatRequest
    system_prompt: str
    prompt_version: str
    prompt_hash: str
    model: str
    started_at: float

    @property
    def messages(self) -> List[Dict[str, Any]]:
        return [m.model_dump() for m in self.chat.messages]

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started_at) * 1000)


class ChatGateway:
    def __init__(
        self,
        settings: Optional[GatewaySettings] = None,
        *,
        upstream: Optional[UpstreamClient] = None,
        cache_store: Optional[CacheStore] = None,
        rate_limiter: Optional[RateLimiter] = None,
        credit_ledger: Optional[CreditLedger] = None,
        repo: Optional[ProjectRepository] = None,
        artifact_store: Optional[ArtifactStore] = None,
        prompt_store: Optional[PromptStore] = None,
    ) -> None:
        self.settings = settings or GatewaySettings.from_env()
        self.upstream = upstream or UpstreamClient(self.settings)
        # Explicit settings get their own limiter and ledger; otherwise the process-wide ones
        if settings is not None:
            rate_limiter = rate_limiter or build_rate_limiter(settings)
            credit_ledger = credit_ledger or build_credit_ledger(settings)
        self._cache_store = cache_store
        self._rate_limiter = rate_limiter
        self._credit_ledger = credit_ledger
        self._repo = repo
        self._artifact_store = artifact_store
        self._prompt_store = prompt_store

    # Collaborators resolve lazily so module singletons can be swapped between requests
    @property
    def cache_store(self) -> CacheStore:
        return self._cache_store or get_cache_store()

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter or get_rate_limiter()

    @property
    def credit_ledger(self) -> CreditLedger:
        return self._credit_ledger or get_credit_ledger()

    @property
    def repo(self) -> ProjectRepository:
        return self._repo or get_repo()

    @property
    def artifact_store(self) -> ArtifactStore:
        return self._artifact_store or get_artifact_store()

    @property
    def prompt_store(self) -> PromptStore:
        return self._prompt_store or get_prompt_store()

    def _response_headers(self, ctx: ChatContext, cache_status: str) -> Dict[str, str]:
        return {
            "X-Request-ID": ctx.request_id,
            "X-Prompt-Version": ctx.prompt_version,
            "X-Cache-Status": cache_status,
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        }

    def check_rate_limit(self, user: User, request_id: str) -> None:
        try:
            enforce_rate_limit(self.rate_limiter, user.id)
        except RateLimitExceeded as exc:
            _logger.warning("rate_limit_exceeded", extra={"request_id": request_id, "user_id": user.id})
            raise GatewayError(429, "Rate limit exceeded. Please wait a moment.", exc.retry_after_seconds)
        except RateLimitUnavailable as exc:
            _logger.error("rate_limit_check_failed", extra={"request_id": request_id, "error": str(exc)})
            raise GatewayError(503, SERVICE_UNAVAILABLE, RATE_LIMIT_RETRY_AFTER_SECONDS)

    def consume_credit(self, user: User, request_id: str) -> None:
        try:
            consume_credit(self.credit_ledger, user.id, user.tier)
        except CreditsExhausted:
            _logger.info("credits_exhausted", extra={"request_id": request_id, "user_id": user.id})
            raise GatewayError(402, "You've used all your free credits. Upgrade to continue.")
        except CreditsUnavailable as exc:
            _logger.error("credit_check_failed", extra={"request_id": request_id, "error": str(exc)})
            raise GatewayError(503, SERVICE_UNAVAILABLE, RATE_LIMIT_RETRY_AFTER_SECONDS)

    def check_project_access(self, user: User, project_id: Optional[str], request_id: str) -> None:
        if project_id is None:
            return
        project = self.repo.get(project_id)
        if project is None or project.owner_id != user.id:
            _logger.warning("project_access_denied", extra={"request_id": request_id, "project_id": project_id})
            raise GatewayError(403, "Project not found or access denied")

    def build_prompt(self, project_id: Optional[str], request_id: str) -> tuple[str, str]:
        prompt, version = resolve_system_prompt(self.prompt_store, self.settings.prompt_version)
        if project_id:
            prompt += load_pipeline_context(self.artifact_store, project_id, request_id)
        return prompt, version

    def lookup_cache(self, prompt_hash: str, request_id: str) -> Optional[CacheEntry]:
        try:
            entry = self.cache_store.get(prompt_hash)
        except Exception as exc:
            _logger.warning("cache_lookup_failed", extra={"request_id": request_id, "error": str(exc)})
            entry = None
        record_cache_lookup(entry is not None)
        return entry

    async def handle(self, user: User, raw_body: bytes, request_id: Optional[str] = None) -> StreamingResponse:
        started = time.perf_counter()
        request_id = request_id or generate_request_id()
        _logger.info("chat_request_started", extra={"request_id": request_id, "user_id": user.id})

        self.check_rate_limit(user, request_id)
        self.consume_credit(user, request_id)

        try:
            body = json.loads(raw_body or b"null")
        except ValueError:
            raise GatewayError(400, "Invalid JSON body")
        chat = validate_chat_body(body, self.settings)
        self.check_project_access(user, chat.project_id, request_id)

        system_prompt, prompt_version = self.build_prompt(chat.project_id, request_id)
        model = self.settings.model
        messages = [m.model_dump() for m in chat.messages]
        ctx = ChatContext(
            request_id=request_id,
            user=user,
            chat=chat,
            system_prompt=system_prompt,
            prompt_version=prompt_version,
            prompt_hash=compute_prompt_hash(system_prompt, messages, model),
            model=model,
            started_at=started,
        )

        cached = self.lookup_cache(ctx.prompt_hash, request_id)
        if cached is not None:
            return self._replay(ctx, cached)
        return await self._stream_upstream(ctx)

    def _replay(self, ctx: ChatContext, entry: CacheEntry) -> StreamingResponse:
        _logger.info("cache_hit", extra={"request_id": ctx.request_id, "prompt_hash": ctx.prompt_hash[:12]})
        schedule_hit(self.cache_store, ctx.prompt_hash)
        audit = AIRequestLog(
            request_id=ctx.request_id,
            user_id=ctx.user.id,
            project_id=ctx.chat.project_id,
            prompt_version=ctx.prompt_version,
            model=ctx.model,
            message_count=len(ctx.chat.messages),
            latency_ms=ctx.elapsed_ms(),
            parsed_successfully=True,
            cache_status="HIT",
        )
        return StreamingResponse(
            replay_cached(entry.response, self.settings.replay_chunk_size, self.settings.replay_delay_seconds),
            media_type="text/event-stream",
            headers=self._response_headers(ctx, "HIT"),
            background=BackgroundTask(_safe_record, audit),
        )

    async def _stream_upstream(self, ctx: ChatContext) -> StreamingResponse:
        _logger.info(
            "cache_miss",
            extra={
                "request_id": ctx.request_id,
                "message_count": len(ctx.chat.messages),
                "model": ctx.model,
                "prompt_version": ctx.prompt_version,
            },
        )
        try:
            upstream = await self.upstream.open_stream(ctx.system_prompt, ctx.messages, ctx.model)
        except UpstreamError as exc:
            record_upstream_failure(exc.kind)
            _logger.error(
                "upstream_error",
                extra={"request_id": ctx.request_id, "kind": exc.kind, "upstream_status": exc.upstream_status},
            )
            _safe_record(
                AIRequestLog(
                    request_id=ctx.request_id,
                    user_id=ctx.user.id,
                    project_id=ctx.chat.project_id,
                    prompt_version=ctx.prompt_version,
                    model=ctx.model,
                    message_count=len(ctx.chat.messages),
                    latency_ms=ctx.elapsed_ms(),
                    parsed_successfully=False,
                    parse_errors=[exc.detail],
                )
            )
            raise GatewayError(exc.status, exc.message, exc.retry_after)

        _logger.info("streaming_started", extra={"request_id": ctx.request_id, "latency_ms": ctx.elapsed_ms()})
        tee = StreamTee()

        async def body():
            try:
                async for chunk in upstream.aiter_bytes():
                    if not tee.broken:
                        try:
                            tee.observe(chunk)
                        except Exception as exc:
                            tee.broken = True
                            _logger.error("stream_tee_failed", extra={"request_id": ctx.request_id, "error": str(exc)})
                    yield chunk
            except httpx.HTTPError as exc:
                record_upstream_failure("interrupted")
                _logger.error("upstream_stream_interrupted", extra={"request_id": ctx.request_id, "error": str(exc)})
                raise
            finally:
                await upstream.aclose()

        return StreamingResponse(
            body(),
            media_type="text/event-stream",
            headers=self._response_headers(ctx, "MISS"),
            background=BackgroundTask(self.finalize, ctx, tee),
        )

    def finalize(self, ctx: ChatContext, tee: StreamTee) -> None:
        """Parse, audit and cache a completed upstream response."""
        try:
            if not tee.broken:
                tee.finish()
            text = tee.text
            sanitized = sanitize_response(text) if text else ""
            result = parse_envelope(text) if text else None
            parsed_ok = bool(result and result.ok)
            record_envelope_parse(parsed_ok)

            envelope = result.envelope if result and result.ok else None
            _logger.info(
                "response_completed",
                extra={
                    "request_id": ctx.request_id,
                    "response_length": len(text),
                    "parsed_ok": parsed_ok,
                    "has_artifact_key": '"artifact"' in sanitized,
                    "has_state_key": '"state"' in sanitized,
                    "artifact_type": envelope.artifact.type.value if envelope and envelope.artifact else None,
                    "pipeline_stage": envelope.state.pipeline_stage if envelope and envelope.state else None,
                    "preview": redact_pii(sanitized[:LOG_PREVIEW_LENGTH]),
                },
            )

            errors = None
            if not parsed_ok:
                errors = [result.error if result and result.error else "empty response"]
            _safe_record(
                AIRequestLog(
                    request_id=ctx.request_id,
                    user_id=ctx.user.id,
                    project_id=ctx.chat.project_id,
                    prompt_version=ctx.prompt_version,
                    model=ctx.model,
                    message_count=len(ctx.chat.messages),
                    latency_ms=ctx.elapsed_ms(),
                    tokens_in=tee.tokens_in,
                    tokens_out=tee.tokens_out,
                    parsed_successfully=parsed_ok,
                    parse_errors=errors,
                    raw_output=text,
                )
            )

            if text and parsed_ok and not tee.broken:
                self._write_cache(ctx, text)
        except Exception as exc:
            _logger.error("finalize_failed", extra={"request_id": ctx.request_id, "error": str(exc)})

    def _write_cache(self, ctx: ChatContext, text: str) -> None:
        try:
            stored = self.cache_store.put(
                ctx.prompt_hash, text, ctx.model, ctx.prompt_version, self.settings.cache_ttl_seconds
            )
            _logger.info(
                "response_cached" if stored else "response_cache_exists",
                extra={"request_id": ctx.request_id, "prompt_hash": ctx.prompt_hash[:12], "response_length": len(text)},
            )
        except Exception as exc:
            _logger.warning("cache_write_failed", extra={"request_id": ctx.request_id, "error": str(exc)})


def _safe_record(entry: AIRequestLog) -> None:
    try:
        record_ai_request(entry)
    except Exception as exc:
        _logger.warning("audit_write_failed", extra={"request_id": entry.request_id, "error": str(exc)})


_gateway: Optional[ChatGateway] = None


def get_chat_gateway() -> ChatGateway:
    global _gateway
    if _gateway is None:
        _gateway = ChatGateway()
    return _gateway


def reset_chat_gateway() -> None:
    global _gateway
    _gateway = None
