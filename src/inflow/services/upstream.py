from __future__ import annotations

"""Streaming client for the OpenAI-compatible completion API."""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from ..config import RATE_LIMIT_RETRY_AFTER_SECONDS, GatewaySettings

_logger = logging.getLogger("inflow.upstream")

ERROR_BODY_PREVIEW = 200


class UpstreamError(Exception):
    """The completion API refused or failed the request.

    ``status`` is the status the gateway should answer with, ``upstream_status``
    the one the API returned (None when no response arrived).
    """

    def __init__(
        self,
        status: int,
        message: str,
        kind: str,
        *,
        upstream_status: Optional[int] = None,
        body: str = "",
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.kind = kind
        self.upstream_status = upstream_status
        self.body = body
        self.retry_after = retry_after

    @property
    def detail(self) -> str:
        if self.upstream_status is not None:
            return f"HTTP {self.upstream_status}: {self.body[:ERROR_BODY_PREVIEW]}"
        return f"{self.kind}: {self.body[:ERROR_BODY_PREVIEW]}"


class UpstreamStream:
    """An open streaming response; iterate ``aiter_bytes`` then ``aclose``."""

    def __init__(self, response: httpx.Response) -> None:
        self._response = response

    @property
    def status_code(self) -> int:
        return self._response.status_code

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        async for chunk in self._response.aiter_bytes():
            yield chunk

    async def aclose(self) -> None:
        await self._response.aclose()


def _map_status(status: int, body: str, retry_after: Optional[str]) -> UpstreamError:
    if status == 429:
        hint = int(retry_after) if retry_after and retry_after.isdigit() else None
        return UpstreamError(
            429,
            "Rate limit exceeded. Please try again in a moment.",
            "rate_limited",
            upstream_status=status,
            body=body,
            retry_after=hint,
        )
    if status == 402:
        return UpstreamError(402, "Usage limit reached.", "payment_required", upstream_status=status, body=body)
    return UpstreamError(500, "AI service temporarily unavailable", "http_error", upstream_status=status, body=body)


class UpstreamClient:
    def __init__(
        self,
        settings: GatewaySettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.upstream_timeout_seconds),
                transport=self._transport,
            )
        return self._client

    def build_payload(self, system_prompt: str, messages: List[Dict[str, Any]], model: str) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "stream": True,
        }

    async def open_stream(self, system_prompt: str, messages: List[Dict[str, Any]], model: Optional[str] = None) -> UpstreamStream:
        """POST the completion request and return once response headers arrive.

        Raises:
            UpstreamError for a missing API key, transport failure or non-2xx status.
        """
        if not self._settings.upstream_api_key:
            raise UpstreamError(500, "Internal server error", "not_configured", body="upstream API key is not configured")

        client = self._get_client()
        request = client.build_request(
            "POST",
            self._settings.upstream_url,
            json=self.build_payload(system_prompt, messages, model or self._settings.model),
            headers={"Authorization": f"Bearer {self._settings.upstream_api_key}"},
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as exc:
            raise UpstreamError(
                503, "AI service timed out", "timeout", body=str(exc), retry_after=RATE_LIMIT_RETRY_AFTER_SECONDS
            ) from exc
        except httpx.TransportError as exc:
            raise UpstreamError(
                503, "AI service temporarily unavailable", "unavailable", body=str(exc), retry_after=RATE_LIMIT_RETRY_AFTER_SECONDS
            ) from exc

        if response.status_code >= 300:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
            raise _map_status(response.status_code, body, response.headers.get("Retry-After"))

        return UpstreamStream(response)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
