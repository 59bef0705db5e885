from __future__ import annotations

"""Runtime settings for the chat gateway and the streaming client.

Values are read from the environment (a ``.env`` file is loaded by the API
entry point). Integer and float variables that fail to parse, or are not
positive, fall back to their defaults.

Env vars:
- INFLOW_MAX_MESSAGES (default 100)
- INFLOW_MAX_CONTENT_LENGTH (default 50000)
- INFLOW_RATE_LIMIT_MAX_REQUESTS / INFLOW_RATE_LIMIT_WINDOW_SECONDS (30 / 60)
- INFLOW_FREE_CREDIT_LIMIT (default 50)
- INFLOW_PROMPT_VERSION (default v2.0)
- INFLOW_CACHE_TTL_HOURS (default 24)
- INFLOW_MODEL, INFLOW_UPSTREAM_URL, INFLOW_UPSTREAM_API_KEY
- INFLOW_UPSTREAM_TIMEOUT_SECONDS (default 25)
- INFLOW_REPLAY_CHUNK_SIZE / INFLOW_REPLAY_DELAY_SECONDS (50 / 0.01)
- INFLOW_STREAM_TIMEOUT_SECONDS (default 30, client side)
"""

import os
from dataclasses import dataclass
from typing import Optional

MAX_MESSAGES = 100
MAX_CONTENT_LENGTH = 50_000
RATE_LIMIT_MAX_REQUESTS = 30
RATE_LIMIT_WINDOW_SECONDS = 60
RATE_LIMIT_RETRY_AFTER_SECONDS = 10
FREE_CREDIT_LIMIT = 50
CURRENT_PROMPT_VERSION = "v2.0"
CACHE_TTL_HOURS = 24
DEFAULT_MODEL = "google/gemini-2.5-flash"
DEFAULT_UPSTREAM_URL = "https://api.openai.com/v1/chat/completions"
UPSTREAM_TIMEOUT_SECONDS = 25.0
REPLAY_CHUNK_SIZE = 50
REPLAY_DELAY_SECONDS = 0.01
STREAM_TIMEOUT_SECONDS = 30.0
MIN_ARTIFACT_CONTENT_LENGTH = 20
MIN_STREAMING_PREVIEW_LENGTH = 50


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
        return value if value >= 0 else default
    except ValueError:
        return default


@dataclass
class GatewaySettings:
    max_messages: int = MAX_MESSAGES
    max_content_length: int = MAX_CONTENT_LENGTH
    rate_limit_max_requests: int = RATE_LIMIT_MAX_REQUESTS
    rate_limit_window_seconds: int = RATE_LIMIT_WINDOW_SECONDS
    free_credit_limit: int = FREE_CREDIT_LIMIT
    prompt_version: str = CURRENT_PROMPT_VERSION
    cache_ttl_hours: int = CACHE_TTL_HOURS
    model: str = DEFAULT_MODEL
    upstream_url: str = DEFAULT_UPSTREAM_URL
    upstream_api_key: Optional[str] = None
    upstream_timeout_seconds: float = UPSTREAM_TIMEOUT_SECONDS
    replay_chunk_size: int = REPLAY_CHUNK_SIZE
    replay_delay_seconds: float = REPLAY_DELAY_SECONDS

    @property
    def cache_ttl_seconds(self) -> int:
        return self.cache_ttl_hours * 3600

    @staticmethod
    def from_env() -> "GatewaySettings":
        return GatewaySettings(
            max_messages=_env_int("INFLOW_MAX_MESSAGES", MAX_MESSAGES),
            max_content_length=_env_int("INFLOW_MAX_CONTENT_LENGTH", MAX_CONTENT_LENGTH),
            rate_limit_max_requests=_env_int("INFLOW_RATE_LIMIT_MAX_REQUESTS", RATE_LIMIT_MAX_REQUESTS),
            rate_limit_window_seconds=_env_int("INFLOW_RATE_LIMIT_WINDOW_SECONDS", RATE_LIMIT_WINDOW_SECONDS),
            free_credit_limit=_env_int("INFLOW_FREE_CREDIT_LIMIT", FREE_CREDIT_LIMIT),
            prompt_version=os.getenv("INFLOW_PROMPT_VERSION", CURRENT_PROMPT_VERSION),
            cache_ttl_hours=_env_int("INFLOW_CACHE_TTL_HOURS", CACHE_TTL_HOURS),
            model=os.getenv("INFLOW_MODEL", DEFAULT_MODEL),
            upstream_url=os.getenv("INFLOW_UPSTREAM_URL", DEFAULT_UPSTREAM_URL),
            upstream_api_key=os.getenv("INFLOW_UPSTREAM_API_KEY") or None,
            upstream_timeout_seconds=_env_float("INFLOW_UPSTREAM_TIMEOUT_SECONDS", UPSTREAM_TIMEOUT_SECONDS),
            replay_chunk_size=_env_int("INFLOW_REPLAY_CHUNK_SIZE", REPLAY_CHUNK_SIZE),
            replay_delay_seconds=_env_float("INFLOW_REPLAY_DELAY_SECONDS", REPLAY_DELAY_SECONDS),
        )


@dataclass
class ConsumerSettings:
    chat_endpoint: str = "/chat"
    stream_timeout_seconds: float = STREAM_TIMEOUT_SECONDS
    max_message_length: int = MAX_CONTENT_LENGTH
    retry_base_delay_seconds: float = 1.0
    retry_max_delay_seconds: float = 30.0
    max_retry_attempts: int = 3

    @staticmethod
    def from_env() -> "ConsumerSettings":
        return ConsumerSettings(
            chat_endpoint=os.getenv("INFLOW_CHAT_ENDPOINT", "/chat"),
            stream_timeout_seconds=_env_float("INFLOW_STREAM_TIMEOUT_SECONDS", STREAM_TIMEOUT_SECONDS),
            max_message_length=_env_int("INFLOW_MAX_CONTENT_LENGTH", MAX_CONTENT_LENGTH),
        )
