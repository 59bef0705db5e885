from __future__ import annotations

"""Response cache keyed by a hash of the final prompt.

Entries are insert-or-ignore: concurrent identical requests race to write the
same key and the loser is a silent no-op. Expired entries are never returned.
"""

import asyncio
import hashlib
import json
import logging
import os
import time
from dataclasses import asdict, dataclass
from threading import RLock
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Set

import redis

_logger = logging.getLogger("inflow.cache")

Clock = Callable[[], float]


@dataclass
class CacheEntry:
    prompt_hash: str
    response: str
    model: str
    prompt_version: str
    created_at: float
    expires_at: float
    hit_count: int = 0
    last_hit_at: Optional[float] = None


class CacheStore(Protocol):
    def get(self, prompt_hash: str) -> Optional[CacheEntry]: ...
    def put(self, prompt_hash: str, response: str, model: str, prompt_version: str, ttl_seconds: int) -> bool: ...
    def record_hit(self, prompt_hash: str) -> None: ...


def compute_prompt_hash(system_prompt: str, messages: Sequence[Mapping[str, Any]], model: str) -> str:
    """SHA-256 over the compact JSON of ``{systemPrompt, messages, model}``.

    Key order and message order are significant.
    """
    canonical = json.dumps(
        {
            "systemPrompt": system_prompt,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "model": model,
        },
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class InMemoryCacheStore:
    def __init__(self, clock: Clock = time.time) -> None:
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = RLock()
        self._clock = clock

    def get(self, prompt_hash: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(prompt_hash)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                self._entries.pop(prompt_hash, None)
                return None
            return CacheEntry(**asdict(entry))

    def put(self, prompt_hash: str, response: str, model: str, prompt_version: str, ttl_seconds: int) -> bool:
        with self._lock:
            now = self._clock()
            existing = self._entries.get(prompt_hash)
            if existing is not None and existing.expires_at > now:
                return False
            self._entries[prompt_hash] = CacheEntry(
                prompt_hash=prompt_hash,
                response=response,
                model=model,
                prompt_version=prompt_version,
                created_at=now,
                expires_at=now + ttl_seconds,
            )
            return True

    def record_hit(self, prompt_hash: str) -> None:
        with self._lock:
            entry = self._entries.get(prompt_hash)
            if entry is None:
                return
            entry.hit_count += 1
            entry.last_hit_at = self._clock()

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class RedisCacheStore:
    """Redis-backed cache.

    The entry body is a JSON string written with ``SET NX EX``; hit counters
    live in a sibling hash updated with ``HINCRBY`` so the body never changes.
    """

    def __init__(self, client: Optional[redis.Redis] = None, url: Optional[str] = None, prefix: str = "inflow:cache") -> None:
        self._client = client or redis.Redis.from_url(url or os.getenv("REDIS_URL", "redis://localhost:6379/0"), socket_timeout=0.5)
        self._prefix = prefix

    def _key(self, prompt_hash: str) -> str:
        return f"{self._prefix}:{prompt_hash}"

    def _hits_key(self, prompt_hash: str) -> str:
        return f"{self._prefix}:hits:{prompt_hash}"

    def get(self, prompt_hash: str) -> Optional[CacheEntry]:
        raw = self._client.get(self._key(prompt_hash))
        if raw is None:
            return None
        data = json.loads(raw)
        if float(data["expires_at"]) <= time.time():
            return None
        hits = self._client.hgetall(self._hits_key(prompt_hash)) or {}
        data["hit_count"] = int(hits.get(b"hit_count", hits.get("hit_count", 0)) or 0)
        last = hits.get(b"last_hit_at", hits.get("last_hit_at"))
        data["last_hit_at"] = float(last) if last is not None else None
        return CacheEntry(**data)

    def put(self, prompt_hash: str, response: str, model: str, prompt_version: str, ttl_seconds: int) -> bool:
        now = time.time()
        body = {
            "prompt_hash": prompt_hash,
            "response": response,
            "model": model,
            "prompt_version": prompt_version,
            "created_at": now,
            "expires_at": now + ttl_seconds,
        }
        return bool(self._client.set(self._key(prompt_hash), json.dumps(body), nx=True, ex=ttl_seconds))

    def record_hit(self, prompt_hash: str) -> None:
        key = self._hits_key(prompt_hash)
        pipe = self._client.pipeline()
        pipe.hincrby(key, "hit_count", 1)
        pipe.hset(key, "last_hit_at", time.time())
        ttl = self._client.ttl(self._key(prompt_hash))
        if ttl and ttl > 0:
            pipe.expire(key, ttl)
        pipe.execute()


_pending_hits: Set[asyncio.Task] = set()


def schedule_hit(store: CacheStore, prompt_hash: str) -> None:
    """Record a cache hit off the request path; failures are logged and dropped."""

    async def _record() -> None:
        try:
            await asyncio.to_thread(store.record_hit, prompt_hash)
        except Exception as exc:
            _logger.warning("cache_hit_record_failed", extra={"prompt_hash": prompt_hash[:16], "error": str(exc)})

    try:
        task = asyncio.get_running_loop().create_task(_record())
    except RuntimeError:
        # No running loop (sync caller)
        try:
            store.record_hit(prompt_hash)
        except Exception as exc:
            _logger.warning("cache_hit_record_failed", extra={"prompt_hash": prompt_hash[:16], "error": str(exc)})
        return
    _pending_hits.add(task)
    task.add_done_callback(_pending_hits.discard)


def pending_hit_tasks() -> List[asyncio.Task]:
    return list(_pending_hits)


_cache_store_singleton: Optional[CacheStore] = None


def get_cache_store() -> CacheStore:
    global _cache_store_singleton
    if _cache_store_singleton is not None:
        return _cache_store_singleton
    impl = os.getenv("INFLOW_CACHE_STORE_IMPL", "memory").lower()
    if impl == "redis":
        _cache_store_singleton = RedisCacheStore()
        return _cache_store_singleton
    _cache_store_singleton = InMemoryCacheStore()
    return _cache_store_singleton


def reset_cache_store() -> None:
    global _cache_store_singleton
    _cache_store_singleton = None
