import asyncio
import json

import pytest

from src.inflow.infrastructure import cache_store
from src.inflow.infrastructure.cache_store import (
    InMemoryCacheStore,
    RedisCacheStore,
    compute_prompt_hash,
    schedule_hit,
)

MESSAGES = [{"role": "user", "content": "Hello"}]


class FakeClock:
    def __init__(self, now: float = 1_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_prompt_hash_is_deterministic_and_order_sensitive():
    first = compute_prompt_hash("sys", MESSAGES, "m")
    assert first == compute_prompt_hash("sys", [{"content": "Hello", "role": "user"}], "m")
    assert len(first) == 64
    swapped = [{"role": "user", "content": "b"}, {"role": "assistant", "content": "a"}]
    ordered = [{"role": "assistant", "content": "a"}, {"role": "user", "content": "b"}]
    assert compute_prompt_hash("sys", swapped, "m") != compute_prompt_hash("sys", ordered, "m")
    assert compute_prompt_hash("sys", MESSAGES, "other") != first


def test_put_is_insert_or_ignore():
    store = InMemoryCacheStore(clock=FakeClock())
    assert store.put("h", "first", "m", "v2.0", 60) is True
    assert store.put("h", "second", "m", "v2.0", 60) is False
    assert store.get("h").response == "first"


def test_expired_entries_are_never_returned():
    clock = FakeClock()
    store = InMemoryCacheStore(clock=clock)
    store.put("h", "body", "m", "v2.0", 60)
    clock.now += 59
    assert store.get("h") is not None
    clock.now += 1
    assert store.get("h") is None
    assert store.put("h", "fresh", "m", "v2.0", 60) is True


def test_record_hit_counts():
    store = InMemoryCacheStore(clock=FakeClock())
    store.put("h", "body", "m", "v2.0", 60)
    store.record_hit("h")
    store.record_hit("h")
    store.record_hit("missing")
    entry = store.get("h")
    assert entry.hit_count == 2
    assert entry.last_hit_at == 1_000.0


def test_schedule_hit_inside_event_loop():
    store = InMemoryCacheStore(clock=FakeClock())
    store.put("h", "body", "m", "v2.0", 60)

    async def run():
        schedule_hit(store, "h")
        await asyncio.gather(*cache_store.pending_hit_tasks())

    asyncio.run(run())
    assert store.get("h").hit_count == 1


def test_schedule_hit_failure_is_swallowed():
    class Broken:
        def record_hit(self, prompt_hash):
            raise RuntimeError("boom")

    schedule_hit(Broken(), "h")


class FakePipeline:
    def __init__(self, client):
        self.client = client
        self.ops = []

    def hincrby(self, key, field, amount):
        self.ops.append(("hincrby", key, field, amount))

    def hset(self, key, field, value):
        self.ops.append(("hset", key, field, value))

    def expire(self, key, ttl):
        self.ops.append(("expire", key, ttl))

    def execute(self):
        for op in self.ops:
            if op[0] == "hincrby":
                h = self.client.hashes.setdefault(op[1], {})
                h[op[2]] = int(h.get(op[2], 0)) + op[3]
            elif op[0] == "hset":
                self.client.hashes.setdefault(op[1], {})[op[2]] = op[3]


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.hashes = {}
        self.set_calls = []

    def get(self, key):
        return self.values.get(key)

    def set(self, key, value, nx=False, ex=None):
        self.set_calls.append((key, nx, ex))
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def ttl(self, key):
        return 3600 if key in self.values else -2

    def pipeline(self):
        return FakePipeline(self)


def test_redis_store_uses_set_nx_with_ttl():
    client = FakeRedis()
    store = RedisCacheStore(client=client, prefix="t")
    assert store.put("abc", "body", "m", "v2.0", 3600) is True
    assert store.put("abc", "other", "m", "v2.0", 3600) is False
    assert client.set_calls[0] == ("t:abc", True, 3600)
    assert json.loads(client.values["t:abc"])["response"] == "body"

    store.record_hit("abc")
    entry = store.get("abc")
    assert entry.response == "body"
    assert entry.hit_count == 1
    assert entry.last_hit_at is not None


def test_redis_store_miss():
    store = RedisCacheStore(client=FakeRedis())
    assert store.get("nope") is None


def test_get_cache_store_selects_redis(monkeypatch):
    monkeypatch.setenv("INFLOW_CACHE_STORE_IMPL", "redis")
    monkeypatch.setattr(cache_store.redis.Redis, "from_url", lambda *a, **k: FakeRedis())
    assert isinstance(cache_store.get_cache_store(), RedisCacheStore)


def test_get_cache_store_defaults_to_memory():
    assert isinstance(cache_store.get_cache_store(), InMemoryCacheStore)
    assert cache_store.get_cache_store() is cache_store.get_cache_store()
