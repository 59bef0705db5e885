from __future__ import annotations

"""Per-user generation credits.

Free-tier users get a fixed allowance; pro users are unlimited but still
counted. ``check_and_use`` is the single atomic operation: it either consumes
one credit or reports the balance as exhausted.
"""

import os
from dataclasses import dataclass
from threading import RLock
from typing import Dict, Optional, Protocol

import redis

from ..config import FREE_CREDIT_LIMIT, GatewaySettings


@dataclass
class CreditCheck:
    allowed: bool
    used: int
    limit: Optional[int]

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(self.limit - self.used, 0)


class CreditsExhausted(Exception):
    def __init__(self, used: int, limit: int) -> None:
        super().__init__("Credits exhausted")
        self.used = used
        self.limit = limit


class CreditsUnavailable(Exception):
    """The credit ledger could not be reached."""


class CreditLedger(Protocol):
    def check_and_use(self, user_id: str, tier: str = "free") -> CreditCheck: ...


def _limit_for(tier: str, free_limit: int) -> Optional[int]:
    return None if tier == "pro" else free_limit


class InMemoryCreditLedger:
    def __init__(self, free_limit: int = FREE_CREDIT_LIMIT) -> None:
        self.free_limit = free_limit
        self._used: Dict[str, int] = {}
        self._lock = RLock()

    def check_and_use(self, user_id: str, tier: str = "free") -> CreditCheck:
        limit = _limit_for(tier, self.free_limit)
        with self._lock:
            used = self._used.get(user_id, 0)
            if limit is not None and used >= limit:
                return CreditCheck(allowed=False, used=used, limit=limit)
            self._used[user_id] = used + 1
            return CreditCheck(allowed=True, used=used + 1, limit=limit)

    def used(self, user_id: str) -> int:
        with self._lock:
            return self._used.get(user_id, 0)

    def set_used(self, user_id: str, used: int) -> None:
        with self._lock:
            self._used[user_id] = used


class RedisCreditLedger:
    """``INCR`` the usage counter, rolling back with ``DECR`` when over the limit."""

    def __init__(self, client: Optional[redis.Redis] = None, free_limit: int = FREE_CREDIT_LIMIT, prefix: str = "inflow:credits") -> None:
        self._client = client or redis.Redis.from_url(os.getenv("REDIS_URL", "redis://localhost:6379/0"), socket_timeout=0.5)
        self.free_limit = free_limit
        self._prefix = prefix

    def check_and_use(self, user_id: str, tier: str = "free") -> CreditCheck:
        limit = _limit_for(tier, self.free_limit)
        key = f"{self._prefix}:{user_id}"
        try:
            used = int(self._client.incr(key))
            if limit is not None and used > limit:
                self._client.decr(key)
                return CreditCheck(allowed=False, used=used - 1, limit=limit)
        except redis.RedisError as exc:
            raise CreditsUnavailable(str(exc)) from exc
        return CreditCheck(allowed=True, used=used, limit=limit)


def consume_credit(ledger: CreditLedger, user_id: str, tier: str = "free") -> CreditCheck:
    """Use one credit or raise CreditsExhausted / CreditsUnavailable."""
    try:
        check = ledger.check_and_use(user_id, tier)
    except CreditsUnavailable:
        raise
    except Exception as exc:
        raise CreditsUnavailable(str(exc)) from exc
    if not check.allowed:
        raise CreditsExhausted(check.used, check.limit or 0)
    return check


_ledger: Optional[CreditLedger] = None


def build_credit_ledger(settings: GatewaySettings) -> CreditLedger:
    if os.getenv("INFLOW_CREDITS_IMPL", "memory").lower() == "redis":
        return RedisCreditLedger(free_limit=settings.free_credit_limit)
    return InMemoryCreditLedger(free_limit=settings.free_credit_limit)


def get_credit_ledger() -> CreditLedger:
    global _ledger
    if _ledger is None:
        _ledger = build_credit_ledger(GatewaySettings.from_env())
    return _ledger


def reset_credit_ledger() -> None:
    global _ledger
    _ledger = None
