from __future__ import annotations

import json
from typing import Any, Dict, List, Optional, Tuple

from src.inflow.domain.models import Project, ProjectCreate
from src.inflow.infrastructure.repository import get_repo
from src.inflow.security.auth import User, create_access_token, register_user


def auth_headers(
    email: str = "dev@example.com",
    *,
    name: str = "Dev",
    roles: Optional[List[str]] = None,
    tier: str = "free",
) -> Tuple[Dict[str, str], User]:
    """Register a user and return bearer headers for it."""
    user = register_user(email, name, roles=roles, tier=tier)  # type: ignore[arg-type]
    return {"Authorization": f"Bearer {create_access_token(user)}"}, user


def make_project(owner: User, name: str = "Demo") -> Project:
    return get_repo().create(ProjectCreate(name=name), owner_id=owner.id)


def sse_body(*deltas: str, usage: Optional[Dict[str, int]] = None, done: bool = True) -> bytes:
    """Frame ``deltas`` the way an OpenAI-compatible stream does."""
    frames = []
    for delta in deltas:
        frames.append("data: " + json.dumps({"choices": [{"delta": {"content": delta}}]}) + "\n\n")
    if usage is not None:
        frames.append("data: " + json.dumps({"choices": [], "usage": usage}) + "\n\n")
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


def collect_text(body: bytes) -> str:
    """Concatenate the delta content of an SSE body."""
    parts: List[str] = []
    for line in body.decode("utf-8").split("\n"):
        if not line.startswith("data: ") or line == "data: [DONE]":
            continue
        payload: Any = json.loads(line[len("data: ") :])
        for choice in payload.get("choices") or []:
            parts.append((choice.get("delta") or {}).get("content") or "")
    return "".join(parts)


ENVELOPE_TEXT = json.dumps(
    {
        "message": "Here is the Phase 1 contract draft.",
        "artifact": {
            "type": "phase_1_contract",
            "title": "Phase 1 Contract",
            "content": "# Contract\nGoals, scope and stakeholders for the programme.",
            "status": "draft",
        },
        "state": {"mode": "STANDARD", "pipeline_stage": "phase_1_contract"},
    }
)


class _Cursor:
    def __init__(self, docs):
        self._docs = list(docs)

    def sort(self, field, direction=1):
        self._docs.sort(key=lambda d: d.get(field, 0), reverse=direction == -1)
        return self

    def __iter__(self):
        return iter(self._docs)


class FakeCollection:
    """Just enough of a pymongo collection for the stores under test."""

    def __init__(self):
        self.docs: List[Dict[str, Any]] = []
        self.unique_fields: List[str] = []

    def create_index(self, keys, unique=False, **kwargs):
        if unique and isinstance(keys, str):
            self.unique_fields.append(keys)
        return "ok"

    @staticmethod
    def _match(doc, query):
        for key, cond in query.items():
            if isinstance(cond, dict) and "$in" in cond:
                if doc.get(key) not in cond["$in"]:
                    return False
            elif doc.get(key) != cond:
                return False
        return True

    def find(self, query=None):
        query = query or {}
        return _Cursor(dict(d) for d in self.docs if self._match(d, query))

    def find_one(self, query, sort=None):
        cursor = self.find(query)
        if sort:
            field, direction = sort[0]
            cursor = cursor.sort(field, direction)
        for doc in cursor:
            return doc
        return None

    def insert_one(self, doc):
        from pymongo.errors import DuplicateKeyError

        for field in self.unique_fields:
            if any(d.get(field) == doc.get(field) for d in self.docs):
                raise DuplicateKeyError(f"duplicate {field}")
        self.docs.append(dict(doc))

    def update_one(self, query, update, upsert=False):
        for doc in self.docs:
            if self._match(doc, query):
                doc.update(update.get("$set", {}))
                return
        if upsert:
            doc = dict(query)
            doc.update(update.get("$setOnInsert", {}))
            doc.update(update.get("$set", {}))
            self.docs.append(doc)

    def delete_many(self, query):
        before = len(self.docs)
        self.docs = [d for d in self.docs if not self._match(d, query)]
        return _DeleteResult(before - len(self.docs))


class _DeleteResult:
    def __init__(self, deleted_count: int) -> None:
        self.deleted_count = deleted_count


class FakeMongoClient:
    def __init__(self, reachable: bool = True):
        self.reachable = reachable
        self._dbs: Dict[str, Dict[str, FakeCollection]] = {}

    def server_info(self):
        if not self.reachable:
            raise RuntimeError("server selection timeout")
        return {}

    def __getitem__(self, name):
        return _FakeDB(self._dbs.setdefault(name, {}))


class _FakeDB:
    def __init__(self, cols):
        self.cols = cols

    def __getitem__(self, name):
        return self.cols.setdefault(name, FakeCollection())
