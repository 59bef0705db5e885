from __future__ import annotations

import logging
import os
import uuid
from datetime import UTC, datetime
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol, Tuple

from pymongo import ASCENDING, MongoClient

from ..domain.artifact_models import Artifact, ArtifactType, ArtifactVersion

_logger = logging.getLogger("inflow.store")


class ArtifactNotFoundError(Exception):
    def __init__(self, project_id: str, artifact_type: ArtifactType, version: Optional[int] = None) -> None:
        what = f"{artifact_type.value} v{version}" if version is not None else artifact_type.value
        super().__init__(f"Artifact {what} not found for project {project_id}")
        self.project_id = project_id
        self.artifact_type = artifact_type
        self.version = version


class ArtifactStore(Protocol):
    def list_artifacts(self, project_id: str) -> List[Artifact]: ...
    def get_artifact(self, project_id: str, artifact_type: ArtifactType) -> Optional[Artifact]: ...
    def upsert_artifact(self, artifact: Artifact) -> Artifact: ...
    def insert_version(self, version: ArtifactVersion) -> ArtifactVersion: ...
    def list_versions(self, artifact_id: str) -> List[ArtifactVersion]: ...
    def get_version(self, artifact_id: str, version: int) -> Optional[ArtifactVersion]: ...


def _utc_now() -> datetime:
    return datetime.now(UTC)


def _ensure_utc(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
    return _utc_now()


def new_artifact(project_id: str, artifact_type: ArtifactType, content: str, title: Optional[str] = None) -> Artifact:
    now = _utc_now()
    return Artifact(
        id=str(uuid.uuid4()),
        project_id=project_id,
        artifact_type=artifact_type,
        title=title,
        content=content,
        status="draft",
        version=1,
        created_at=now,
        updated_at=now,
    )


class InMemoryArtifactStore:
    def __init__(self) -> None:
        self._artifacts: Dict[Tuple[str, ArtifactType], Artifact] = {}
        self._versions: Dict[str, List[ArtifactVersion]] = {}
        self._lock = RLock()

    def list_artifacts(self, project_id: str) -> List[Artifact]:
        with self._lock:
            return [a.model_copy() for (pid, _), a in self._artifacts.items() if pid == project_id]

    def get_artifact(self, project_id: str, artifact_type: ArtifactType) -> Optional[Artifact]:
        with self._lock:
            found = self._artifacts.get((project_id, artifact_type))
            return found.model_copy() if found else None

    def upsert_artifact(self, artifact: Artifact) -> Artifact:
        """Replace the row for ``(project_id, artifact_type)``, keeping the original id."""
        with self._lock:
            key = (artifact.project_id, artifact.artifact_type)
            existing = self._artifacts.get(key)
            stored = artifact.model_copy()
            if existing is not None:
                stored.id = existing.id
                stored.created_at = existing.created_at
            self._artifacts[key] = stored
            return stored.model_copy()

    def insert_version(self, version: ArtifactVersion) -> ArtifactVersion:
        with self._lock:
            self._versions.setdefault(version.artifact_id, []).append(version.model_copy())
            return version

    def list_versions(self, artifact_id: str) -> List[ArtifactVersion]:
        with self._lock:
            return sorted(self._versions.get(artifact_id, []), key=lambda v: (v.version, v.created_at))

    def get_version(self, artifact_id: str, version: int) -> Optional[ArtifactVersion]:
        # Several snapshots may share a version number; the latest one wins
        matches = [v for v in self.list_versions(artifact_id) if v.version == version]
        return matches[-1] if matches else None


class MongoArtifactStore:
    """Mongo-backed artifact store.

    ``artifacts`` has a unique ``(project_id, artifact_type)`` index and is the
    upsert target; ``artifact_versions`` is append-only. Falls back to an
    internal in-memory store when Mongo is unreachable, unless
    INFLOW_ARTIFACT_STORE_REQUIRE_MONGO is set.
    """

    def __init__(self, client: Optional[MongoClient] = None) -> None:
        self._fallback = InMemoryArtifactStore()
        self._client = None
        self._artifacts = None
        self._versions = None
        try:
            mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
            mongo_db = os.getenv("MONGO_DB", "inflow")
            self._client = client or MongoClient(mongo_url, serverSelectionTimeoutMS=500)
            self._client.server_info()
            db = self._client[mongo_db]
            self._artifacts = db["artifacts"]
            self._versions = db["artifact_versions"]
            self._artifacts.create_index([("project_id", ASCENDING), ("artifact_type", ASCENDING)], unique=True)
            self._versions.create_index([("artifact_id", ASCENDING), ("version", ASCENDING)])
        except Exception as exc:
            _logger.warning("artifact_store_mongo_unavailable", extra={"error": str(exc)})
            self._client = None
            self._artifacts = None
            self._versions = None

    def _use_fallback(self) -> bool:
        if self._client is None or self._artifacts is None or self._versions is None:
            if os.getenv("INFLOW_ARTIFACT_STORE_REQUIRE_MONGO", "false").lower() in ("1", "true", "yes"):
                raise RuntimeError("Mongo artifact store required but not available")
            return True
        return False

    @staticmethod
    def _to_artifact(doc: Dict[str, Any]) -> Artifact:
        data = {k: v for k, v in doc.items() if k != "_id"}
        for key in ("created_at", "updated_at"):
            data[key] = _ensure_utc(data.get(key))
        if data.get("approved_at") is not None:
            data["approved_at"] = _ensure_utc(data["approved_at"])
        return Artifact.model_validate(data)

    @staticmethod
    def _to_version(doc: Dict[str, Any]) -> ArtifactVersion:
        data = {k: v for k, v in doc.items() if k != "_id"}
        data["created_at"] = _ensure_utc(data.get("created_at"))
        return ArtifactVersion.model_validate(data)

    def list_artifacts(self, project_id: str) -> List[Artifact]:
        if self._use_fallback():
            return self._fallback.list_artifacts(project_id)
        return [self._to_artifact(d) for d in self._artifacts.find({"project_id": project_id})]  # type: ignore[union-attr]

    def get_artifact(self, project_id: str, artifact_type: ArtifactType) -> Optional[Artifact]:
        if self._use_fallback():
            return self._fallback.get_artifact(project_id, artifact_type)
        doc = self._artifacts.find_one({"project_id": project_id, "artifact_type": artifact_type.value})  # type: ignore[union-attr]
        return self._to_artifact(doc) if doc else None

    def upsert_artifact(self, artifact: Artifact) -> Artifact:
        if self._use_fallback():
            return self._fallback.upsert_artifact(artifact)
        doc = artifact.model_dump(mode="python")
        doc["artifact_type"] = artifact.artifact_type.value
        key = {"project_id": artifact.project_id, "artifact_type": artifact.artifact_type.value}
        immutable = {"id": doc.pop("id"), "created_at": doc.pop("created_at")}
        self._artifacts.update_one(key, {"$set": doc, "$setOnInsert": immutable}, upsert=True)  # type: ignore[union-attr]
        return self._to_artifact(self._artifacts.find_one(key))  # type: ignore[union-attr]

    def insert_version(self, version: ArtifactVersion) -> ArtifactVersion:
        if self._use_fallback():
            return self._fallback.insert_version(version)
        doc = version.model_dump(mode="python")
        doc["artifact_type"] = version.artifact_type.value
        self._versions.insert_one(doc)  # type: ignore[union-attr]
        return version

    def list_versions(self, artifact_id: str) -> List[ArtifactVersion]:
        if self._use_fallback():
            return self._fallback.list_versions(artifact_id)
        cursor = self._versions.find({"artifact_id": artifact_id}).sort("version", 1)  # type: ignore[union-attr]
        return [self._to_version(d) for d in cursor]

    def get_version(self, artifact_id: str, version: int) -> Optional[ArtifactVersion]:
        if self._use_fallback():
            return self._fallback.get_version(artifact_id, version)
        matches = [v for v in self.list_versions(artifact_id) if v.version == version]
        return matches[-1] if matches else None


_artifact_store_singleton: Optional[ArtifactStore] = None


def get_artifact_store() -> ArtifactStore:
    global _artifact_store_singleton
    if _artifact_store_singleton is not None:
        return _artifact_store_singleton
    impl = os.getenv("INFLOW_ARTIFACT_STORE_IMPL", "memory").lower()
    if impl == "mongo":
        _artifact_store_singleton = MongoArtifactStore()
        return _artifact_store_singleton
    _artifact_store_singleton = InMemoryArtifactStore()
    return _artifact_store_singleton


def reset_artifact_store() -> None:
    global _artifact_store_singleton
    _artifact_store_singleton = None
