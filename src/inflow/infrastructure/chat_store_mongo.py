from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional
import logging
import os
import uuid

from pymongo import ASCENDING, MongoClient
from pymongo.errors import DuplicateKeyError

from ..domain.chat_models import ChatMessage
from .chat_store import DuplicateMessageError, InMemoryChatStore, _announce, _now_iso

_logger = logging.getLogger("inflow.store")


class MongoChatStore:
    """Mongo-backed message store.

    A unique index on ``id`` makes client-generated ids idempotency keys. If
    Mongo is unreachable at start-up the store serves from memory instead.
    """

    def __init__(self, client: Optional[MongoClient] = None) -> None:
        self._fallback = InMemoryChatStore()
        self._client = None
        self._messages = None
        try:
            mongo_url = os.getenv("MONGO_URL", "mongodb://localhost:27017")
            mongo_db = os.getenv("MONGO_DB", "inflow")
            self._client = client or MongoClient(mongo_url, serverSelectionTimeoutMS=500)
            self._client.server_info()
            self._messages = self._client[mongo_db]["chat_messages"]
            self._messages.create_index("id", unique=True)
            self._messages.create_index([("conversation_id", ASCENDING), ("sequence", ASCENDING)])
        except Exception as exc:
            _logger.warning("chat_store_mongo_unavailable", extra={"error": str(exc)})
            self._client = None
            self._messages = None

    def _use_fallback(self) -> bool:
        return self._client is None or self._messages is None

    @staticmethod
    def _to_message(doc: Dict[str, Any]) -> ChatMessage:
        return ChatMessage(
            id=doc["id"],
            conversation_id=doc["conversation_id"],
            role=doc["role"],
            content=doc["content"],
            sequence=int(doc.get("sequence", 0)),
            created_at=doc.get("created_at") or _now_iso(),
        )

    def _next_sequence(self, conversation_id: str) -> int:
        last = self._messages.find_one(  # type: ignore[union-attr]
            {"conversation_id": conversation_id}, sort=[("sequence", -1)]
        )
        return int(last.get("sequence", 0)) + 1 if last else 1

    def insert_message(self, message_id: str, conversation_id: str, role: str, content: str) -> ChatMessage:
        if self._use_fallback():
            return self._fallback.insert_message(message_id, conversation_id, role, content)
        doc = {
            "id": message_id,
            "conversation_id": conversation_id,
            "role": role,
            "content": content,
            "sequence": self._next_sequence(conversation_id),
            "created_at": _now_iso(),
        }
        try:
            self._messages.insert_one(dict(doc))  # type: ignore[union-attr]
        except DuplicateKeyError:
            raise DuplicateMessageError(message_id)
        message = self._to_message(doc)
        _announce(message)
        return message

    def append_message(self, conversation_id: str, role: str, content: str) -> ChatMessage:
        return self.insert_message(str(uuid.uuid4()), conversation_id, role, content)

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        if self._use_fallback():
            return self._fallback.get_message(message_id)
        doc = self._messages.find_one({"id": message_id})  # type: ignore[union-attr]
        return self._to_message(doc) if doc else None

    def list_messages(self, conversation_id: str) -> List[ChatMessage]:
        if self._use_fallback():
            return self._fallback.list_messages(conversation_id)
        cursor = self._messages.find({"conversation_id": conversation_id}).sort("sequence", 1)  # type: ignore[union-attr]
        return [self._to_message(doc) for doc in cursor]

    def bulk_delete(self, message_ids: Iterable[str]) -> int:
        ids = list(message_ids)
        if self._use_fallback():
            return self._fallback.bulk_delete(ids)
        result = self._messages.delete_many({"id": {"$in": ids}})  # type: ignore[union-attr]
        return int(result.deleted_count)
