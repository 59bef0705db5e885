from __future__ import annotations

from datetime import UTC, datetime
from threading import RLock
from typing import Dict, Iterable, List, Optional, Protocol
import os
import uuid

from ..domain.chat_models import ChatMessage
from .events import publish_event


class DuplicateMessageError(Exception):
    """A message with this id is already stored."""

    def __init__(self, message_id: str) -> None:
        super().__init__(f"Message {message_id} already exists")
        self.message_id = message_id


class ChatStore(Protocol):
    def insert_message(self, message_id: str, conversation_id: str, role: str, content: str) -> ChatMessage: ...

    def append_message(self, conversation_id: str, role: str, content: str) -> ChatMessage: ...

    def get_message(self, message_id: str) -> Optional[ChatMessage]: ...

    def list_messages(self, conversation_id: str) -> List[ChatMessage]: ...

    def bulk_delete(self, message_ids: Iterable[str]) -> int: ...


def _now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def _announce(message: ChatMessage) -> None:
    publish_event("message.inserted", message.model_dump())


class InMemoryChatStore:
    def __init__(self) -> None:
        self._messages: Dict[str, ChatMessage] = {}
        self._by_conversation: Dict[str, List[str]] = {}
        self._lock = RLock()

    def _next_sequence(self, conversation_id: str) -> int:
        ids = self._by_conversation.get(conversation_id, [])
        return max((self._messages[i].sequence for i in ids), default=0) + 1

    def insert_message(self, message_id: str, conversation_id: str, role: str, content: str) -> ChatMessage:
        """Insert with a caller-chosen id; raises DuplicateMessageError when it exists."""
        with self._lock:
            if message_id in self._messages:
                raise DuplicateMessageError(message_id)
            message = ChatMessage(
                id=message_id,
                conversation_id=conversation_id,
                role=role,
                content=content,
                sequence=self._next_sequence(conversation_id),
                created_at=_now_iso(),
            )
            self._messages[message_id] = message
            self._by_conversation.setdefault(conversation_id, []).append(message_id)
        _announce(message)
        return message

    def append_message(self, conversation_id: str, role: str, content: str) -> ChatMessage:
        return self.insert_message(str(uuid.uuid4()), conversation_id, role, content)

    def get_message(self, message_id: str) -> Optional[ChatMessage]:
        with self._lock:
            return self._messages.get(message_id)

    def list_messages(self, conversation_id: str) -> List[ChatMessage]:
        with self._lock:
            out = [self._messages[i] for i in self._by_conversation.get(conversation_id, [])]
        return sorted(out, key=lambda m: m.sequence)

    def bulk_delete(self, message_ids: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            for mid in message_ids:
                message = self._messages.pop(mid, None)
                if message is None:
                    continue
                self._by_conversation.get(message.conversation_id, []).remove(mid)
                removed += 1
        return removed


_chat_store_singleton: Optional[ChatStore] = None


def get_chat_store() -> ChatStore:
    global _chat_store_singleton
    if _chat_store_singleton is not None:
        return _chat_store_singleton
    impl = os.getenv("INFLOW_CHAT_STORE_IMPL", "memory").lower()
    if impl == "mongo":
        from .chat_store_mongo import MongoChatStore

        _chat_store_singleton = MongoChatStore()
        return _chat_store_singleton
    _chat_store_singleton = InMemoryChatStore()
    return _chat_store_singleton


def reset_chat_store() -> None:
    global _chat_store_singleton
    _chat_store_singleton = None
