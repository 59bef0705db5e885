from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel

Role = Literal["system", "user", "assistant"]
StoredRole = Literal["user", "assistant"]

ALLOWED_ROLES = ("user", "assistant", "system")


class ChatTurn(BaseModel):
    role: Role
    content: str


class ChatRequest(BaseModel):
    messages: List[ChatTurn]
    project_id: Optional[str] = None


class ChatMessage(BaseModel):
    id: str
    conversation_id: str
    role: StoredRole
    content: str
    sequence: int
    created_at: str


class ErrorResponse(BaseModel):
    error: str
