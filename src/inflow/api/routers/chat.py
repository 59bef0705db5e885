from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from starlette.responses import StreamingResponse

from ...domain.chat_models import ErrorResponse
from ...security.auth import User
from ...security.rbac import Permission, require_permission
from ...services.chat_gateway import ChatGateway, get_chat_gateway

router = APIRouter(tags=["chat"])

_ERRORS = {code: {"model": ErrorResponse} for code in (400, 401, 402, 403, 429, 500, 503)}


@router.post("/chat", response_class=StreamingResponse, responses=_ERRORS)
async def chat(
    request: Request,
    user: User = Depends(require_permission(Permission.CHAT)),
    gateway: ChatGateway = Depends(get_chat_gateway),
    x_request_id: Optional[str] = Header(default=None),
) -> StreamingResponse:
    """Stream an assistant reply as ``text/event-stream``.

    The body is read raw; malformed JSON is reported after the rate limit and
    credit checks.
    """
    return await gateway.handle(user, await request.body(), x_request_id)
