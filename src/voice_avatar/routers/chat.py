"""Chat streaming API routes."""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Request
from sse_starlette.sse import EventSourceResponse

from ..schemas.chat import ChatStreamRequest
from ..services.chat_model import (
    ChatModelClient,
    ChatModelError,
    ChatStreamError,
    DoneEvent,
    TokenEvent,
)

router = APIRouter(prefix="/api", tags=["chat"])
logger = logging.getLogger(__name__)


def get_chat_client(request: Request) -> ChatModelClient:
    client = getattr(request.app.state, "chat_client", None)
    if client is None:  # pragma: no cover - defensive
        raise RuntimeError("Chat model client is not configured")
    return client


def _frame(event: str, data: dict[str, Any]) -> dict[str, str]:
    return {"event": event, "data": json.dumps(data, ensure_ascii=False)}


@router.post("/chat/stream", response_model=None, status_code=200)
async def stream_chat(payload: ChatStreamRequest, request: Request) -> EventSourceResponse:
    """Stream ``token`` frames followed by exactly one ``done`` frame."""

    client = get_chat_client(request)
    messages = [message.model_dump() for message in payload.messages]

    async def event_publisher():
        try:
            async for event in client.stream_reply(
                messages,
                temperature=payload.temperature,
                casualness=payload.casualness,
            ):
                if isinstance(event, TokenEvent):
                    yield _frame("token", {"text": event.text})
                elif isinstance(event, DoneEvent):
                    yield _frame("done", {"raw": event.raw})
                    return
        except ChatModelError as exc:
            detail = exc.detail if isinstance(exc.detail, str) else json.dumps(exc.detail)
            logger.warning("Chat stream upstream error (%s): %s", exc.status_code, detail)
            yield _frame("done", {"raw": {"error": detail, "status": exc.status_code}})
        except ChatStreamError as exc:
            logger.warning("Chat stream ended early: %s", exc)
            yield _frame("done", {"raw": {"error": str(exc)}})
        except Exception as exc:  # pragma: no cover
            logger.exception("Chat stream failed")
            yield _frame("done", {"raw": {"error": str(exc)}})

    return EventSourceResponse(event_publisher())


__all__ = ["router", "get_chat_client"]
