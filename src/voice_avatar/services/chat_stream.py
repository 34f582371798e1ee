"""Consumer for the ``/api/chat/stream`` server-sent event endpoint."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncGenerator, Iterable, Optional

import httpx

from .chat_model import (
    ChatEvent,
    ChatModelError,
    ChatStreamError,
    DoneEvent,
    TokenEvent,
    iter_sse_events,
)
from .prompt import sanitize_messages

logger = logging.getLogger(__name__)


class ChatStreamClient:
    """Stream ``token`` frames and the terminal ``done`` frame from a server.

    Frames with unknown event names or undecodable data are skipped. A
    connection that closes before ``done`` raises ``ChatStreamError``.
    """

    def __init__(
        self,
        url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ):
        self._url = url
        self._client = client
        self._timeout = timeout

    async def stream_reply(
        self,
        messages: Iterable[Any],
        *,
        temperature: Optional[float] = None,
        casualness: Optional[str] = None,
    ) -> AsyncGenerator[ChatEvent, None]:
        payload: dict[str, Any] = {"messages": sanitize_messages(messages)}
        if temperature is not None:
            payload["temperature"] = temperature
        if casualness is not None:
            payload["casualness"] = casualness

        client = self._client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._client is None
        parts: list[str] = []
        try:
            async with client.stream(
                "POST",
                self._url,
                json=payload,
                headers={"Accept": "text/event-stream"},
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise ChatModelError(
                        response.status_code, body.decode("utf-8", errors="ignore")
                    )

                async for event in iter_sse_events(response.aiter_lines()):
                    try:
                        data = json.loads(event.data)
                    except json.JSONDecodeError:
                        logger.debug("Skipping malformed %s frame", event.event)
                        continue
                    if not isinstance(data, dict):
                        continue

                    if event.event == "token":
                        text = data.get("text")
                        if isinstance(text, str) and text:
                            parts.append(text)
                            yield TokenEvent(text)
                    elif event.event == "done":
                        raw = data.get("raw")
                        yield DoneEvent(
                            text="".join(parts),
                            raw=raw if isinstance(raw, dict) else {},
                        )
                        return
        except httpx.HTTPError as exc:
            raise ChatModelError(502, str(exc)) from exc
        finally:
            if owns_client:
                await client.aclose()

        raise ChatStreamError("disconnected")


__all__ = ["ChatStreamClient"]
