"""OpenAI-compatible streaming chat completions client."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Iterable, Optional, Union

import httpx
from fastapi import status

from ..config import Settings
from .prompt import REPLY_SCHEMA, build_messages
from .reply_parser import ParsedReply, parse_reply

logger = logging.getLogger(__name__)


class ChatModelError(Exception):
    """Wrap transport or API failures when communicating with the model."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail


class ChatStreamError(Exception):
    """The stream ended before its terminal frame."""


@dataclass
class ServerSentEvent:
    """Represents a parsed Server-Sent Event."""

    data: str
    event: str = "message"
    event_id: Optional[str] = None


@dataclass(frozen=True)
class TokenEvent:
    text: str


@dataclass(frozen=True)
class DoneEvent:
    text: str
    raw: dict[str, Any] = field(default_factory=dict)


ChatEvent = Union[TokenEvent, DoneEvent]


def finalize_raw(full_text: str) -> dict[str, Any]:
    """Build the ``{say, show}`` payload for a finished completion."""

    reply = parse_reply(full_text)
    payload: dict[str, Any] = {"say": reply.say, "show": reply.show}
    if not isinstance(reply, ParsedReply):
        payload["fallback"] = True
    return payload


async def iter_sse_events(
    lines: AsyncGenerator[str, None],
) -> AsyncGenerator[ServerSentEvent, None]:
    """Group raw lines into events; comment lines are dropped."""

    buffer: list[str] = []
    async for line in lines:
        if not line:
            if buffer:
                yield parse_sse_event(buffer)
                buffer.clear()
            continue
        if line.startswith(":"):
            continue
        buffer.append(line)
    if buffer:
        yield parse_sse_event(buffer)


def parse_sse_event(lines: Iterable[str]) -> ServerSentEvent:
    event_name: Optional[str] = None
    event_id: Optional[str] = None
    data_lines: list[str] = []

    for line in lines:
        field_name, _, value = line.partition(":")
        value = value.lstrip(" ")
        if field_name == "event":
            event_name = value or None
        elif field_name == "data":
            data_lines.append(value)
        elif field_name == "id":
            event_id = value or None

    data = "\n".join(data_lines)
    return ServerSentEvent(data=data, event=event_name or "message", event_id=event_id)


class ChatModelClient:
    """Client responsible for streaming chat completions."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(self, settings: Settings, *, client: Optional[httpx.AsyncClient] = None):
        self._settings = settings
        self._client = client

    @property
    def _base_url(self) -> str:
        return str(self._settings.openai_base_url).rstrip("/")

    @property
    def _headers(self) -> dict[str, str]:
        api_key = self._settings.openai_api_key
        if api_key is None:
            raise ChatModelError(status.HTTP_502_BAD_GATEWAY, "Missing OPENAI_API_KEY")
        return {
            "Authorization": f"Bearer {api_key.get_secret_value()}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client

        key = (self._base_url, float(self._settings.request_timeout))
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(max_connections=50, max_keepalive_connections=20)
                client = httpx.AsyncClient(timeout=timeout, limits=limits, http2=True)
                self.__class__._client_pool[key] = client
        return client

    def build_payload(
        self,
        messages: Iterable[Any],
        *,
        temperature: Optional[float] = None,
        casualness: Optional[str] = None,
    ) -> dict[str, Any]:
        return {
            "model": self._settings.chat_model,
            "stream": True,
            "temperature": (
                self._settings.chat_temperature if temperature is None else temperature
            ),
            "max_tokens": self._settings.chat_max_tokens,
            "response_format": REPLY_SCHEMA,
            "messages": build_messages(messages, casualness),
        }

    async def stream_reply(
        self,
        messages: Iterable[Any],
        *,
        temperature: Optional[float] = None,
        casualness: Optional[str] = None,
    ) -> AsyncGenerator[ChatEvent, None]:
        """Yield ``TokenEvent`` per content delta, then one ``DoneEvent``."""

        payload = self.build_payload(
            messages, temperature=temperature, casualness=casualness
        )
        url = f"{self._base_url}/chat/completions"
        headers = self._headers
        client = await self._get_http_client()

        full_text: list[str] = []
        try:
            async with client.stream("POST", url, headers=headers, json=payload) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    raise ChatModelError(
                        response.status_code, self._extract_error_detail(body)
                    )

                async for event in iter_sse_events(response.aiter_lines()):
                    if event.data == "[DONE]":
                        text = "".join(full_text)
                        logger.debug("Completion finished (%d chars)", len(text))
                        yield DoneEvent(text=text, raw=finalize_raw(text))
                        return
                    try:
                        chunk = json.loads(event.data)
                        token = chunk["choices"][0]["delta"].get("content")
                    except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError):
                        continue  # malformed frame
                    if isinstance(token, str) and token:
                        full_text.append(token)
                        yield TokenEvent(token)
        except httpx.HTTPError as exc:
            raise ChatModelError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

        raise ChatStreamError("disconnected")

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception:  # pragma: no cover - best effort cleanup
                pass

    @staticmethod
    def _extract_error_detail(raw: bytes) -> Any:
        if not raw:
            return "Model endpoint returned an empty error response."
        text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(payload, dict):
            return payload.get("error") or payload
        return payload


__all__ = [
    "ChatEvent",
    "ChatModelClient",
    "ChatModelError",
    "ChatStreamError",
    "DoneEvent",
    "ServerSentEvent",
    "TokenEvent",
    "finalize_raw",
    "iter_sse_events",
    "parse_sse_event",
]
