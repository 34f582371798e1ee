"""
Audio sinks for the playback engine.

The server never touches a sound card: "playing" an utterance means
streaming its bytes to the connected browser/kiosk, which appends them to
its media buffer. Frames sent to clients:

    {"type": "tts_audio_start", "content_type": ..., "sample_rate": ...}
    {"type": "tts_audio_chunk", "data": <base64>, "chunk_index": n, "is_last": false}
    {"type": "tts_audio_end"}
    {"type": "interrupt_tts"}                       # hard stop, drop buffers
    {"type": "speak_fallback", "text": ...}         # use on-device voice
    {"type": "cancel_fallback"}
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 130
MAX_FALLBACK_SECONDS = 15.0

_RATE_RE = re.compile(r"rate=(\d+)")


class AudioOutputError(RuntimeError):
    """The sink refused playback (no listener connected, socket closed)."""


class Broadcaster(Protocol):
    @property
    def has_listeners(self) -> bool: ...

    async def broadcast(self, message: dict[str, Any]) -> None: ...


class AudioOutput(Protocol):
    async def begin(self, content_type: str) -> None: ...

    async def write(self, chunk: bytes) -> None: ...

    async def end(self) -> None: ...

    def stop(self) -> None: ...


class FallbackSynthesizer(Protocol):
    async def speak(self, text: str) -> None: ...

    def cancel(self) -> None: ...


def sample_rate_from_content_type(content_type: str) -> Optional[int]:
    match = _RATE_RE.search(content_type or "")
    return int(match.group(1)) if match else None


def estimate_speech_seconds(text: str) -> float:
    words = len((text or "").split())
    return min(MAX_FALLBACK_SECONDS, max(0.5, words * 60 / WORDS_PER_MINUTE))


def _schedule(coro) -> None:
    # stop()/cancel() are synchronous; the notification goes out on the next loop turn
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        coro.close()
        return
    loop.create_task(coro)


class WebSocketAudioOutput:
    """Stream audio frames to every connected voice client."""

    def __init__(self, manager: Broadcaster) -> None:
        self._manager = manager
        self._chunk_index = 0
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    async def begin(self, content_type: str) -> None:
        if not self._manager.has_listeners:
            raise AudioOutputError("no client connected for playback")
        self._chunk_index = 0
        self._active = True
        await self._manager.broadcast(
            {
                "type": "tts_audio_start",
                "content_type": content_type,
                "sample_rate": sample_rate_from_content_type(content_type),
            }
        )

    async def write(self, chunk: bytes) -> None:
        if not self._active or not chunk:
            return
        await self._manager.broadcast(
            {
                "type": "tts_audio_chunk",
                "data": base64.b64encode(chunk).decode("utf-8"),
                "chunk_index": self._chunk_index,
                "is_last": False,
            }
        )
        self._chunk_index += 1

    async def end(self) -> None:
        if not self._active:
            return
        self._active = False
        await self._manager.broadcast({"type": "tts_audio_end"})

    def stop(self) -> None:
        was_active = self._active
        self._active = False
        if was_active:
            logger.debug("Interrupting client playback")
            _schedule(self._manager.broadcast({"type": "interrupt_tts"}))


class ClientSpeechFallback:
    """Ask the client to speak ``text`` with its own on-device voice.

    The client does not report completion, so ``speak`` waits for the
    estimated speaking time at 130 words per minute.
    """

    def __init__(self, manager: Broadcaster) -> None:
        self._manager = manager
        self._speaking = False

    async def speak(self, text: str) -> None:
        if not text.strip():
            return
        if not self._manager.has_listeners:
            logger.info("No client connected; dropping fallback speech")
            return
        self._speaking = True
        try:
            await self._manager.broadcast({"type": "speak_fallback", "text": text})
            await asyncio.sleep(estimate_speech_seconds(text))
        finally:
            self._speaking = False

    def cancel(self) -> None:
        if self._speaking:
            self._speaking = False
            _schedule(self._manager.broadcast({"type": "cancel_fallback"}))


__all__ = [
    "AudioOutput",
    "AudioOutputError",
    "Broadcaster",
    "ClientSpeechFallback",
    "FallbackSynthesizer",
    "WebSocketAudioOutput",
    "estimate_speech_seconds",
    "sample_rate_from_content_type",
]
