"""
Streaming synthesis over the ElevenLabs ``stream-input`` WebSocket.

Lower time-to-first-audio than the per-utterance Speaker: text fragments
are pushed as the model produces them and audio chunks come back while
later text is still being written.

Protocol:
    → {"text": " ", "voice_settings": {...}}          handshake
    → {"text": "...", "try_trigger_generation": true}  text fragment
    → {"text": ""}                                     end of input (flush)
    ← {"audio": "<base64>", "isFinal": false}          repeated
    ← {"audio": null, "isFinal": true}                 generation complete

The Speaker and this transport share the same client audio output; the
caller must stop one before starting the other. There is no reconnect:
after ``on_error`` the caller opens a new stream.
"""

import asyncio
import base64
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Optional, Union
from urllib.parse import quote, urlencode

import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK

from .output import AudioOutput

logger = logging.getLogger(__name__)

DEFAULT_STREAM_MODEL_ID = "eleven_turbo_v2_5"
DEFAULT_STREAM_FORMAT = "mp3_44100_128"
HANDSHAKE_VOICE_SETTINGS = {"stability": 0.5, "similarity_boost": 0.8, "speed": 1.0}

AudioCallback = Callable[[str, bool], Union[None, Awaitable[None]]]
ReadyCallback = Callable[[], Union[None, Awaitable[None]]]
ErrorCallback = Callable[[str], Union[None, Awaitable[None]]]
ConnectFactory = Callable[[str, dict[str, str]], Awaitable[Any]]


def stream_input_url(
    ws_url: str,
    voice_id: str,
    model_id: str = DEFAULT_STREAM_MODEL_ID,
    output_format: str = DEFAULT_STREAM_FORMAT,
) -> str:
    query = urlencode(
        {"model_id": model_id, "output_format": output_format, "auto_mode": "true"}
    )
    return (
        f"{ws_url.rstrip('/')}/text-to-speech/{quote(voice_id, safe='')}"
        f"/stream-input?{query}"
    )


async def _default_connect(url: str, headers: dict[str, str]) -> Any:
    return await websockets.connect(url, additional_headers=headers)


async def connect_upstream(
    api_key: str, url: str, connect: Optional[ConnectFactory] = None
) -> Any:
    """Open the upstream socket with the ``xi-api-key`` header."""
    return await (connect or _default_connect)(url, {"xi-api-key": api_key})


async def _call(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        logger.exception("TTS stream callback failed")


class TTSStream:
    """Handle returned by :func:`open_tts_stream`."""

    def __init__(
        self,
        websocket: Any,
        on_audio: AudioCallback,
        on_ready: Optional[ReadyCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._websocket = websocket
        self._on_audio = on_audio
        self._on_ready = on_ready
        self._on_error = on_error
        self._closed = websocket is None
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        return self._closed

    async def _start(self) -> None:
        await self._websocket.send(
            json.dumps({"text": " ", "voice_settings": HANDSHAKE_VOICE_SETTINGS})
        )
        self._receive_task = asyncio.create_task(self._receive_loop())
        await _call(self._on_ready)

    async def send_text(self, text: str, trigger: bool = True) -> None:
        if self._closed or not text:
            return
        await self._send({"text": text, "try_trigger_generation": trigger})

    async def flush(self) -> None:
        """Signal end of input so any buffered text is generated."""
        if self._closed:
            return
        await self._send({"text": ""})

    async def close(self) -> None:
        self._closed = True
        task, self._receive_task = self._receive_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._websocket is None:
            return
        try:
            await self._websocket.close()
        except Exception as exc:
            logger.debug("Ignoring error while closing TTS stream: %s", exc)

    async def _send(self, frame: dict[str, Any]) -> None:
        try:
            await self._websocket.send(json.dumps(frame))
        except ConnectionClosed as exc:
            self._closed = True
            await _call(self._on_error, f"tts ws closed: {exc}")

    async def _receive_loop(self) -> None:
        try:
            async for message in self._websocket:
                if isinstance(message, bytes):
                    message = message.decode("utf-8", errors="ignore")
                try:
                    frame = json.loads(message)
                except (TypeError, ValueError):
                    continue
                if not isinstance(frame, dict):
                    continue
                if frame.get("type") == "ready":
                    await _call(self._on_ready)
                    continue
                audio = frame.get("audio")
                is_final = bool(frame.get("isFinal"))
                if isinstance(audio, str) or is_final:
                    await _call(self._on_audio, audio or "", is_final)
        except ConnectionClosedOK:
            logger.debug("TTS stream closed by upstream")
        except ConnectionClosed as exc:
            logger.warning("TTS stream dropped: %s", exc)
            await _call(self._on_error, "tts ws error")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("TTS stream receive loop failed")
            await _call(self._on_error, f"tts ws error: {exc}")
        finally:
            self._closed = True


async def open_tts_stream(
    *,
    api_key: str,
    voice_id: str,
    on_audio: AudioCallback,
    on_ready: Optional[ReadyCallback] = None,
    on_error: Optional[ErrorCallback] = None,
    model_id: str = DEFAULT_STREAM_MODEL_ID,
    output_format: str = DEFAULT_STREAM_FORMAT,
    ws_url: str = "wss://api.elevenlabs.io/v1",
    connect: Optional[ConnectFactory] = None,
) -> TTSStream:
    """Open a streaming session.

    Connection failures are reported through ``on_error``; the returned
    stream is then already closed and every send is a no-op.
    """

    url = stream_input_url(ws_url, voice_id, model_id, output_format)
    try:
        websocket = await connect_upstream(api_key, url, connect)
    except Exception as exc:
        logger.warning("Could not open TTS stream for voice %s: %s", voice_id, exc)
        await _call(on_error, f"tts ws error: {exc}")
        return TTSStream(None, on_audio, on_ready, on_error)

    stream = TTSStream(websocket, on_audio, on_ready, on_error)
    try:
        await stream._start()
    except ConnectionClosed as exc:
        await _call(on_error, f"tts ws error: {exc}")
        await stream.close()
        return stream
    logger.info("Opened TTS stream (voice=%s, model=%s)", voice_id, model_id)
    return stream


class IncrementalAudioPlayer:
    """Append decoded stream chunks to an AudioOutput as they arrive."""

    def __init__(self, output: AudioOutput) -> None:
        self._output = output
        self._started = False
        self._pending: list[bytes] = []

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, mime: str = "audio/mpeg") -> None:
        await self._output.begin(mime)
        self._started = True
        pending, self._pending = self._pending, []
        for chunk in pending:
            await self._output.write(chunk)

    async def push_base64(self, b64: str) -> None:
        if not b64:
            return
        chunk = base64.b64decode(b64)
        if not self._started:
            self._pending.append(chunk)
            return
        await self._output.write(chunk)

    async def finish(self) -> None:
        if self._started:
            self._started = False
            await self._output.end()

    def stop(self) -> None:
        self._pending = []
        self._started = False
        self._output.stop()


__all__ = [
    "IncrementalAudioPlayer",
    "TTSStream",
    "connect_upstream",
    "open_tts_stream",
    "stream_input_url",
]
