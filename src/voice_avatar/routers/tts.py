"""Speech synthesis routes: one-shot audio and the streaming session proxy."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any

from fastapi import APIRouter, Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, Response
from websockets.exceptions import ConnectionClosed

from ..config import Settings, get_settings
from ..schemas.tts import TTSRequest
from ..services.tts.sayifier import truncate_at_sentence_boundary
from ..services.tts.stream_transport import (
    DEFAULT_STREAM_FORMAT,
    connect_upstream,
    stream_input_url,
)
from ..services.tts.synthesis import ElevenLabsSynthesizer, SynthesisError

router = APIRouter(prefix="/api/tts", tags=["tts"])
logger = logging.getLogger(__name__)


def _app_settings(app: FastAPI) -> Settings:
    settings = getattr(app.state, "settings", None)
    return settings if settings is not None else get_settings()


def get_app_settings(request: Request) -> Settings:
    return _app_settings(request.app)


def get_synthesizer(request: Request) -> ElevenLabsSynthesizer:
    synthesizer = getattr(request.app.state, "synthesizer", None)
    if synthesizer is None:  # pragma: no cover - defensive
        raise RuntimeError("Speech synthesizer is not configured")
    return synthesizer


def _error(status_code: int, code: str) -> JSONResponse:
    return JSONResponse({"error": code}, status_code=status_code)


@router.post("", response_model=None)
async def synthesize_speech(
    payload: TTSRequest,
    settings: Settings = Depends(get_app_settings),
    synthesizer: ElevenLabsSynthesizer = Depends(get_synthesizer),
) -> Response:
    """Return synthesized audio for ``say``."""

    say = payload.say.strip()
    if not say:
        return _error(400, "missing_say")

    if not payload.no_cap:
        say = truncate_at_sentence_boundary(say, settings.max_say_chars)

    voice_id = (payload.voice_id or settings.default_voice_id).strip()
    model_id = (payload.model_id or "").strip() or None

    try:
        result = await synthesizer.synthesize(
            say, voice_id, payload.no_cap, model_id=model_id
        )
    except SynthesisError as exc:
        logger.warning("Synthesis unavailable: %s", exc.detail)
        return _error(exc.status_code, "tts_unavailable")

    if result.status_code in (402, 429):
        return _error(result.status_code, "tts_busy")
    if not result.ok or not result.is_audio or not result.content:
        return _error(502, "tts_unavailable")

    return Response(content=result.content, media_type=result.content_type)


@router.websocket("/stream")
async def stream_speech(websocket: WebSocket) -> None:
    """Bridge a client to the upstream streaming synthesis session.

    Frames are relayed verbatim in both directions; the client receives one
    ``{"type": "ready"}`` frame once the upstream socket is open.
    """

    await websocket.accept()
    settings = _app_settings(websocket.app)
    params = websocket.query_params
    voice_id = params.get("voiceId") or params.get("voice_id")
    if not voice_id:
        await websocket.close(code=1008, reason="missing voiceId")
        return
    if settings.elevenlabs_api_key is None:
        await websocket.close(code=1011, reason="tts_unavailable")
        return

    url = stream_input_url(
        settings.elevenlabs_ws_url,
        voice_id,
        params.get("modelId") or settings.elevenlabs_stream_model_id,
        params.get("format") or DEFAULT_STREAM_FORMAT,
    )
    connect = getattr(websocket.app.state, "tts_stream_connect", None)
    try:
        upstream = await connect_upstream(
            settings.elevenlabs_api_key.get_secret_value(), url, connect
        )
    except Exception as exc:
        logger.warning("Upstream TTS stream failed to open: %s", exc)
        await websocket.close(code=1011, reason="upstream unavailable")
        return

    await websocket.send_json({"type": "ready"})

    async def client_to_upstream() -> None:
        while True:
            message: dict[str, Any] = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                return
            data = message.get("text")
            if data is None and message.get("bytes") is not None:
                data = message["bytes"].decode("utf-8", errors="ignore")
            if data is not None:
                await upstream.send(data)

    async def upstream_to_client() -> None:
        async for data in upstream:
            if isinstance(data, bytes):
                data = data.decode("utf-8", errors="ignore")
            await websocket.send_text(data)

    tasks = [
        asyncio.create_task(client_to_upstream()),
        asyncio.create_task(upstream_to_client()),
    ]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(
                exc, (WebSocketDisconnect, ConnectionClosed)
            ):
                logger.warning("TTS stream proxy stopped: %s", exc)
    finally:
        for task in tasks:
            task.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await task
        with suppress(Exception):
            await upstream.close()
        with suppress(Exception):
            await websocket.close()
        logger.debug("TTS stream proxy closed (voice=%s)", voice_id)
