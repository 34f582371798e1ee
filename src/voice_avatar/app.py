"""Application factory for the FastAPI service."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import PROJECT_ROOT, Settings, get_settings
from .logging_settings import apply_subsystem_levels, parse_logging_settings
from .repository import ConversationRepository
from .routers.chat import router as chat_router
from .routers.settings import router as settings_router
from .routers.tts import router as tts_router
from .routers.voice import router as voice_router
from .services.chat_model import ChatModelClient
from .services.tts.cache import AudioCache
from .services.tts.output import ClientSpeechFallback, WebSocketAudioOutput
from .services.tts.speaker import Speaker
from .services.tts.stream_transport import IncrementalAudioPlayer, TTSStream, open_tts_stream
from .services.tts.synthesis import ElevenLabsSynthesizer
from .services.turn_coordinator import TurnCoordinator
from .services.usage import UsageTracker
from .services.voice_session import VoiceConnectionManager, bind_speaker_events
from .services.voice_settings import VoiceSettingsService

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _configure_logging(logging_settings_path: Optional[Path] = None) -> None:
    """Configure logging from LOG_LEVEL/LOG_FILE and the logging settings file."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    file_settings = None
    if logging_settings_path is not None and logging_settings_path.exists():
        file_settings = parse_logging_settings(logging_settings_path)
        if file_settings.terminal_level is not None:
            log_level = file_settings.terminal_level

    log_file = os.getenv("LOG_FILE")
    handlers: list[logging.Handler] = []

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        handlers.append(file_handler)

    # Always add console handler
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    handlers.append(console_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers,
        force=True,  # Override any existing configuration
    )

    logging.getLogger("voice_avatar").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
        logging.getLogger("websockets").setLevel(logging.WARNING)

    if file_settings is not None:
        apply_subsystem_levels(file_settings)


def _resolve(path: Path) -> Path:
    # Absolute paths are used as-is (tests and external mounts).
    if path.is_absolute():
        return path
    return (PROJECT_ROOT / path).resolve()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    _configure_logging(_resolve(settings.logging_settings_path))

    voice_settings_service = VoiceSettingsService(
        _resolve(settings.voice_settings_path), settings.default_voice_id
    )
    voice_settings = voice_settings_service.get_settings()

    repository = ConversationRepository(_resolve(settings.conversation_db_path))
    cache = AudioCache.from_paths(
        _resolve(settings.audio_cache_db_path),
        _resolve(settings.audio_cache_dir),
        settings.audio_cache_max_entry_bytes,
    )
    usage_tracker = UsageTracker(_resolve(settings.usage_path))
    manager = VoiceConnectionManager()
    output = WebSocketAudioOutput(manager)

    synthesizer = ElevenLabsSynthesizer(settings)
    speaker = Speaker(
        synthesizer,
        output,
        cache=cache,
        usage=usage_tracker,
        fallback=ClientSpeechFallback(manager),
        fallback_enabled=voice_settings.fallback,
        default_voice_id=voice_settings.voice_id,
        max_say_seconds=settings.max_say_seconds,
        chars_per_second=settings.chars_per_second,
    )
    bind_speaker_events(speaker, manager)
    chat_client = ChatModelClient(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await cache.initialize()
        await repository.initialize()
        try:
            yield
        finally:
            app.state.speaker.destroy()
            await manager.close()
            for closer in (
                repository.close,
                cache.close,
                ElevenLabsSynthesizer.close_http_client,
                ChatModelClient.aclose_shared,
            ):
                try:
                    await closer()
                except Exception as exc:
                    logging.warning("Error during shutdown: %s", exc)

    app = FastAPI(
        title="Voice Avatar Backend",
        version="0.1.0",
        description="Conversational voice avatar: streamed chat with synchronized speech.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.voice_settings_service = voice_settings_service
    app.state.repository = repository
    app.state.audio_cache = cache
    app.state.usage_tracker = usage_tracker
    app.state.voice_manager = manager
    app.state.synthesizer = synthesizer
    app.state.speaker = speaker
    app.state.chat_client = chat_client
    # optional override for the upstream websocket connect (tests)
    app.state.tts_stream_connect = None
    app.state.recognizer_factory = _recognizer_factory(settings)

    async def open_stream(voice_id, on_audio, on_error) -> TTSStream:
        api_key = settings.elevenlabs_api_key
        return await open_tts_stream(
            api_key=api_key.get_secret_value() if api_key else "",
            voice_id=voice_id,
            on_audio=on_audio,
            on_error=on_error,
            model_id=settings.elevenlabs_stream_model_id,
            output_format=settings.elevenlabs_output_format,
            ws_url=settings.elevenlabs_ws_url,
            connect=app.state.tts_stream_connect,
        )

    def coordinator_factory(conversation_id: str) -> TurnCoordinator:
        streaming = settings.elevenlabs_api_key is not None
        return TurnCoordinator(
            app.state.chat_client,
            app.state.speaker,
            conversation_id=conversation_id,
            repository=app.state.repository,
            voice_settings=app.state.voice_settings_service.get_settings,
            open_stream=open_stream if streaming else None,
            stream_player=IncrementalAudioPlayer(output),
        )

    app.state.coordinator_factory = coordinator_factory

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)
    app.include_router(tts_router)
    app.include_router(settings_router)
    app.include_router(voice_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, object]:
        return {
            "status": "ok",
            "chat_model": settings.chat_model,
            "tts_available": synthesizer.available,
            "stt_available": app.state.recognizer_factory is not None,
            "clients": len(manager.active_connections),
        }

    return app


def _recognizer_factory(settings: Settings):
    if settings.deepgram_api_key is None:
        return None
    # imported lazily: the SDK is only needed when server-side recognition is on
    from .services.stt.deepgram import DeepgramRecognizer

    api_key = settings.deepgram_api_key.get_secret_value()

    def factory(client_id: str) -> DeepgramRecognizer:
        return DeepgramRecognizer(api_key, session_id=client_id)

    return factory


__all__ = ["create_app"]
