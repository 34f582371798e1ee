"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Language model (OpenAI-compatible chat completions)
    openai_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key"),
    )
    openai_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices("OPENAI_BASE_URL", "openai_base_url"),
    )
    chat_model: str = Field(
        default="gpt-4o-mini",
        validation_alias=AliasChoices("OPENAI_MODEL", "chat_model"),
    )
    chat_temperature: float = Field(
        default=0.7,
        ge=0,
        le=2,
        validation_alias=AliasChoices("CHAT_TEMPERATURE", "chat_temperature"),
    )
    chat_max_tokens: int = Field(
        default=600,
        ge=1,
        validation_alias=AliasChoices("CHAT_MAX_TOKENS", "chat_max_tokens"),
    )
    request_timeout: float = Field(
        default=60.0,
        ge=1,
        validation_alias=AliasChoices("REQUEST_TIMEOUT", "timeout"),
    )

    # ElevenLabs speech synthesis
    elevenlabs_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices(
            "ELEVENLABS_API_KEY", "ELEVEN_API_KEY", "elevenlabs_api_key"
        ),
    )
    elevenlabs_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.elevenlabs.io/v1"),
        validation_alias=AliasChoices("ELEVENLABS_BASE_URL", "elevenlabs_base_url"),
    )
    elevenlabs_ws_url: str = Field(
        default="wss://api.elevenlabs.io/v1",
        validation_alias=AliasChoices("ELEVENLABS_WS_URL", "elevenlabs_ws_url"),
    )
    default_voice_id: str = Field(
        default="1SM7GgM6IMuvQlz2BwM3",
        validation_alias=AliasChoices("DEFAULT_VOICE_ID", "default_voice_id"),
    )
    elevenlabs_model_id: str = Field(
        default="eleven_multilingual_v2",
        validation_alias=AliasChoices("ELEVENLABS_MODEL_ID", "elevenlabs_model_id"),
    )
    elevenlabs_stream_model_id: str = Field(
        default="eleven_turbo_v2_5",
        validation_alias=AliasChoices(
            "ELEVENLABS_STREAM_MODEL_ID", "elevenlabs_stream_model_id"
        ),
    )
    elevenlabs_output_format: str = Field(
        default="mp3_44100_128",
        validation_alias=AliasChoices(
            "ELEVENLABS_OUTPUT_FORMAT", "elevenlabs_output_format"
        ),
    )

    # Spoken length budget
    max_say_seconds: float = Field(
        default=12.0,
        ge=1,
        validation_alias=AliasChoices("MAX_SAY_SECONDS", "max_say_seconds"),
    )
    chars_per_second: int = Field(
        default=200,
        ge=1,
        validation_alias=AliasChoices("CHARS_PER_SECOND", "chars_per_second"),
    )

    # Deepgram (optional, only needed for server-side recognition)
    deepgram_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("DEEPGRAM_API_KEY", "deepgram_api_key"),
    )
    stt_debounce_ms: int = Field(
        default=1200,
        ge=0,
        validation_alias=AliasChoices("STT_DEBOUNCE_MS", "stt_debounce_ms"),
    )

    # Storage
    data_dir: Path = Field(
        default_factory=lambda: Path("data"),
        validation_alias=AliasChoices("DATA_DIR", "data_dir"),
    )
    audio_cache_db_path: Path = Field(
        default_factory=lambda: Path("data/tts_cache.db"),
        validation_alias=AliasChoices("AUDIO_CACHE_DB_PATH", "audio_cache_db_path"),
    )
    audio_cache_dir: Path = Field(
        default_factory=lambda: Path("data/tts_cache"),
        validation_alias=AliasChoices("AUDIO_CACHE_DIR", "audio_cache_dir"),
    )
    audio_cache_max_entry_bytes: int = Field(
        default=2 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices(
            "AUDIO_CACHE_MAX_ENTRY_BYTES", "audio_cache_max_entry_bytes"
        ),
    )
    conversation_db_path: Path = Field(
        default_factory=lambda: Path("data/conversations.db"),
        validation_alias=AliasChoices("CONVERSATION_DB_PATH", "conversation_db_path"),
    )
    voice_settings_path: Path = Field(
        default_factory=lambda: Path("data/voice_settings.json"),
        validation_alias=AliasChoices("VOICE_SETTINGS_PATH", "voice_settings_path"),
    )
    usage_path: Path = Field(
        default_factory=lambda: Path("data/tts_usage.json"),
        validation_alias=AliasChoices("USAGE_PATH", "usage_path"),
    )
    logging_settings_path: Path = Field(
        default_factory=lambda: Path("logging_settings.conf"),
        validation_alias=AliasChoices(
            "LOGGING_SETTINGS_PATH", "logging_settings_path"
        ),
    )

    @property
    def max_say_chars(self) -> int:
        """Hard character ceiling for a single synthesis request."""
        return int(self.max_say_seconds * self.chars_per_second)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["Settings", "get_settings"]
