"""ElevenLabs request/response synthesis."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import quote

import httpx

from ...config import Settings

logger = logging.getLogger(__name__)

VOICE_SETTINGS = {"stability": 0.45, "similarity_boost": 0.7}


class SynthesisError(RuntimeError):
    """Raised when the synthesis backend cannot be reached."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


@dataclass(frozen=True)
class SynthesisResponse:
    status_code: int
    content_type: str
    content: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def is_audio(self) -> bool:
        return "audio" in self.content_type.lower()


class SynthesisBackend(Protocol):
    async def synthesize(
        self, say: str, voice_id: str, no_cap: bool = False
    ) -> SynthesisResponse: ...


def content_type_for_format(output_format: str) -> str:
    """Map an ElevenLabs ``output_format`` to the MIME type it produces."""

    codec = output_format.split("_", 1)[0].lower()
    if codec == "mp3":
        return "audio/mpeg"
    if codec == "pcm":
        parts = output_format.split("_")
        rate = parts[1] if len(parts) > 1 and parts[1].isdigit() else "44100"
        return f"audio/pcm;rate={rate}"
    if codec == "ulaw":
        return "audio/basic"
    if codec == "opus":
        return "audio/opus"
    if codec == "wav":
        return "audio/wav"
    return "audio/mpeg"


class ElevenLabsSynthesizer:
    """
    Synthesize whole utterances through the ElevenLabs REST endpoint.

    A single pooled ``httpx.AsyncClient`` is shared by every instance unless
    a client is injected (tests pass one built on ``httpx.MockTransport``).
    """

    _http_client: Optional[httpx.AsyncClient] = None

    def __init__(
        self,
        settings: Settings,
        *,
        client: Optional[httpx.AsyncClient] = None,
        model_id: Optional[str] = None,
    ) -> None:
        self._api_key = (
            settings.elevenlabs_api_key.get_secret_value()
            if settings.elevenlabs_api_key
            else None
        )
        self._base_url = str(settings.elevenlabs_base_url).rstrip("/")
        self._model_id = model_id or settings.elevenlabs_model_id
        self._output_format = settings.elevenlabs_output_format
        self._timeout = settings.request_timeout
        self._client = client
        if not self._api_key:
            logger.warning("ELEVENLABS_API_KEY not configured; synthesis unavailable")

    @property
    def available(self) -> bool:
        return bool(self._api_key)

    @property
    def content_type(self) -> str:
        return content_type_for_format(self._output_format)

    @classmethod
    def get_http_client(cls) -> httpx.AsyncClient:
        """Get singleton HTTP client for connection pooling."""
        if cls._http_client is None:
            cls._http_client = httpx.AsyncClient(timeout=30.0)
            logger.info("Created singleton httpx.AsyncClient for TTS")
        return cls._http_client

    @classmethod
    async def close_http_client(cls) -> None:
        """Close the singleton HTTP client. Call on app shutdown."""
        if cls._http_client is not None:
            await cls._http_client.aclose()
            cls._http_client = None
            logger.info("Closed TTS HTTP client")

    async def synthesize(
        self,
        say: str,
        voice_id: str,
        no_cap: bool = False,
        *,
        model_id: Optional[str] = None,
    ) -> SynthesisResponse:
        """POST ``say`` and return the raw upstream response.

        Non-2xx answers are returned, not raised, so callers can tell a
        quota error (429/402) from a transport failure.
        """

        if not self._api_key:
            raise SynthesisError(502, "tts_unavailable")

        url = f"{self._base_url}/text-to-speech/{quote(voice_id, safe='')}"
        headers = {
            "xi-api-key": self._api_key,
            "Accept": self.content_type.split(";", 1)[0],
            "Content-Type": "application/json",
        }
        payload = {
            "text": say,
            "model_id": model_id or self._model_id,
            "voice_settings": VOICE_SETTINGS,
        }

        client = self._client or self.get_http_client()
        try:
            response = await client.post(
                url,
                params={"output_format": self._output_format},
                headers=headers,
                json=payload,
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            logger.warning("ElevenLabs request failed: %s", exc)
            raise SynthesisError(502, f"ElevenLabs request failed: {exc}") from exc

        if response.status_code >= 400:
            logger.error(
                "ElevenLabs TTS failed: %s %s", response.status_code, response.text[:200]
            )
            return SynthesisResponse(
                status_code=response.status_code,
                content_type=response.headers.get("content-type", ""),
                content=b"",
            )

        content_type = response.headers.get("content-type") or self.content_type
        if self.content_type.startswith("audio/pcm") and response.content:
            # raw PCM arrives untyped; the sample rate only lives in the format
            content_type = self.content_type
        logger.debug(
            "ElevenLabs returned %d bytes (%s) for %d chars",
            len(response.content),
            content_type,
            len(say),
        )
        return SynthesisResponse(
            status_code=response.status_code,
            content_type=content_type,
            content=response.content,
        )


__all__ = [
    "ElevenLabsSynthesizer",
    "SynthesisBackend",
    "SynthesisError",
    "SynthesisResponse",
    "content_type_for_format",
]
