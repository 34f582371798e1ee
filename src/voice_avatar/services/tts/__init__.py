"""
TTS (Text-to-Speech) Services Package.

This package contains the real-time speech output pipeline:

- segmenter: Splits streaming LLM text into speakable segments
- sayifier: Rewrites display text for the ear and enforces the time cap
- cache: Content-addressed two-tier audio cache
- speaker: Single-flight playback queue with fallback and telemetry
- stream_transport: Low-latency streaming synthesis session

Architecture Overview:

    ┌────────────┐   ┌───────────┐   ┌──────────┐   ┌─────────┐   ┌────────────┐
    │ LLM Stream │──▶│ Segmenter │──▶│ Sayifier │──▶│ Speaker │──▶│ AudioOutput│
    └────────────┘   └───────────┘   └──────────┘   └─────────┘   └────────────┘
                                                      │     ▲            │
                                                      ▼     │            ▼
                                                   ┌────────────┐  ┌───────────┐
                                                   │ AudioCache │  │ WebSocket │
                                                   └────────────┘  │ Broadcast │
                                                                   └───────────┘

Segments are spoken strictly in the order the segmenter emits them.
"""

from .cache import AudioBlob, AudioCache, tts_cache_key
from .hooks import Hook
from .output import ClientSpeechFallback, WebSocketAudioOutput
from .sayifier import chunk_say_for_playback, normalize_say, strip_pause_tags
from .segmenter import Segment, Segmenter
from .speaker import Boundary, SpeakItem, Speaker
from .stream_transport import IncrementalAudioPlayer, TTSStream, open_tts_stream
from .synthesis import ElevenLabsSynthesizer, SynthesisError, SynthesisResponse

__all__ = [
    "AudioBlob",
    "AudioCache",
    "Boundary",
    "ClientSpeechFallback",
    "ElevenLabsSynthesizer",
    "Hook",
    "IncrementalAudioPlayer",
    "Segment",
    "Segmenter",
    "SpeakItem",
    "Speaker",
    "SynthesisError",
    "SynthesisResponse",
    "TTSStream",
    "WebSocketAudioOutput",
    "chunk_say_for_playback",
    "normalize_say",
    "open_tts_stream",
    "strip_pause_tags",
    "tts_cache_key",
]
