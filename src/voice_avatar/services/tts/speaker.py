"""
Speaker: single-flight, queue-driven playback engine.

Architecture:
    speak(item) → FIFO queue → worker task
        → cap (Sayifier) → cache lookup → synthesis on miss
        → AudioOutput at real-time pace, Boundary samples at ~30 Hz
        → fallback synthesizer on any failure

Exactly one item is in flight at a time, so segments are heard in the
order they were queued no matter how long each synthesis takes.

Several producers may share one Speaker. Each item carries its ``owner``
and an optional ``on_done`` callback fired when that item finishes.
``cancel(owner)`` drops only that owner's items (aborting the current one
if it is theirs); ``cancel()`` with no owner is the hard stop: it bumps a
generation counter, cancels the worker task, clears the queue, stops the
output, fires ``on_end`` and settles every dropped item's ``on_done``.
Work belonging to an older generation never fires another hook.

Freshly synthesized audio is written to the cache and counted in the
usage log by background tasks; playback never waits on either.

Usage:
    speaker = Speaker(synthesizer, output, cache=cache, usage=usage)
    speaker.on_boundary.set(lambda b: print(b.progress, b.energy))

    await speaker.speak(SpeakItem(say="Hello there.", owner=turn, on_done=turn.done))
    ...
    speaker.cancel(owner=turn)  # barge-in
"""

import asyncio
import io
import logging
import math
import wave
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Optional

import numpy as np

from .cache import AudioBlob, AudioCache, tts_cache_key
from .hooks import Hook
from .output import (
    AudioOutput,
    AudioOutputError,
    FallbackSynthesizer,
    sample_rate_from_content_type,
)
from .sayifier import (
    normalize_say,
    strip_pause_tags,
    truncate_at_sentence_boundary,
)
from .synthesis import SynthesisBackend, SynthesisError
from ..usage import UsageTracker

logger = logging.getLogger(__name__)

BOUNDARY_HZ = 30
SYNTHETIC_MAX_SECONDS = 15.0
MP3_BITRATE = 128_000
CHUNK_BYTES = 16 * 1024
# audio sent ahead of the playhead so the client buffer never starves
LEAD_SECONDS = 0.5
ENERGY_GAIN = 3.0

NOTICE_BUSY = "Voice server busy."
NOTICE_UNAVAILABLE = "Voice service unavailable."
NOTICE_BLOCKED = "Audio playback was blocked."

_PCM_TYPES = ("audio/pcm", "audio/l16", "audio/x-pcm")
_WAV_TYPES = ("audio/wav", "audio/x-wav", "audio/wave", "audio/vnd.wave")


@dataclass
class SpeakItem:
    """A queued request. ``say`` empty plus ``pause_ms`` is a silent gap."""

    say: str
    voice_id: Optional[str] = None
    no_cap: bool = False
    pause_ms: Optional[int] = None
    owner: Optional[object] = field(default=None, repr=False, compare=False)
    on_done: Optional[Callable[["SpeakItem"], object]] = field(
        default=None, repr=False, compare=False
    )


@dataclass(frozen=True)
class Boundary:
    progress: float
    energy: float


class _Degraded(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass
class _Track:
    duration: float
    samples: Optional[np.ndarray] = None
    sample_rate: int = 0

    def energy_at(self, t: float, window: float) -> float:
        if self.samples is None or not self.sample_rate:
            return synthetic_energy(t)
        start = int(t * self.sample_rate)
        stop = max(start + 1, int((t + window) * self.sample_rate))
        frame = self.samples[start:stop]
        if frame.size == 0:
            return 0.0
        rms = float(np.sqrt(np.mean(np.square(frame.astype(np.float64))))) / 32768.0
        return min(1.0, max(0.0, rms * ENERGY_GAIN))


def synthetic_energy(t: float) -> float:
    """Gentle wobble used when the audio cannot be analysed."""
    return 0.25 + 0.15 * math.sin((t * 1000 / 180) * math.pi)


def _decode_pcm(data: bytes, channels: int = 1) -> np.ndarray:
    usable = len(data) - (len(data) % (2 * channels))
    samples = np.frombuffer(data[:usable], dtype="<i2")
    if channels > 1:
        samples = samples.reshape(-1, channels).mean(axis=1)
    return samples


def analyse_audio(blob: AudioBlob) -> _Track:
    """Work out duration and, for PCM/WAV, decoded samples for RMS energy."""

    content_type = blob.content_type.lower()
    if content_type.startswith(_PCM_TYPES):
        rate = sample_rate_from_content_type(content_type) or 44100
        samples = _decode_pcm(blob.data)
        return _Track(duration=len(samples) / rate, samples=samples, sample_rate=rate)

    if content_type.startswith(_WAV_TYPES):
        try:
            with wave.open(io.BytesIO(blob.data), "rb") as reader:
                channels = reader.getnchannels()
                rate = reader.getframerate()
                width = reader.getsampwidth()
                frames = reader.readframes(reader.getnframes())
            duration = len(frames) / float(width * channels * rate)
            if width == 2:
                samples = _decode_pcm(frames, channels)
                return _Track(duration=duration, samples=samples, sample_rate=rate)
            return _Track(duration=min(SYNTHETIC_MAX_SECONDS, duration))
        except (wave.Error, EOFError) as exc:
            logger.debug("Unreadable WAV payload, using synthetic energy: %s", exc)

    estimate = len(blob.data) * 8 / MP3_BITRATE
    return _Track(duration=min(SYNTHETIC_MAX_SECONDS, estimate))


def _settle(item: SpeakItem) -> None:
    if item.on_done is None:
        return
    try:
        item.on_done(item)
    except Exception:
        logger.exception("on_done callback failed for %r", item.say[:40])


class Speaker:
    """Queue and play synthesized speech, one item at a time."""

    def __init__(
        self,
        backend: SynthesisBackend,
        output: AudioOutput,
        *,
        cache: Optional[AudioCache] = None,
        usage: Optional[UsageTracker] = None,
        fallback: Optional[FallbackSynthesizer] = None,
        fallback_enabled: bool = True,
        default_voice_id: str = "",
        max_say_seconds: float = 12.0,
        chars_per_second: int = 200,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._backend = backend
        self._output = output
        self._cache = cache
        self._usage = usage
        self._fallback = fallback
        self.fallback_enabled = fallback_enabled
        self.default_voice_id = default_voice_id
        self._max_say_seconds = max_say_seconds
        self._max_say_chars = int(max_say_seconds * chars_per_second)
        self._sleep = sleep
        self._tick = 1.0 / BOUNDARY_HZ

        self._queue: Deque[SpeakItem] = deque()
        self._worker: Optional[asyncio.Task] = None
        self._current: Optional[SpeakItem] = None
        self._generation = 0
        self._destroyed = False
        self._writes: set[asyncio.Task] = set()
        self._write_lock = asyncio.Lock()

        self.on_start: Hook[[]] = Hook("on_start")
        self.on_end: Hook[[]] = Hook("on_end")
        self.on_boundary: Hook[[Boundary]] = Hook("on_boundary")
        self.on_notice: Hook[[str]] = Hook("on_notice")
        self.on_utterance_end: Hook[[SpeakItem]] = Hook("on_utterance_end")

    @property
    def is_playing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    async def speak(self, item: SpeakItem) -> None:
        """Enqueue ``item``; returns once it is admitted to the queue."""
        if self._destroyed:
            return
        if not (item.say or "").strip() and not item.pause_ms:
            return

        self._queue.append(item)
        if not self.is_playing:
            self._worker = asyncio.create_task(self._drain(self._generation))

    def cancel(self, owner: Optional[object] = None) -> None:
        """
        Stop speech synchronously.

        Without ``owner`` everything is dropped and ``on_end`` fires; the
        dropped items' ``on_done`` callbacks are settled so their producers
        are not left waiting. With ``owner`` only items queued by that owner
        are dropped, and the current item is aborted only if it is theirs.
        """
        if owner is None:
            dropped = list(self._queue)
            if self._current is not None:
                dropped.insert(0, self._current)
            self._queue.clear()
            self._abort_current()
            for item in dropped:
                _settle(item)
            return

        self._queue = deque(item for item in self._queue if item.owner is not owner)
        current = self._current
        if current is None or current.owner is not owner:
            return
        self._abort_current()
        if self._queue and not self._destroyed:
            self._worker = asyncio.create_task(self._drain(self._generation))

    def destroy(self) -> None:
        self._destroyed = True
        self.cancel()

    async def wait_idle(self) -> None:
        """Wait until the queue has drained and background writes are done."""
        while True:
            worker = self._worker
            if worker is None or worker.done():
                break
            try:
                await asyncio.shield(worker)
            except asyncio.CancelledError:
                # the worker was replaced or stopped by cancel(); we were not
                if worker.cancelled():
                    continue
                raise
        if self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    def _abort_current(self) -> None:
        self._generation += 1
        self._current = None

        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()

        self._output.stop()
        if self._fallback is not None:
            self._fallback.cancel()

        self.on_end.fire()

    # ------------------------------------------------------------------ #
    # Worker
    # ------------------------------------------------------------------ #

    async def _drain(self, generation: int) -> None:
        while self._queue and generation == self._generation:
            item = self._queue.popleft()
            self._current = item
            try:
                await self._play_item(item, generation)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Speaker failed on item %r", item.say[:40])
            if generation != self._generation:
                return
            self._current = None
            self.on_utterance_end.fire(item)
            _settle(item)

        if generation == self._generation:
            self._worker = None
            self.on_end.fire()

    def _prepare(self, item: SpeakItem) -> str:
        say = strip_pause_tags(item.say)
        if not item.no_cap:
            say = normalize_say(
                say, enforce_cap=True, add_invite=False, max_seconds=self._max_say_seconds
            )
        # the character ceiling applies even when the caller opted out of the cap
        return truncate_at_sentence_boundary(say, self._max_say_chars)

    async def _play_item(self, item: SpeakItem, generation: int) -> None:
        say = self._prepare(item) if (item.say or "").strip() else ""

        if say:
            self.on_start.fire()
            await self._speak_text(say, item, generation)

        if item.pause_ms and generation == self._generation:
            await self._sleep(item.pause_ms / 1000)

    async def _speak_text(self, say: str, item: SpeakItem, generation: int) -> None:
        voice_id = item.voice_id or self.default_voice_id
        key = tts_cache_key(voice_id, say)

        blob = await self._cache.get(key) if self._cache is not None else None
        if generation != self._generation:
            return

        if blob is None:
            try:
                blob = await self._fetch(say, voice_id, item.no_cap)
            except _Degraded as degraded:
                await self._degrade(say, degraded.reason, generation)
                return
            if generation != self._generation:
                return
            self._store_in_background(key, blob, len(say))
        else:
            logger.debug("Audio cache hit for %r", say[:40])

        try:
            await self._play_blob(blob, generation)
        except AudioOutputError as exc:
            logger.info("Playback rejected: %s", exc)
            await self._degrade(say, NOTICE_BLOCKED, generation)

    def _store_in_background(self, key: str, blob: AudioBlob, chars: int) -> None:
        if self._cache is None and self._usage is None:
            return
        task = asyncio.create_task(self._store(key, blob, chars))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _store(self, key: str, blob: AudioBlob, chars: int) -> None:
        # serialized so usage samples land in playback order
        async with self._write_lock:
            try:
                if self._usage is not None:
                    await asyncio.to_thread(self._usage.record, chars)
                if self._cache is not None:
                    await self._cache.set(key, blob)
            except Exception as exc:
                logger.warning("Failed to record synthesized audio: %s", exc)

    async def _fetch(self, say: str, voice_id: str, no_cap: bool) -> AudioBlob:
        try:
            response = await self._backend.synthesize(say, voice_id, no_cap)
        except SynthesisError as exc:
            logger.warning("Synthesis failed (%s): %s", exc.status_code, exc.detail)
            raise _Degraded(NOTICE_UNAVAILABLE) from exc

        if response.status_code in (402, 429):
            raise _Degraded(NOTICE_BUSY)
        if not response.ok or not response.is_audio or not response.content:
            logger.warning(
                "Unusable synthesis response: %s %s (%d bytes)",
                response.status_code,
                response.content_type,
                len(response.content),
            )
            raise _Degraded(NOTICE_UNAVAILABLE)
        return AudioBlob(data=response.content, content_type=response.content_type)

    async def _play_blob(self, blob: AudioBlob, generation: int) -> None:
        track = analyse_audio(blob)
        duration = max(track.duration, self._tick)
        data = blob.data
        aligned = track.samples is not None

        await self._output.begin(blob.content_type)

        sent = 0
        elapsed = 0.0
        while True:
            ahead = min(1.0, (elapsed + LEAD_SECONDS) / duration)
            target = len(data) if ahead >= 1.0 else int(len(data) * ahead)
            if aligned:
                target -= target % 2
            while sent < target:
                end = min(target, sent + CHUNK_BYTES)
                await self._output.write(data[sent:end])
                sent = end

            if generation != self._generation:
                return
            progress = min(1.0, elapsed / duration)
            self.on_boundary.fire(Boundary(progress, track.energy_at(elapsed, self._tick)))
            if elapsed >= duration:
                break
            await self._sleep(self._tick)
            elapsed = min(duration, elapsed + self._tick)

        await self._output.end()

    async def _degrade(self, say: str, reason: str, generation: int) -> None:
        if generation != self._generation:
            return
        use_fallback = self.fallback_enabled and self._fallback is not None
        if use_fallback:
            self.on_notice.fire(f"{reason} Using on-device voice.")
        else:
            self.on_notice.fire(f"{reason} Skipping audio.")
            return

        assert self._fallback is not None
        spoken = asyncio.ensure_future(self._fallback.speak(say))
        try:
            elapsed = 0.0
            total = min(SYNTHETIC_MAX_SECONDS, self._max_say_seconds)
            while not spoken.done():
                if generation != self._generation:
                    return
                self.on_boundary.fire(
                    Boundary(min(1.0, elapsed / total), synthetic_energy(elapsed))
                )
                await self._sleep(self._tick)
                elapsed += self._tick
            await spoken
        finally:
            if not spoken.done():
                spoken.cancel()


__all__ = [
    "Boundary",
    "SpeakItem",
    "Speaker",
    "analyse_audio",
    "synthetic_energy",
]
