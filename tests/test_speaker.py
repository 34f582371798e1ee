"""Speaker queue, degradation and cancellation behaviour."""

import asyncio

import numpy as np
import pytest

from conftest import FakeBackend, FakeOutput, no_sleep
from voice_avatar.services.tts.cache import AudioBlob, tts_cache_key
from voice_avatar.services.tts.speaker import (
    NOTICE_BLOCKED,
    NOTICE_BUSY,
    NOTICE_UNAVAILABLE,
    SpeakItem,
    Speaker,
    analyse_audio,
)


def make_speaker(backend, output, *, cache=None, usage=None, fallback=None, **kwargs):
    kwargs.setdefault("sleep", no_sleep)
    return Speaker(
        backend,
        output,
        cache=cache,
        usage=usage,
        fallback=fallback,
        default_voice_id="voice-1",
        **kwargs,
    )


class Recorder:
    def __init__(self, speaker: Speaker) -> None:
        self.starts = 0
        self.ends = 0
        self.boundaries = []
        self.notices = []
        self.utterances = []
        speaker.on_start.set(self._start)
        speaker.on_end.set(self._end)
        speaker.on_boundary.set(self.boundaries.append)
        speaker.on_notice.set(self.notices.append)
        speaker.on_utterance_end.set(self.utterances.append)

    def _start(self) -> None:
        self.starts += 1

    def _end(self) -> None:
        self.ends += 1


@pytest.mark.asyncio
async def test_items_play_in_queue_order(fake_backend, fake_output, memory_cache, fake_usage):
    speaker = make_speaker(fake_backend, fake_output, cache=memory_cache, usage=fake_usage)
    events = Recorder(speaker)

    for say in ("One.", "Two.", "Three."):
        await speaker.speak(SpeakItem(say=say))
    await speaker.wait_idle()

    assert [call[0] for call in fake_backend.calls] == ["One.", "Two.", "Three."]
    assert [item.say for item in events.utterances] == ["One.", "Two.", "Three."]
    assert fake_usage.records == [4, 4, 6]
    assert [kind for kind, _ in fake_output.events].count("begin") == 3
    assert b"".join(fake_output.chunks) == fake_backend.content * 3
    assert events.ends == 1
    assert events.boundaries[-1].progress == 1.0
    assert not speaker.is_playing


@pytest.mark.asyncio
async def test_cache_hit_skips_synthesis_and_usage(fake_backend, fake_output, memory_cache, fake_usage):
    speaker = make_speaker(fake_backend, fake_output, cache=memory_cache, usage=fake_usage)

    await speaker.speak(SpeakItem(say="Hello there."))
    await speaker.wait_idle()
    await speaker.speak(SpeakItem(say="Hello there."))
    await speaker.wait_idle()

    assert len(fake_backend.calls) == 1
    assert fake_usage.records == [len("Hello there.")]
    assert tts_cache_key("voice-1", "Hello there.") in memory_cache.store


@pytest.mark.asyncio
async def test_prefilled_cache_is_played(fake_backend, fake_output, memory_cache):
    key = tts_cache_key("other", "Cached.")
    memory_cache.store[key] = AudioBlob(b"abc", "audio/mpeg")
    speaker = make_speaker(fake_backend, fake_output, cache=memory_cache)

    await speaker.speak(SpeakItem(say="Cached.", voice_id="other"))
    await speaker.wait_idle()

    assert fake_backend.calls == []
    assert fake_output.chunks == [b"abc"]


@pytest.mark.asyncio
async def test_quota_error_falls_back_to_device_voice(fake_output, fake_fallback, fake_usage):
    backend = FakeBackend(status_code=429)
    speaker = make_speaker(backend, fake_output, usage=fake_usage, fallback=fake_fallback)
    events = Recorder(speaker)

    await speaker.speak(SpeakItem(say="Hello there."))
    await speaker.wait_idle()

    assert events.notices == [f"{NOTICE_BUSY} Using on-device voice."]
    assert fake_fallback.spoken == ["Hello there."]
    assert fake_usage.records == []
    assert fake_output.chunks == []
    assert len(events.utterances) == 1


@pytest.mark.asyncio
async def test_non_audio_response_is_unavailable(fake_output, fake_fallback):
    backend = FakeBackend(content_type="application/json", content=b"{}")
    speaker = make_speaker(backend, fake_output, fallback=fake_fallback)
    events = Recorder(speaker)

    await speaker.speak(SpeakItem(say="Hi."))
    await speaker.wait_idle()

    assert events.notices == [f"{NOTICE_UNAVAILABLE} Using on-device voice."]
    assert fake_fallback.spoken == ["Hi."]


@pytest.mark.asyncio
async def test_rejected_output_is_reported_as_blocked(fake_backend, fake_fallback):
    speaker = make_speaker(fake_backend, FakeOutput(reject=True), fallback=fake_fallback)
    events = Recorder(speaker)

    await speaker.speak(SpeakItem(say="Hi."))
    await speaker.wait_idle()

    assert events.notices == [f"{NOTICE_BLOCKED} Using on-device voice."]
    assert fake_fallback.spoken == ["Hi."]


@pytest.mark.asyncio
async def test_disabled_fallback_skips_audio(fake_output, fake_fallback):
    speaker = make_speaker(
        FakeBackend(status_code=402), fake_output, fallback=fake_fallback, fallback_enabled=False
    )
    events = Recorder(speaker)

    await speaker.speak(SpeakItem(say="Hi."))
    await speaker.wait_idle()

    assert events.notices == [f"{NOTICE_BUSY} Skipping audio."]
    assert fake_fallback.spoken == []
    assert len(events.utterances) == 1


@pytest.mark.asyncio
async def test_cancel_mid_fetch_silences_everything(fake_backend, fake_output, fake_fallback):
    fake_backend.gate = asyncio.Event()
    speaker = make_speaker(fake_backend, fake_output, fallback=fake_fallback)
    events = Recorder(speaker)

    await speaker.speak(SpeakItem(say="First."))
    await speaker.speak(SpeakItem(say="Second."))
    for _ in range(3):
        await asyncio.sleep(0)
    assert len(fake_backend.calls) == 1

    speaker.cancel()
    fake_backend.gate.set()
    for _ in range(5):
        await asyncio.sleep(0)

    assert events.starts == 1
    assert events.ends == 1
    assert events.boundaries == []
    assert events.utterances == []
    assert speaker.queue_size == 0
    assert not speaker.is_playing
    assert fake_output.stops == 1
    assert fake_fallback.cancels == 1
    assert len(fake_backend.calls) == 1


@pytest.mark.asyncio
async def test_speaker_is_usable_after_cancel(fake_backend, fake_output):
    speaker = make_speaker(fake_backend, fake_output)
    events = Recorder(speaker)

    speaker.cancel()
    speaker.cancel()
    await speaker.speak(SpeakItem(say="Again."))
    await speaker.wait_idle()

    assert [item.say for item in events.utterances] == ["Again."]
    assert events.ends == 3


@pytest.mark.asyncio
async def test_destroyed_speaker_ignores_new_items(fake_backend, fake_output):
    speaker = make_speaker(fake_backend, fake_output)
    speaker.destroy()

    await speaker.speak(SpeakItem(say="Hello."))

    assert speaker.queue_size == 0
    assert fake_backend.calls == []


@pytest.mark.asyncio
async def test_pause_items_wait_without_synthesis(fake_backend, fake_output):
    slept = []

    async def sleep(seconds: float) -> None:
        slept.append(seconds)

    speaker = make_speaker(fake_backend, fake_output, sleep=sleep)
    events = Recorder(speaker)

    await speaker.speak(SpeakItem(say="", pause_ms=300))
    await speaker.wait_idle()

    assert fake_backend.calls == []
    assert slept == [0.3]
    assert events.starts == 0
    assert len(events.utterances) == 1


@pytest.mark.asyncio
async def test_blank_items_are_ignored(fake_backend, fake_output):
    speaker = make_speaker(fake_backend, fake_output)

    await speaker.speak(SpeakItem(say="   "))

    assert speaker.queue_size == 0
    assert not speaker.is_playing


@pytest.mark.asyncio
async def test_time_cap_applies_unless_opted_out(fake_backend, fake_output):
    text = "Word. " * 600
    speaker = make_speaker(fake_backend, fake_output)

    await speaker.speak(SpeakItem(say=text))
    await speaker.speak(SpeakItem(say=text, no_cap=True))
    await speaker.wait_idle()

    capped, uncapped = fake_backend.calls[0][0], fake_backend.calls[1][0]
    assert len(capped.split()) == 26
    # the character ceiling still holds without the time cap
    assert len(uncapped) <= 2401
    assert uncapped.endswith("…")
    assert fake_backend.calls[1][2] is True


def test_pcm_energy_follows_the_signal() -> None:
    rate = 16000
    t = np.arange(rate) / rate
    tone = (np.sin(2 * np.pi * 220 * t) * 16000).astype("<i2")
    silence = np.zeros(rate, dtype="<i2")
    blob = AudioBlob(np.concatenate([tone, silence]).tobytes(), f"audio/pcm;rate={rate}")

    track = analyse_audio(blob)

    assert track.duration == pytest.approx(2.0)
    assert track.energy_at(0.5, 1 / 30) > 0.5
    assert track.energy_at(1.5, 1 / 30) == 0.0


def test_mp3_duration_is_estimated_and_capped() -> None:
    assert analyse_audio(AudioBlob(b"\x00" * 16000)).duration == pytest.approx(1.0)
    assert analyse_audio(AudioBlob(b"\x00" * 16000 * 60)).duration == 15.0


class SlowCache:
    def __init__(self) -> None:
        self.release = asyncio.Event()
        self.stored = []

    async def get(self, key):
        return None

    async def set(self, key, blob) -> None:
        await self.release.wait()
        self.stored.append(key)


@pytest.mark.asyncio
async def test_cache_write_does_not_delay_playback(fake_backend, fake_output, fake_usage):
    cache = SlowCache()
    speaker = make_speaker(fake_backend, fake_output, cache=cache, usage=fake_usage)
    events = Recorder(speaker)

    await speaker.speak(SpeakItem(say="Fresh audio."))
    for _ in range(50):
        await asyncio.sleep(0)
        if events.utterances:
            break

    assert ("begin", "audio/mpeg") in fake_output.events
    assert len(events.utterances) == 1
    assert cache.stored == []

    cache.release.set()
    await speaker.wait_idle()

    assert cache.stored == [tts_cache_key("voice-1", "Fresh audio.")]
    assert fake_usage.records == [len("Fresh audio.")]


@pytest.mark.asyncio
async def test_owner_cancel_keeps_other_owners_items(fake_backend, fake_output):
    fake_backend.gate = asyncio.Event()
    speaker = make_speaker(fake_backend, fake_output)
    done = []
    alice, bob = object(), object()

    await speaker.speak(SpeakItem(say="Alice one.", owner=alice, on_done=done.append))
    await speaker.speak(SpeakItem(say="Bob one.", owner=bob, on_done=done.append))
    await speaker.speak(SpeakItem(say="Alice two.", owner=alice, on_done=done.append))
    for _ in range(3):
        await asyncio.sleep(0)

    speaker.cancel(owner=alice)
    assert speaker.queue_size == 1
    fake_backend.gate.set()
    await speaker.wait_idle()

    assert [item.say for item in done] == ["Bob one."]
    assert [call[0] for call in fake_backend.calls] == ["Alice one.", "Bob one."]


@pytest.mark.asyncio
async def test_owner_cancel_does_not_touch_current_item_of_another(fake_backend, fake_output):
    fake_backend.gate = asyncio.Event()
    speaker = make_speaker(fake_backend, fake_output)
    events = Recorder(speaker)
    alice, bob = object(), object()

    await speaker.speak(SpeakItem(say="Alice speaking.", owner=alice))
    await speaker.speak(SpeakItem(say="Bob waiting.", owner=bob))
    for _ in range(3):
        await asyncio.sleep(0)

    speaker.cancel(owner=bob)
    fake_backend.gate.set()
    await speaker.wait_idle()

    assert [item.say for item in events.utterances] == ["Alice speaking."]
    assert fake_output.stops == 0


@pytest.mark.asyncio
async def test_hard_cancel_settles_dropped_items(fake_backend, fake_output):
    fake_backend.gate = asyncio.Event()
    speaker = make_speaker(fake_backend, fake_output)
    done = []

    await speaker.speak(SpeakItem(say="Playing.", owner="a", on_done=done.append))
    await speaker.speak(SpeakItem(say="Queued.", owner="b", on_done=done.append))
    for _ in range(3):
        await asyncio.sleep(0)

    speaker.cancel()

    assert [item.say for item in done] == ["Playing.", "Queued."]
    assert speaker.queue_size == 0
    assert not speaker.is_playing
