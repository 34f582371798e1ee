import asyncio

import pytest

from voice_avatar.services.stt.adapter import RecognitionResult, SpeechToTextAdapter


class FakeRecognizer:
    def __init__(self, fail_start: bool = False) -> None:
        self.on_result = None
        self.on_end = None
        self.on_error = None
        self.fail_start = fail_start
        self.starts = 0
        self.stops = 0
        self.aborts = 0
        self.audio: list[bytes] = []

    async def start(self) -> None:
        self.starts += 1
        if self.fail_start:
            raise RuntimeError("microphone busy")

    async def stop(self) -> None:
        self.stops += 1
        self.on_end()

    def abort(self) -> None:
        self.aborts += 1

    async def send_audio(self, data: bytes) -> None:
        self.audio.append(data)

    def emit(self, *results) -> None:
        self.on_result([RecognitionResult(text, final) for text, final in results])


def make_adapter(recognizer, debounce_ms: int = 20):
    interims: list[str] = []
    finals: list[str] = []
    adapter = SpeechToTextAdapter(
        (lambda: recognizer) if recognizer is not None else None,
        interims.append,
        finals.append,
        debounce_ms=debounce_ms,
    )
    return adapter, interims, finals


@pytest.mark.asyncio
async def test_final_submitted_once_after_debounce():
    recognizer = FakeRecognizer()
    adapter, interims, finals = make_adapter(recognizer)

    await adapter.start()
    recognizer.emit(("hello", False))
    recognizer.emit(("hello world", True), ("and", False))
    recognizer.on_end()
    assert finals == []

    await asyncio.sleep(0.06)
    recognizer.on_end()
    await asyncio.sleep(0.06)

    assert interims == ["hello", "hello world and"]
    assert finals == ["hello world"]
    assert not adapter.is_recording


@pytest.mark.asyncio
async def test_restart_inside_window_continues_the_utterance():
    recognizer = FakeRecognizer()
    adapter, _, finals = make_adapter(recognizer, debounce_ms=50)

    await adapter.start()
    recognizer.emit(("tell me", True))
    recognizer.on_end()
    await adapter.start()
    recognizer.emit(("about it", True))
    recognizer.on_end()
    await asyncio.sleep(0.12)

    assert finals == ["tell me about it"]
    assert recognizer.starts == 2


@pytest.mark.asyncio
async def test_abort_discards_pending_transcript():
    recognizer = FakeRecognizer()
    adapter, _, finals = make_adapter(recognizer)

    await adapter.start()
    recognizer.emit(("never mind", True))
    recognizer.on_end()
    adapter.abort()
    await asyncio.sleep(0.06)

    assert finals == []
    assert recognizer.aborts == 1
    assert adapter.live_text == ""


@pytest.mark.asyncio
async def test_seed_prefixes_live_text():
    recognizer = FakeRecognizer()
    adapter, interims, finals = make_adapter(recognizer)

    await adapter.start("Tell me")
    recognizer.emit(("more", False))
    recognizer.emit(("more please", True))
    await adapter.stop()
    await asyncio.sleep(0.06)

    assert interims == ["Tell me more", "Tell me more please"]
    assert finals == ["Tell me more please"]
    assert recognizer.stops == 1


@pytest.mark.asyncio
async def test_speech_start_fires_once_per_session():
    recognizer = FakeRecognizer()
    adapter, _, _ = make_adapter(recognizer)
    started = []
    adapter.on_speech_start.set(lambda: started.append(True))

    await adapter.start()
    recognizer.emit(("one", False))
    recognizer.emit(("one two", False))

    assert started == [True]


@pytest.mark.asyncio
async def test_async_final_callback_is_scheduled():
    recognizer = FakeRecognizer()
    received = []

    async def on_final(text: str) -> None:
        received.append(text)

    adapter = SpeechToTextAdapter(lambda: recognizer, lambda _: None, on_final, debounce_ms=10)
    await adapter.start()
    recognizer.emit(("hi there", True))
    recognizer.on_end()
    await asyncio.sleep(0.05)

    assert received == ["hi there"]


@pytest.mark.asyncio
async def test_audio_only_forwarded_while_recording():
    recognizer = FakeRecognizer()
    adapter, _, _ = make_adapter(recognizer)

    await adapter.send_audio(b"early")
    await adapter.start()
    await adapter.send_audio(b"pcm")

    assert recognizer.audio == [b"pcm"]


@pytest.mark.asyncio
async def test_failed_start_leaves_adapter_idle():
    adapter, _, _ = make_adapter(FakeRecognizer(fail_start=True))

    await adapter.start()

    assert not adapter.is_recording


@pytest.mark.asyncio
async def test_unsupported_without_recognizer():
    adapter, interims, finals = make_adapter(None)

    assert not adapter.supported
    await adapter.start()
    await adapter.toggle()

    assert not adapter.is_recording
    assert interims == finals == []
