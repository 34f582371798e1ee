import asyncio
import pathlib
import sys
from typing import Any, Optional

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from voice_avatar.services.tts.output import AudioOutputError  # noqa: E402
from voice_avatar.services.tts.synthesis import SynthesisResponse  # noqa: E402


class FakeOutput:
    """Records what the speaker would have streamed to the client."""

    def __init__(self, reject: bool = False) -> None:
        self.reject = reject
        self.events: list[tuple[str, Any]] = []
        self.stops = 0

    @property
    def chunks(self) -> list[bytes]:
        return [payload for kind, payload in self.events if kind == "write"]

    async def begin(self, content_type: str) -> None:
        if self.reject:
            raise AudioOutputError("blocked")
        self.events.append(("begin", content_type))

    async def write(self, chunk: bytes) -> None:
        self.events.append(("write", chunk))

    async def end(self) -> None:
        self.events.append(("end", None))

    def stop(self) -> None:
        self.stops += 1


class FakeBackend:
    """Synthesis backend returning canned responses, optionally gated."""

    def __init__(
        self,
        status_code: int = 200,
        content_type: str = "audio/mpeg",
        content: bytes = b"\xff\xfb" * 2000,
    ) -> None:
        self.status_code = status_code
        self.content_type = content_type
        self.content = content
        self.calls: list[tuple[str, str, bool]] = []
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None

    async def synthesize(self, say: str, voice_id: str, no_cap: bool = False) -> SynthesisResponse:
        self.calls.append((say, voice_id, no_cap))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return SynthesisResponse(
            status_code=self.status_code,
            content_type=self.content_type,
            content=self.content if self.status_code < 400 else b"",
        )


class FakeFallback:
    def __init__(self) -> None:
        self.spoken: list[str] = []
        self.cancels = 0

    async def speak(self, text: str) -> None:
        self.spoken.append(text)
        await asyncio.sleep(0)

    def cancel(self) -> None:
        self.cancels += 1


class FakeUsage:
    def __init__(self) -> None:
        self.records: list[int] = []

    def record(self, chars: int) -> None:
        self.records.append(chars)


class MemoryCache:
    def __init__(self) -> None:
        self.store: dict[str, Any] = {}
        self.gets = 0

    async def get(self, key: str):
        self.gets += 1
        return self.store.get(key)

    async def set(self, key: str, blob) -> None:
        self.store.setdefault(key, blob)


async def no_sleep(_: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def fake_output() -> FakeOutput:
    return FakeOutput()


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fake_fallback() -> FakeFallback:
    return FakeFallback()


@pytest.fixture
def fake_usage() -> FakeUsage:
    return FakeUsage()


@pytest.fixture
def memory_cache() -> MemoryCache:
    return MemoryCache()


@pytest.fixture(autouse=True)
def reset_sse_app_status():
    # sse-starlette keeps a process-wide exit event bound to the first event loop
    import sse_starlette.sse as sse

    status = getattr(sse, "AppStatus", None)
    if status is not None and hasattr(status, "should_exit_event"):
        status.should_exit_event = None
    yield
