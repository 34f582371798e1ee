"""
Speech-to-text adapter with silence debounce.

Wraps any :class:`Recognizer` and turns its result callbacks into two
application events:

    on_interim(live_text)      every result: seed + finals + interim
    on_final_submit(text)      once per session, ``debounce_ms`` after the
                               recognizer ends (seed + finals)

The debounce absorbs the recognizer's auto-restart gaps: calling
``start()`` again before it elapses continues the same utterance instead
of submitting a fragment. ``abort()`` skips the debounce and discards
everything (barge-in).
"""

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Protocol, Union

from ..tts.hooks import Hook

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_MS = 1200

_WS_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class RecognitionResult:
    transcript: str
    is_final: bool


class Recognizer(Protocol):
    on_result: Optional[Callable[[List[RecognitionResult]], None]]
    on_end: Optional[Callable[[], None]]
    on_error: Optional[Callable[[str], None]]

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def abort(self) -> None: ...

    async def send_audio(self, data: bytes) -> None: ...


RecognizerFactory = Callable[[], Recognizer]
TextCallback = Callable[[str], Union[None, Awaitable[None]]]


def _compose(*parts: str) -> str:
    return _WS_RE.sub(" ", " ".join(p for p in parts if p)).strip()


class SpeechToTextAdapter:
    """Interim/final transcript composer around a recognizer session."""

    def __init__(
        self,
        recognizer_factory: Optional[RecognizerFactory],
        on_interim: TextCallback,
        on_final_submit: TextCallback,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
    ) -> None:
        self._factory = recognizer_factory
        self._on_interim = on_interim
        self._on_final_submit = on_final_submit
        self._debounce = max(0, debounce_ms) / 1000

        self._recognizer: Optional[Recognizer] = None
        self._session = 0
        self._is_recording = False
        self._heard = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()

        self._base = ""
        self._final = ""
        self._interim = ""

        self.on_speech_start: Hook[[]] = Hook("on_speech_start")

    @property
    def supported(self) -> bool:
        return self._factory is not None

    @property
    def is_recording(self) -> bool:
        return self._is_recording

    @property
    def live_text(self) -> str:
        return _compose(self._base, self._final, self._interim)

    async def start(self, seed: str = "") -> None:
        if not self.supported:
            logger.debug("Speech recognition unsupported; start ignored")
            return
        if self._is_recording:
            return

        # restarted inside the debounce window: same utterance continues
        carried = _compose(self._base, self._final) if self._timer is not None else ""
        self._cancel_timer()
        self._session += 1
        session = self._session
        self._base = seed or carried
        self._final = ""
        self._interim = ""
        self._heard = False

        if self._recognizer is None:
            assert self._factory is not None
            self._recognizer = self._factory()
        recognizer = self._recognizer
        recognizer.on_result = lambda results: self._handle_results(session, results)
        recognizer.on_end = lambda: self._handle_end(session)
        recognizer.on_error = lambda message: self._handle_error(session, message)

        self._is_recording = True
        try:
            await recognizer.start()
        except Exception as exc:
            logger.warning("Recognizer failed to start: %s", exc)
            self._is_recording = False

    async def stop(self) -> None:
        """End the session; the final submit follows after the debounce."""
        if self._recognizer is not None and self._is_recording:
            await self._recognizer.stop()

    def abort(self) -> None:
        """Drop the session without submitting anything."""
        self._session += 1
        self._cancel_timer()
        self._is_recording = False
        self._base = self._final = self._interim = ""
        if self._recognizer is not None:
            try:
                self._recognizer.abort()
            except Exception as exc:
                logger.debug("Recognizer abort failed: %s", exc)

    async def toggle(self, seed: str = "") -> None:
        if not self.supported:
            return
        if self._is_recording:
            await self.stop()
        else:
            await self.start(seed)

    async def send_audio(self, data: bytes) -> None:
        if self._recognizer is not None and self._is_recording:
            await self._recognizer.send_audio(data)

    # ------------------------------------------------------------------ #

    def _handle_results(self, session: int, results: List[RecognitionResult]) -> None:
        if session != self._session:
            return
        if not self._heard:
            self._heard = True
            self.on_speech_start.fire()

        finals = " ".join(r.transcript for r in results if r.is_final and r.transcript)
        interim = " ".join(r.transcript for r in results if not r.is_final and r.transcript)
        if finals:
            self._final = _compose(self._final, finals)
        self._interim = interim
        self._dispatch(self._on_interim, self.live_text)

    def _handle_end(self, session: int) -> None:
        if session != self._session:
            return
        self._is_recording = False
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._debounce, self._submit, session)

    def _handle_error(self, session: int, message: str) -> None:
        if session != self._session:
            return
        logger.warning("Speech recognition error: %s", message)
        self._is_recording = False

    def _submit(self, session: int) -> None:
        self._timer = None
        if session != self._session:
            return
        # one submit per session
        self._session += 1
        final_text = _compose(self._base, self._final)
        if final_text:
            self._dispatch(self._on_final_submit, final_text)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _dispatch(self, callback: Callable[[str], Any], text: str) -> None:
        try:
            result = callback(text)
        except Exception:
            logger.exception("Transcript callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)


__all__ = [
    "DEFAULT_DEBOUNCE_MS",
    "RecognitionResult",
    "Recognizer",
    "RecognizerFactory",
    "SpeechToTextAdapter",
]
