"""
Turn coordinator: sequences one conversational turn end to end.

    user text ─▶ conversation log ─▶ model stream ─▶ Segmenter ─▶ Sayifier
        ─▶ Speaker (per-utterance synthesis)
         or TTSStream (streaming synthesis, when enabled in voice settings)

State lives in a :class:`TurnState` updated only through
:func:`voice_avatar.services.turn_fsm.reduce`. The Speaker may be shared
by several coordinators: items are queued with this coordinator as owner
and each finished item reports back through its ``on_done`` callback,
which becomes ``UTTER_END``;
the streaming session counts as a single utterance that ends on its final
audio frame.

Barge-in: when new speech starts while thinking or speaking, the model
stream task, this coordinator's Speaker items, the streaming session and
the segmenter are all cancelled synchronously and ``CANCEL`` is dispatched.
"""

import asyncio
import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Iterable, Optional, Protocol

from ..repository import ConversationRepository
from ..schemas.voice_settings import VoiceSettings
from .chat_model import (
    ChatEvent,
    ChatModelError,
    ChatStreamError,
    DoneEvent,
    TokenEvent,
)
from .reply_parser import reply_from_raw
from .tts.hooks import Hook
from .tts.output import AudioOutputError
from .tts.sayifier import (
    chunk_say_for_playback,
    normalize_say,
    strip_pause_tags,
)
from .tts.segmenter import Segment, Segmenter
from .tts.speaker import SpeakItem, Speaker
from .tts.stream_transport import (
    AudioCallback,
    ErrorCallback,
    IncrementalAudioPlayer,
    TTSStream,
)
from .turn_fsm import Phase, TurnEvent, TurnState, reduce

logger = logging.getLogger(__name__)

ERROR_TURN = "Sorry, something went wrong on my side. Could you ask that again?"

StreamOpener = Callable[[str, AudioCallback, ErrorCallback], Awaitable[TTSStream]]


class ChatSource(Protocol):
    def stream_reply(
        self,
        messages: Iterable[Any],
        *,
        temperature: Optional[float] = None,
        casualness: Optional[str] = None,
    ) -> AsyncIterator[ChatEvent]: ...


class TurnCoordinator:
    """Drive the idle/listening/thinking/speaking cycle for one conversation."""

    def __init__(
        self,
        chat: ChatSource,
        speaker: Speaker,
        *,
        conversation_id: str = "default",
        repository: Optional[ConversationRepository] = None,
        voice_settings: Optional[Callable[[], VoiceSettings]] = None,
        open_stream: Optional[StreamOpener] = None,
        stream_player: Optional[IncrementalAudioPlayer] = None,
    ):
        self._chat = chat
        self._speaker = speaker
        self.conversation_id = conversation_id
        self._repository = repository
        self._voice_settings = voice_settings or VoiceSettings
        self._open_stream = open_stream
        self._player = stream_player

        self._state = TurnState()
        self._history: list[dict[str, str]] = []
        self._segmenter = Segmenter()
        self._generation = 0
        self._task: Optional[asyncio.Task] = None

        self._stream: Optional[TTSStream] = None
        self._stream_speaking = False
        self._closing: set[asyncio.Task] = set()

        self.on_state: Hook[[TurnState]] = Hook("on_state")
        self.on_message: Hook[[dict[str, Any]]] = Hook("on_message")

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def history(self) -> list[dict[str, str]]:
        return list(self._history)

    @property
    def busy(self) -> bool:
        return self._state.phase in (Phase.THINKING, Phase.SPEAKING)

    async def load_history(self) -> None:
        if self._repository is None:
            return
        records = await self._repository.list(self.conversation_id)
        self._history = [{"role": r["role"], "content": r["content"]} for r in records]

    def dispatch(self, event: TurnEvent) -> TurnState:
        previous = self._state
        self._state = reduce(previous, event)
        if self._state != previous:
            logger.debug(
                "Turn %s -> %s (pending=%d, stream_done=%s) on %s",
                previous.phase.value,
                self._state.phase.value,
                self._state.pending,
                self._state.stream_done,
                event.type.value,
            )
            self.on_state.fire(self._state)
        return self._state

    def start_listening(self) -> None:
        self.dispatch(TurnEvent.listen())

    async def submit(self, text: str, *, spoken: bool = False) -> Optional[asyncio.Task]:
        """Start a turn for ``text``; an in-flight turn is cancelled first."""

        text = (text or "").strip()
        if not text:
            return None

        if self.busy:
            self.cancel()
        if self._state.phase is Phase.IDLE and spoken:
            self.dispatch(TurnEvent.listen())
        self.dispatch(TurnEvent.heard(text) if spoken else TurnEvent.think())

        await self._append("user", text)
        self._generation += 1
        self._task = asyncio.create_task(self._run_turn(self._generation))
        return self._task

    def barge_in(self) -> bool:
        """Cancel the current reply if the assistant is thinking or speaking."""
        if not self.busy:
            return False
        logger.info("Barge-in: cancelling reply in %s", self._state.phase.value)
        self.cancel()
        return True

    def cancel(self) -> None:
        self._abandon()
        self._speaker.cancel(owner=self)
        self.dispatch(TurnEvent.cancel())

    def destroy(self) -> None:
        """Stop this conversation's turn; other producers on the speaker keep playing."""
        self.on_state.clear()
        self.on_message.clear()
        self.cancel()

    def _abandon(self) -> None:
        self._generation += 1
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._close_stream()
        self._segmenter.reset()

    async def wait(self) -> None:
        """Wait for the model stream and any queued speech to finish."""
        task = self._task
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._speaker.wait_idle()

    # ------------------------------------------------------------------ #
    # Turn body
    # ------------------------------------------------------------------ #

    async def _run_turn(self, generation: int) -> None:
        settings = self._voice_settings()
        self._segmenter.reset()
        structured: Optional[bool] = None
        head = ""

        try:
            if settings.streaming and self._open_stream is not None:
                await self._begin_stream(generation, settings.voice_id)

            replies = self._chat.stream_reply(
                list(self._history), casualness=settings.casualness
            )
            async with aclosing(replies) as events:
                async for event in events:
                    if generation != self._generation:
                        return
                    if isinstance(event, DoneEvent):
                        await self._finish(event, bool(structured), generation, settings)
                        return
                    if not isinstance(event, TokenEvent):
                        continue

                    chunk = event.text
                    if structured is None:
                        # JSON replies are spoken from the parsed "say" at the end
                        head += chunk
                        if not head.strip():
                            continue
                        structured = head.lstrip()[0] in "{`"
                        chunk = head
                    if structured:
                        continue

                    self.on_message.fire(
                        {"type": "assistant_response_chunk", "text": event.text}
                    )
                    ready = self._segmenter.push(chunk).ready
                    await self._speak_segments(ready, generation, settings)
            raise ChatStreamError("disconnected")
        except asyncio.CancelledError:
            raise
        except (ChatModelError, ChatStreamError) as exc:
            logger.warning("Model stream failed: %s", exc)
            await self._fail(generation)
        except Exception:
            logger.exception("Turn failed")
            await self._fail(generation)

    async def _finish(
        self,
        event: DoneEvent,
        structured: bool,
        generation: int,
        settings: VoiceSettings,
    ) -> None:
        raw = event.raw or {}
        if raw.get("error"):
            logger.warning("Model stream reported an error: %s", raw.get("error"))
            await self._fail(generation)
            return

        reply = reply_from_raw(raw if raw else event.text)
        if structured:
            self._segmenter.reset()
            await self._speak_reply(reply.say, generation, settings)
        else:
            await self._speak_segments(self._segmenter.flush(), generation, settings)
        if generation != self._generation:
            return

        show = reply.show or strip_pause_tags(event.text)
        if not show:
            await self._fail(generation)
            return

        await self._append("assistant", show)
        self.on_message.fire(
            {"type": "assistant_response_complete", "text": show, "say": reply.say}
        )
        await self._end_stream_input()
        self.dispatch(TurnEvent.stream_done())

    async def _fail(self, generation: int) -> None:
        if generation != self._generation:
            return
        self._segmenter.reset()
        await self._append("assistant", ERROR_TURN)
        self.on_message.fire(
            {"type": "assistant_response_complete", "text": ERROR_TURN, "error": True}
        )
        await self._end_stream_input()
        self.dispatch(TurnEvent.stream_done())

    async def _append(self, role: str, content: str) -> None:
        self._history.append({"role": role, "content": content})
        if self._repository is None:
            return
        try:
            await self._repository.append(self.conversation_id, role, content)
        except Exception as exc:
            logger.warning("Failed to persist %s turn: %s", role, exc)

    # ------------------------------------------------------------------ #
    # Speech output
    # ------------------------------------------------------------------ #

    async def _speak_segments(
        self, segments: list[Segment], generation: int, settings: VoiceSettings
    ) -> None:
        for segment in segments:
            say = strip_pause_tags(
                normalize_say(segment.text, enforce_cap=False, add_invite=False)
            )
            if not say and not segment.pause_ms:
                continue
            await self._emit_speech(
                [self._item(say, settings, segment.pause_ms)],
                generation,
            )

    async def _speak_reply(
        self, say: str, generation: int, settings: VoiceSettings
    ) -> None:
        items = [
            self._item(chunk.text, settings, chunk.pause_ms)
            for chunk in chunk_say_for_playback(say)
        ]
        await self._emit_speech(items, generation)

    async def _emit_speech(self, items: list[SpeakItem], generation: int) -> None:
        if not items or generation != self._generation:
            return

        if self._stream is not None and not self._stream.closed:
            text = " ".join(item.say for item in items if item.say)
            if text:
                if not self._stream_speaking:
                    self._stream_speaking = True
                    self.dispatch(TurnEvent.speak_seg(1))
                await self._stream.send_text(f"{text} ")
                return

        self.dispatch(TurnEvent.speak_seg(len(items)))
        for item in items:
            await self._speaker.speak(item)

    def _item(self, say: str, settings: VoiceSettings, pause_ms: Optional[int]) -> SpeakItem:
        return SpeakItem(
            say=say,
            voice_id=settings.voice_id,
            pause_ms=pause_ms,
            owner=self,
            on_done=self._handle_utterance_end,
        )

    def _handle_utterance_end(self, item: SpeakItem) -> None:
        self.dispatch(TurnEvent.utter_end())

    # ------------------------------------------------------------------ #
    # Streaming synthesis
    # ------------------------------------------------------------------ #

    async def _begin_stream(self, generation: int, voice_id: str) -> None:
        assert self._open_stream is not None
        # the speaker and the stream share the client's audio output
        self._speaker.cancel(owner=self)
        self._stream_speaking = False

        async def on_audio(b64: str, is_final: bool) -> None:
            if generation != self._generation:
                return
            if b64 and self._player is not None:
                if not self._player.started:
                    try:
                        await self._player.start()
                    except AudioOutputError as exc:
                        logger.info("Streaming playback rejected: %s", exc)
                await self._player.push_base64(b64)
            if is_final:
                if self._player is not None:
                    await self._player.finish()
                self._stream_utterance_done()

        def on_error(message: str) -> None:
            if generation != self._generation:
                return
            logger.warning("Streaming synthesis error: %s", message)
            self.on_message.fire({"type": "notice", "message": "Voice stream interrupted."})
            if self._player is not None:
                self._player.stop()
            self._stream_utterance_done()

        stream = await self._open_stream(voice_id, on_audio, on_error)
        if generation == self._generation and not stream.closed:
            self._stream = stream
        else:
            self._schedule_close(stream)

    async def _end_stream_input(self) -> None:
        stream = self._stream
        if stream is None:
            return
        if self._stream_speaking and not stream.closed:
            await stream.flush()
        else:
            self._stream = None
            self._schedule_close(stream)

    def _stream_utterance_done(self) -> None:
        if self._stream_speaking:
            self._stream_speaking = False
            self.dispatch(TurnEvent.utter_end())
        stream, self._stream = self._stream, None
        if stream is not None:
            self._schedule_close(stream)

    def _close_stream(self) -> None:
        self._stream_speaking = False
        if self._player is not None:
            self._player.stop()
        stream, self._stream = self._stream, None
        if stream is not None:
            self._schedule_close(stream)

    def _schedule_close(self, stream: TTSStream) -> None:
        try:
            task = asyncio.get_running_loop().create_task(stream.close())
        except RuntimeError:
            return
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)


__all__ = ["ERROR_TURN", "ChatSource", "StreamOpener", "TurnCoordinator"]
