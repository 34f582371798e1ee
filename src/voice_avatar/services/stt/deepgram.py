"""
Deepgram recognizer using the synchronous SDK pattern with threading.

The SDK listener runs on a background thread with no event loop, so every
callback is handed back to the application loop with
``call_soon_threadsafe`` before it reaches the adapter.
"""

import asyncio
import logging
import threading
from typing import Callable, List, Optional

from deepgram import DeepgramClient
from deepgram.core.events import EventType

from .adapter import RecognitionResult

logger = logging.getLogger(__name__)

# Audio settings (must match the client's capture format)
SAMPLE_RATE = 16000


class DeepgramRecognizer:
    """One Deepgram Flux connection per recognition session."""

    def __init__(
        self,
        api_key: str,
        session_id: str = "voice",
        eot_threshold: float = 0.7,
        eot_timeout_ms: int = 5000,
        event_loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self.api_key = api_key
        self.session_id = session_id
        self.eot_threshold = eot_threshold
        self.eot_timeout_ms = eot_timeout_ms

        self.on_result: Optional[Callable[[List[RecognitionResult]], None]] = None
        self.on_end: Optional[Callable[[], None]] = None
        self.on_error: Optional[Callable[[str], None]] = None

        self._event_loop = event_loop
        self._client = DeepgramClient(api_key=api_key)
        self._context_manager = None
        self._socket = None
        self._ready = threading.Event()
        self._running = False
        self._ended = False
        self._listening_thread: Optional[threading.Thread] = None

    def _post(self, callback: Optional[Callable], *args) -> None:
        """Run ``callback`` on the application loop."""
        if callback is None:
            return
        if self._event_loop is None:
            logger.error("No event loop available for recognizer callback")
            return
        self._event_loop.call_soon_threadsafe(callback, *args)

    def _handle_message(self, result):
        try:
            event = getattr(result, "event", None)
            transcript = getattr(result, "transcript", None)
            if transcript:
                is_final = event == "EndOfTurn"
                logger.debug(f"Transcript for {self.session_id}: '{transcript}' (final={is_final})")
                self._post(self.on_result, [RecognitionResult(transcript, is_final)])
                return

            # v1 style results carry channel.alternatives
            if hasattr(result, "channel"):
                alternatives = result.channel.alternatives
                if alternatives and alternatives[0].transcript:
                    is_final = bool(getattr(result, "is_final", False))
                    self._post(
                        self.on_result,
                        [RecognitionResult(alternatives[0].transcript, is_final)],
                    )
        except Exception as e:
            logger.error(f"Error processing transcript for {self.session_id}: {e}", exc_info=True)

    def _on_open(self, _):
        logger.info(f"Deepgram connected for {self.session_id}")
        self._ready.set()

    def _on_close(self, _):
        logger.info(f"Deepgram disconnected for {self.session_id}")
        self._ready.clear()
        self._signal_end()

    def _on_error(self, error):
        logger.error(f"Deepgram error for {self.session_id}: {error}")
        self._post(self.on_error, str(error))

    def _signal_end(self) -> None:
        if self._ended:
            return
        self._ended = True
        self._post(self.on_end)

    def _connect(self) -> bool:
        params = {
            "model": "flux-general-en",
            "encoding": "linear16",
            "sample_rate": str(SAMPLE_RATE),
            "eot_threshold": str(self.eot_threshold),
            "eot_timeout_ms": str(self.eot_timeout_ms),
        }
        try:
            self._context_manager = self._client.listen.v2.connect(**params)
            self._socket = self._context_manager.__enter__()

            self._socket.on(EventType.OPEN, self._on_open)
            self._socket.on(EventType.MESSAGE, self._handle_message)
            self._socket.on(EventType.ERROR, self._on_error)
            self._socket.on(EventType.CLOSE, self._on_close)

            def listen_loop():
                try:
                    self._socket.start_listening()
                except Exception as e:
                    if self._running:
                        logger.error(f"Listen error for {self.session_id}: {e}")

            self._running = True
            self._listening_thread = threading.Thread(target=listen_loop, daemon=True)
            self._listening_thread.start()

            if not self._ready.wait(timeout=10.0):
                raise RuntimeError(f"Failed to connect to Deepgram for {self.session_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to connect to Deepgram for {self.session_id}: {e}", exc_info=True)
            return False

    def _close(self) -> None:
        self._running = False
        self._ready.clear()
        if self._context_manager:
            try:
                self._context_manager.__exit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing Deepgram for {self.session_id}: {e}")
            self._context_manager = None
            self._socket = None

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._event_loop = loop
        self._ended = False
        success = await loop.run_in_executor(None, self._connect)
        if not success:
            self._post(self.on_error, "deepgram connection failed")
            self._signal_end()

    async def stop(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._close)
        self._signal_end()

    def abort(self) -> None:
        # callbacks for this session are ignored by the adapter after abort
        self._ended = True
        threading.Thread(target=self._close, daemon=True).start()

    async def send_audio(self, data: bytes) -> None:
        if not (self._socket and self._ready.is_set()):
            return
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._send, data)

    def _send(self, data: bytes) -> None:
        try:
            self._socket.send_media(data)
        except Exception as e:
            logger.error(f"Error sending audio for {self.session_id}: {e}")


__all__ = ["DeepgramRecognizer", "SAMPLE_RATE"]
