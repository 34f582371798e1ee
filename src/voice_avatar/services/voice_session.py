import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import WebSocket

from .stt.adapter import SpeechToTextAdapter
from .tts.speaker import Boundary, Speaker
from .turn_coordinator import TurnCoordinator
from .turn_fsm import TurnState

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VoiceSession:
    """Tracks the state of a single voice client connection."""

    client_id: str
    websocket: WebSocket
    conversation_id: str = "default"
    state: str = "idle"
    coordinator: Optional[TurnCoordinator] = None
    stt: Optional[SpeechToTextAdapter] = None
    started_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)

    def update_activity(self):
        """Update the last activity timestamp."""
        self.last_activity = _utcnow()


class VoiceConnectionManager:
    """Manages active WebSocket connections and their sessions.

    ``post`` is the synchronous entry point used by engine hooks; posted
    frames are delivered in order by a single sender task.
    """

    def __init__(self):
        self.active_connections: Dict[str, VoiceSession] = {}
        self._outbox: Optional[asyncio.Queue] = None
        self._sender: Optional[asyncio.Task] = None

    @property
    def has_listeners(self) -> bool:
        return bool(self.active_connections)

    async def connect(
        self, websocket: WebSocket, client_id: str, conversation_id: str = "default"
    ) -> VoiceSession:
        """Accept a new WebSocket connection and create a session."""
        await websocket.accept()
        session = VoiceSession(
            client_id=client_id, websocket=websocket, conversation_id=conversation_id
        )
        self.active_connections[client_id] = session
        logger.info(f"Client connected: {client_id}")
        return session

    def disconnect(self, client_id: str):
        """Remove a client session."""
        session = self.active_connections.pop(client_id, None)
        if session is not None:
            logger.info(f"Client disconnected: {client_id}")

    def get_session(self, client_id: str) -> Optional[VoiceSession]:
        """Retrieve a session by client ID."""
        return self.active_connections.get(client_id)

    async def send_message(self, client_id: str, message: dict):
        """Send a JSON message to a specific client."""
        session = self.active_connections.get(client_id)
        if session:
            try:
                await session.websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Error sending to {client_id}: {e}")
                self.disconnect(client_id)

    def publish_state(self, client_id: str, state: TurnState):
        """Record the turn state of a client session and broadcast it."""
        session = self.active_connections.get(client_id)
        if session:
            session.state = state.phase.value
            session.update_activity()
            logger.debug(f"Client {client_id} state changed to {session.state}")
        self.post(
            {
                "type": "state",
                "state": state.phase.value,
                "pending": state.pending,
                "stream_done": state.stream_done,
            }
        )

    async def broadcast(self, message: dict):
        """Broadcast a message to all connected clients."""
        clients = list(self.active_connections.keys())
        if message.get("type") != "tts_audio_chunk":
            logger.debug(f"Broadcasting {message.get('type')} to {len(clients)} clients")
        for client_id in clients:
            await self.send_message(client_id, message)

    def post(self, message: dict[str, Any], client_id: Optional[str] = None) -> None:
        """Queue a frame for delivery without awaiting it."""
        if self._outbox is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.debug("No running loop; dropping %s frame", message.get("type"))
                return
            self._outbox = asyncio.Queue()
            self._sender = loop.create_task(self._drain_outbox())
        self._outbox.put_nowait((client_id, message))

    async def _drain_outbox(self) -> None:
        assert self._outbox is not None
        while True:
            client_id, message = await self._outbox.get()
            try:
                if client_id is None:
                    await self.broadcast(message)
                else:
                    await self.send_message(client_id, message)
            except Exception:
                logger.exception("Failed to deliver %s frame", message.get("type"))

    async def close(self) -> None:
        sender, self._sender = self._sender, None
        self._outbox = None
        if sender is not None:
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass


def bind_speaker_events(speaker: Speaker, manager: VoiceConnectionManager) -> None:
    """Forward playback telemetry to every connected client."""

    def on_boundary(boundary: Boundary) -> None:
        manager.post(
            {
                "type": "boundary",
                "progress": round(boundary.progress, 4),
                "energy": round(boundary.energy, 4),
            }
        )

    speaker.on_start.set(lambda: manager.post({"type": "speaking_start"}))
    speaker.on_end.set(lambda: manager.post({"type": "speaking_end"}))
    speaker.on_boundary.set(on_boundary)
    speaker.on_notice.set(lambda message: manager.post({"type": "notice", "message": message}))


__all__ = [
    "VoiceConnectionManager",
    "VoiceSession",
    "bind_speaker_events",
]
