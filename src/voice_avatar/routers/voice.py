import asyncio
import base64
import binascii
import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from starlette.datastructures import State

from ..services.stt.adapter import RecognizerFactory, SpeechToTextAdapter
from ..services.turn_coordinator import TurnCoordinator
from ..services.voice_session import VoiceConnectionManager

router = APIRouter(prefix="/api/voice", tags=["Voice Assistant"])
logger = logging.getLogger(__name__)


def _recognizer_factory(state: State, client_id: str) -> Optional[RecognizerFactory]:
    factory = getattr(state, "recognizer_factory", None)
    if factory is None:
        return None
    return lambda: factory(client_id)


async def handle_connection(
    websocket: WebSocket,
    client_id: str,
    conversation_id: str,
    state: State,
):
    """
    Main loop for handling a single client's WebSocket connection.

    Client messages:
        text             typed user input          {"type": "text", "text": ...}
        start_listening  open a recognition session
        stop_listening   end it (final transcript follows the debounce)
        audio_chunk      base64 PCM16 for the recognizer
        barge_in         cancel the reply if one is in progress
        cancel           cancel unconditionally
    """
    manager: VoiceConnectionManager = state.voice_manager
    session = await manager.connect(websocket, client_id, conversation_id)

    coordinator: TurnCoordinator = state.coordinator_factory(conversation_id)
    coordinator.on_state.set(lambda turn_state: manager.publish_state(client_id, turn_state))
    coordinator.on_message.set(lambda message: manager.post(message, client_id))
    try:
        await coordinator.load_history()
    except Exception as e:
        logger.warning(f"Could not load conversation {conversation_id}: {e}")

    def on_interim(text: str) -> None:
        manager.post({"type": "transcript", "text": text, "is_final": False}, client_id)

    async def on_final_submit(text: str) -> None:
        logger.debug(f"Final transcript ({client_id}): {text}")
        manager.post({"type": "transcript", "text": text, "is_final": True}, client_id)
        await coordinator.submit(text, spoken=True)

    stt = SpeechToTextAdapter(
        _recognizer_factory(state, client_id),
        on_interim,
        on_final_submit,
        debounce_ms=state.settings.stt_debounce_ms,
    )
    stt.on_speech_start.set(coordinator.barge_in)

    session.coordinator = coordinator
    session.stt = stt
    manager.publish_state(client_id, coordinator.state)
    await manager.send_message(
        client_id,
        {
            "type": "session",
            "client_id": client_id,
            "conversation_id": conversation_id,
            "stt_supported": stt.supported,
            "history": coordinator.history,
        },
    )

    try:
        while True:
            data: dict[str, Any] = await websocket.receive_json()
            msg_type = data.get("type")
            session.update_activity()

            if msg_type == "text":
                text = str(data.get("text") or "")
                if text.strip():
                    stt.abort()
                    await coordinator.submit(text)

            elif msg_type == "start_listening":
                coordinator.start_listening()
                if not stt.supported:
                    await manager.send_message(
                        client_id,
                        {"type": "notice", "message": "Speech recognition is not available."},
                    )
                    continue
                await stt.start(str(data.get("seed") or ""))

            elif msg_type == "stop_listening":
                await stt.stop()

            elif msg_type == "audio_chunk":
                payload = data.get("data")
                if not isinstance(payload, str):
                    continue
                try:
                    chunk = base64.b64decode(payload)
                except (binascii.Error, ValueError):
                    logger.debug(f"Ignoring undecodable audio from {client_id}")
                    continue
                await stt.send_audio(chunk)

            elif msg_type == "barge_in":
                coordinator.barge_in()

            elif msg_type == "cancel":
                stt.abort()
                coordinator.cancel()

            else:
                logger.debug(f"Ignoring unknown message type from {client_id}: {msg_type}")

    except WebSocketDisconnect:
        logger.info(f"Client {client_id} disconnected")
    except Exception as e:
        logger.error(f"Error in connection loop for {client_id}: {e}", exc_info=True)
    finally:
        stt.abort()
        coordinator.destroy()
        manager.disconnect(client_id)
        # let scheduled close/notify tasks run before the socket goes away
        await asyncio.sleep(0)


@router.websocket("/connect")
async def voice_connect(websocket: WebSocket):
    client_id = websocket.query_params.get("client_id") or f"voice-{uuid.uuid4().hex[:8]}"
    conversation_id = websocket.query_params.get("conversation_id") or client_id
    await handle_connection(websocket, client_id, conversation_id, websocket.app.state)


__all__ = ["router", "handle_connection"]
