"""Application wiring: health, settings, usage, conversations and the voice socket."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from voice_avatar.app import create_app
from voice_avatar.config import Settings
from voice_avatar.services.chat_model import DoneEvent, TokenEvent, finalize_raw


class ScriptedChat:
    def __init__(self, tokens) -> None:
        self.tokens = tokens

    async def stream_reply(self, messages, *, temperature=None, casualness=None):
        for token in self.tokens:
            await asyncio.sleep(0)
            yield TokenEvent(token)
        text = "".join(self.tokens)
        yield DoneEvent(text=text, raw=finalize_raw(text))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        openai_api_key=None,
        elevenlabs_api_key=None,
        deepgram_api_key=None,
        default_voice_id="voice-default",
        audio_cache_db_path=tmp_path / "cache.db",
        audio_cache_dir=tmp_path / "cache",
        conversation_db_path=tmp_path / "conversations.db",
        voice_settings_path=tmp_path / "voice_settings.json",
        usage_path=tmp_path / "usage.json",
        logging_settings_path=tmp_path / "logging_settings.conf",
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


def test_health_reports_capabilities(app):
    with TestClient(app) as client:
        body = client.get("/health").json()

    assert body["status"] == "ok"
    assert body["tts_available"] is False
    assert body["stt_available"] is False
    assert body["clients"] == 0


def test_voice_settings_round_trip(app, settings):
    with TestClient(app) as client:
        assert client.get("/api/voice/settings").json()["voice_id"] == "voice-default"

        updated = client.put(
            "/api/voice/settings", json={"casualness": "Spicy", "fallback": False}
        ).json()
        assert updated["casualness"] == "Spicy"
        assert updated["fallback"] is False
        assert app.state.speaker.fallback_enabled is False
        assert settings.voice_settings_path.exists()

        assert client.put("/api/voice/settings", json={"casualness": "Wild"}).status_code == 422

        defaults = client.delete("/api/voice/settings").json()
        assert defaults["casualness"] == "Normal"
        assert app.state.speaker.fallback_enabled is True


def test_usage_summary(app):
    app.state.usage_tracker.record(120)
    app.state.usage_tracker.record(80)

    with TestClient(app) as client:
        usage = client.get("/api/voice/usage").json()

    assert usage == {"total": 200, "samples": 2, "last": [120, 80], "average": 100}


def test_conversation_log_endpoints(app):
    with TestClient(app) as client:
        repository = app.state.repository
        client.portal.call(repository.append, "c1", "user", "Hello")
        client.portal.call(repository.append, "c1", "assistant", "Hi there.")

        body = client.get("/api/conversations/c1").json()
        assert body["conversation_id"] == "c1"
        assert [(t["role"], t["content"]) for t in body["turns"]] == [
            ("user", "Hello"),
            ("assistant", "Hi there."),
        ]

        assert client.delete("/api/conversations/c1").status_code == 204
        assert client.get("/api/conversations/c1").json()["turns"] == []


def _receive_until(ws, frame_type: str, limit: int = 500) -> list[dict]:
    frames = []
    for _ in range(limit):
        frame = ws.receive_json()
        frames.append(frame)
        if frame.get("type") == frame_type:
            return frames
    raise AssertionError(f"no {frame_type} frame received")


def test_voice_socket_runs_a_typed_turn(app):
    app.state.chat_client = ScriptedChat(["All good. ", "Thanks for asking."])

    with TestClient(app) as client:
        with client.websocket_connect("/api/voice/connect?client_id=kiosk-1") as ws:
            session = next(
                f for f in _receive_until(ws, "session") if f["type"] == "session"
            )
            assert session["client_id"] == "kiosk-1"
            assert session["conversation_id"] == "kiosk-1"
            assert session["stt_supported"] is False
            assert session["history"] == []

            ws.send_json({"type": "start_listening"})
            notice = _receive_until(ws, "notice")[-1]
            assert notice["message"] == "Speech recognition is not available."

            ws.send_json({"type": "text", "text": "How are you?"})
            frames = _receive_until(ws, "assistant_response_complete")

            chunks = [f["text"] for f in frames if f["type"] == "assistant_response_chunk"]
            assert "".join(chunks) == "All good. Thanks for asking."
            states = [f["state"] for f in frames if f["type"] == "state"]
            assert "thinking" in states
            assert frames[-1]["text"] == "All good. Thanks for asking."

            ws.send_json({"type": "cancel"})
            for _ in range(500):
                frame = ws.receive_json()
                if frame.get("type") == "state" and frame["state"] == "listening":
                    break
            else:
                raise AssertionError("never returned to listening")

        history = client.portal.call(app.state.repository.list, "kiosk-1")

    assert [turn["content"] for turn in history] == [
        "How are you?",
        "All good. Thanks for asking.",
    ]
