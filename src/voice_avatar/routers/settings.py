"""API routes for voice preferences, usage and conversation logs."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..repository import ConversationRepository
from ..schemas.chat import ConversationResponse, ConversationTurn
from ..schemas.voice_settings import UsageSummary, VoiceSettings, VoiceSettingsUpdate
from ..services.usage import UsageTracker
from ..services.voice_settings import VoiceSettingsService

router = APIRouter(prefix="/api", tags=["settings"])


def get_voice_settings_service(request: Request) -> VoiceSettingsService:
    service = getattr(request.app.state, "voice_settings_service", None)
    if service is None:  # pragma: no cover - defensive
        raise RuntimeError("Voice settings service is not configured")
    return service


def get_usage_tracker(request: Request) -> UsageTracker:
    tracker = getattr(request.app.state, "usage_tracker", None)
    if tracker is None:  # pragma: no cover - defensive
        raise RuntimeError("Usage tracker is not configured")
    return tracker


def get_repository(request: Request) -> ConversationRepository:
    repository = getattr(request.app.state, "repository", None)
    if repository is None:  # pragma: no cover - defensive
        raise RuntimeError("Conversation repository is not configured")
    return repository


@router.get("/voice/settings", response_model=VoiceSettings)
async def read_voice_settings(
    service: VoiceSettingsService = Depends(get_voice_settings_service),
) -> VoiceSettings:
    return service.get_settings()


@router.put("/voice/settings", response_model=VoiceSettings)
async def update_voice_settings(
    payload: VoiceSettingsUpdate,
    request: Request,
    service: VoiceSettingsService = Depends(get_voice_settings_service),
) -> VoiceSettings:
    updated = service.update_settings(payload)
    speaker = getattr(request.app.state, "speaker", None)
    if speaker is not None:
        speaker.fallback_enabled = updated.fallback
        speaker.default_voice_id = updated.voice_id
    return updated


@router.delete("/voice/settings", response_model=VoiceSettings)
async def reset_voice_settings(
    request: Request,
    service: VoiceSettingsService = Depends(get_voice_settings_service),
) -> VoiceSettings:
    defaults = service.reset_to_defaults()
    speaker = getattr(request.app.state, "speaker", None)
    if speaker is not None:
        speaker.fallback_enabled = defaults.fallback
        speaker.default_voice_id = defaults.voice_id
    return defaults


@router.get("/voice/usage", response_model=UsageSummary)
async def read_usage(tracker: UsageTracker = Depends(get_usage_tracker)) -> UsageSummary:
    return tracker.state()


@router.get("/conversations/{conversation_id}", response_model=ConversationResponse)
async def read_conversation(
    conversation_id: str,
    repository: ConversationRepository = Depends(get_repository),
) -> ConversationResponse:
    turns = await repository.list(conversation_id)
    return ConversationResponse(
        conversation_id=conversation_id,
        turns=[ConversationTurn.model_validate(turn) for turn in turns],
    )


@router.delete("/conversations/{conversation_id}", status_code=204)
async def clear_conversation(
    conversation_id: str,
    repository: ConversationRepository = Depends(get_repository),
) -> None:
    await repository.clear(conversation_id)


__all__ = ["router"]
