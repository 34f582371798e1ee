"""Pydantic models for chat requests and conversation logs."""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .voice_settings import Casualness


class ChatMessage(BaseModel):
    """Represents a single chat message."""

    role: Literal["system", "user", "assistant"]
    content: str

    model_config = ConfigDict(extra="ignore")


class ChatStreamRequest(BaseModel):
    """Incoming request for ``/api/chat/stream``."""

    messages: List[ChatMessage]
    temperature: Optional[float] = Field(default=None, ge=0, le=2)
    casualness: Optional[Casualness] = None


class ConversationTurn(BaseModel):
    id: int
    role: Literal["user", "assistant"]
    content: str
    created_at: Optional[str] = None


class ConversationResponse(BaseModel):
    conversation_id: str
    turns: List[ConversationTurn] = Field(default_factory=list)


__all__ = [
    "ChatMessage",
    "ChatStreamRequest",
    "ConversationResponse",
    "ConversationTurn",
]
