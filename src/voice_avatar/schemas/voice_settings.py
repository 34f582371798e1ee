"""Voice preference schema: voice, speaking style and degradation policy."""

from typing import Literal

from pydantic import BaseModel, Field

Casualness = Literal["Light", "Normal", "Spicy"]

DEFAULT_VOICE_ID = "1SM7GgM6IMuvQlz2BwM3"


class VoiceSettings(BaseModel):
    """User-facing voice preferences."""

    voice_id: str = Field(
        default=DEFAULT_VOICE_ID,
        description="ElevenLabs voice used for synthesis.",
    )

    casualness: Casualness = Field(
        default="Normal",
        description="How conversational the assistant sounds. Options: 'Light', 'Normal', 'Spicy'.",
    )

    fallback: bool = Field(
        default=True,
        description="Ask the client to use its on-device voice when synthesis fails.",
    )

    streaming: bool = Field(
        default=False,
        description="Use the streaming synthesis session instead of per-utterance requests.",
    )


class VoiceSettingsUpdate(BaseModel):
    """Partial update schema - all fields optional."""

    voice_id: str | None = Field(default=None, min_length=1)
    casualness: Casualness | None = Field(default=None)
    fallback: bool | None = Field(default=None)
    streaming: bool | None = Field(default=None)


class UsageSummary(BaseModel):
    """Characters sent for fresh synthesis (cache hits excluded)."""

    total: int = 0
    samples: int = 0
    last: list[int] = Field(default_factory=list)
    average: int = 0
