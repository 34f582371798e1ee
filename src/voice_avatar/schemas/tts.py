"""Request body for one-shot speech synthesis."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TTSRequest(BaseModel):
    """``{say, voiceId?, modelId?, noCap?}``; camelCase and snake_case both accepted."""

    say: str = ""
    voice_id: Optional[str] = Field(default=None, alias="voiceId")
    model_id: Optional[str] = Field(default=None, alias="modelId")
    no_cap: bool = Field(default=False, alias="noCap")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


__all__ = ["TTSRequest"]
