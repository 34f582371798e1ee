"""Voice settings service for persisting voice preferences."""

import json
import logging
from pathlib import Path
from typing import Optional

from ..schemas.voice_settings import VoiceSettings, VoiceSettingsUpdate

logger = logging.getLogger(__name__)


class VoiceSettingsService:
    """Service for managing voice settings persistence."""

    def __init__(self, settings_path: Path, default_voice_id: Optional[str] = None):
        self._path = settings_path
        self._default_voice_id = default_voice_id
        self._cached: Optional[VoiceSettings] = None

    def _defaults(self) -> VoiceSettings:
        if self._default_voice_id:
            return VoiceSettings(voice_id=self._default_voice_id)
        return VoiceSettings()

    def get_settings(self) -> VoiceSettings:
        """Load settings from file or return defaults."""
        if self._cached is not None:
            return self._cached

        if self._path.exists():
            try:
                data = json.loads(self._path.read_text())
                self._cached = VoiceSettings.model_validate(data)
                logger.info(f"Loaded voice settings from {self._path}")
            except Exception as e:
                logger.warning(f"Failed to load voice settings: {e}, using defaults")
                self._cached = self._defaults()
        else:
            self._cached = self._defaults()
            logger.info("Using default voice settings")

        return self._cached

    def update_settings(self, update: VoiceSettingsUpdate) -> VoiceSettings:
        """Update settings with partial data and persist to file."""
        current = self.get_settings()

        update_data = update.model_dump(exclude_none=True)
        merged = current.model_copy(update=update_data)

        self._save(merged)
        return merged

    def reset_to_defaults(self) -> VoiceSettings:
        """Reset settings to defaults."""
        defaults = self._defaults()
        self._save(defaults)
        return defaults

    def _save(self, settings: VoiceSettings) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(settings.model_dump_json(indent=2))
        self._cached = settings
        logger.info(f"Saved voice settings to {self._path}")


__all__ = ["VoiceSettingsService"]
