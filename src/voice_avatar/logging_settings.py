"""Helpers for parsing the simple logging settings file."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

_LEVEL_MAP: dict[str, int | None] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": None,
}

_DEFAULT_KEYS = ("terminal", "speaker", "stt")
_DEFAULT_LEVEL = "info"

# Logger names tuned by the per-subsystem keys.
SUBSYSTEM_LOGGERS = {
    "speaker": "voice_avatar.services.tts",
    "stt": "voice_avatar.services.stt",
}


@dataclass(frozen=True)
class LoggingSettings:
    terminal_level: int | None
    speaker_level: int | None
    stt_level: int | None


def _normalize_level(value: str) -> str:
    return value.strip().lower()


def _resolve_level(value: str) -> int | None:
    return _LEVEL_MAP.get(_normalize_level(value), _LEVEL_MAP[_DEFAULT_LEVEL])


def parse_logging_settings(path: Path) -> LoggingSettings:
    """Parse the human-readable logging settings file.

    Lines look like ``terminal = debug``. ``speaker`` and ``stt`` tune the
    playback engine and recognizer loggers, which are chatty at debug level
    (boundary samples arrive ~30 times a second).
    """

    levels: dict[str, int | None] = {
        key: _LEVEL_MAP[_DEFAULT_LEVEL] for key in _DEFAULT_KEYS
    }

    if path.exists():
        for raw_line in path.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            if "=" not in line:
                continue
            key, value = (part.strip() for part in line.split("=", 1))
            normalized_key = key.lower()
            if normalized_key in _DEFAULT_KEYS:
                levels[normalized_key] = _resolve_level(value)

    return LoggingSettings(
        terminal_level=levels["terminal"],
        speaker_level=levels["speaker"],
        stt_level=levels["stt"],
    )


def apply_subsystem_levels(settings: LoggingSettings) -> None:
    """Set the speaker/stt logger levels; ``off`` silences the subsystem."""

    for key, logger_name in SUBSYSTEM_LOGGERS.items():
        level = getattr(settings, f"{key}_level")
        target = logging.getLogger(logger_name)
        if level is None:
            target.disabled = True
        else:
            target.disabled = False
            target.setLevel(level)


__all__ = [
    "LoggingSettings",
    "SUBSYSTEM_LOGGERS",
    "apply_subsystem_levels",
    "parse_logging_settings",
]
