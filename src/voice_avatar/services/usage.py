"""Rolling record of characters sent for fresh synthesis."""

import json
import logging
from pathlib import Path

from ..schemas.voice_settings import UsageSummary

logger = logging.getLogger(__name__)

MAX_WINDOW = 10


class UsageTracker:
    """Persist synthesis usage as a small JSON document.

    Only freshly synthesized audio is recorded; the playback engine never
    calls ``record`` for cache hits. All I/O is best-effort.
    """

    def __init__(self, path: Path):
        self._path = path

    def _load(self) -> UsageSummary:
        if not self._path.exists():
            return UsageSummary()
        try:
            data = json.loads(self._path.read_text())
            last = data.get("last")
            if not isinstance(last, list):
                last = []
            return UsageSummary(
                total=int(data.get("total") or 0),
                samples=int(data.get("samples") or 0),
                last=[int(n) for n in last][-MAX_WINDOW:],
            )
        except Exception as e:
            logger.warning(f"Failed to read usage from {self._path}: {e}")
            return UsageSummary()

    def record(self, chars: int) -> None:
        state = self._load()
        state.total += chars
        state.samples += 1
        state.last.append(chars)
        state.last = state.last[-MAX_WINDOW:]
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                json.dumps(
                    {"total": state.total, "samples": state.samples, "last": state.last}
                )
            )
        except Exception as e:
            logger.warning(f"Failed to persist usage to {self._path}: {e}")
            return
        logger.debug(f"Recorded {chars} synthesized chars (total {state.total})")

    def average(self, n: int = MAX_WINDOW) -> int:
        window = self._load().last[-n:]
        if not window:
            return 0
        return round(sum(window) / len(window))

    def state(self) -> UsageSummary:
        summary = self._load()
        summary.average = self.average()
        return summary


__all__ = ["MAX_WINDOW", "UsageTracker"]
