"""Single-subscriber event hooks."""

from __future__ import annotations

import logging
from typing import Callable, Generic, Optional, ParamSpec

logger = logging.getLogger(__name__)

P = ParamSpec("P")


class Hook(Generic[P]):
    """Holds at most one callback; ``set`` replaces, ``clear`` removes.

    ``fire`` never propagates subscriber errors into the caller.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._callback: Optional[Callable[P, object]] = None

    def set(self, callback: Callable[P, object]) -> None:
        self._callback = callback

    def clear(self, callback: Optional[Callable[P, object]] = None) -> None:
        """Remove the subscriber; with ``callback``, only if it is the current one."""
        if callback is None or self._callback == callback:
            self._callback = None

    @property
    def is_set(self) -> bool:
        return self._callback is not None

    def holds(self, callback: Callable[P, object]) -> bool:
        return self._callback is not None and self._callback == callback

    def fire(self, *args: P.args, **kwargs: P.kwargs) -> None:
        callback = self._callback
        if callback is None:
            return
        try:
            callback(*args, **kwargs)
        except Exception:
            logger.exception("Subscriber for %s hook failed", self.name)


__all__ = ["Hook"]
