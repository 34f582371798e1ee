"""Pure conversation-turn state machine.

    idle ──LISTEN──▶ listening ──HEARD/THINK──▶ thinking ──SPEAK_SEG(n)──▶ speaking
                        ▲                                                  │
                        └──── UTTER_END with pending == 0 and stream done ─┘

``STREAM_DONE`` returns to listening straight away when nothing is queued;
``CANCEL`` returns to listening from anywhere.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class Phase(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"


class EventType(str, Enum):
    LISTEN = "LISTEN"
    HEARD = "HEARD"
    THINK = "THINK"
    SPEAK_SEG = "SPEAK_SEG"
    UTTER_END = "UTTER_END"
    STREAM_DONE = "STREAM_DONE"
    CANCEL = "CANCEL"


@dataclass(frozen=True)
class TurnEvent:
    type: EventType
    text: Optional[str] = None
    count: int = 1

    @classmethod
    def listen(cls) -> "TurnEvent":
        return cls(EventType.LISTEN)

    @classmethod
    def heard(cls, text: str) -> "TurnEvent":
        return cls(EventType.HEARD, text=text)

    @classmethod
    def think(cls) -> "TurnEvent":
        return cls(EventType.THINK)

    @classmethod
    def speak_seg(cls, count: int = 1) -> "TurnEvent":
        return cls(EventType.SPEAK_SEG, count=count)

    @classmethod
    def utter_end(cls) -> "TurnEvent":
        return cls(EventType.UTTER_END)

    @classmethod
    def stream_done(cls) -> "TurnEvent":
        return cls(EventType.STREAM_DONE)

    @classmethod
    def cancel(cls) -> "TurnEvent":
        return cls(EventType.CANCEL)


@dataclass(frozen=True)
class TurnState:
    phase: Phase = Phase.IDLE
    pending: int = 0
    stream_done: bool = False


def reduce(state: TurnState, event: TurnEvent) -> TurnState:
    """Return the state after ``event``. Unknown transitions are no-ops."""

    kind = event.type

    if kind is EventType.CANCEL:
        return TurnState(Phase.LISTENING, 0, False)

    if kind is EventType.STREAM_DONE:
        if state.pending == 0:
            return TurnState(Phase.LISTENING, 0, True)
        return replace(state, stream_done=True)

    if kind is EventType.LISTEN:
        if state.phase is Phase.IDLE:
            return TurnState(Phase.LISTENING, 0, False)
        return state

    if kind in (EventType.HEARD, EventType.THINK):
        if state.phase is Phase.LISTENING or (
            kind is EventType.THINK and state.phase is Phase.IDLE
        ):
            return TurnState(Phase.THINKING, 0, False)
        return state

    if kind is EventType.SPEAK_SEG:
        count = max(0, event.count)
        if state.phase in (Phase.THINKING, Phase.SPEAKING) and count:
            return replace(state, phase=Phase.SPEAKING, pending=state.pending + count)
        return state

    if kind is EventType.UTTER_END:
        if state.phase is not Phase.SPEAKING:
            return state
        pending = max(0, state.pending - 1)
        if pending == 0 and state.stream_done:
            return TurnState(Phase.LISTENING, 0, True)
        return replace(state, pending=pending)

    return state


__all__ = ["EventType", "Phase", "TurnEvent", "TurnState", "reduce"]
