"""
Streaming Segmenter for the TTS Pipeline.

Turns incrementally arriving language-model text into speakable segments
so that audio can start before the reply is complete.

Architecture:
    LLM tokens → Segmenter.push() → ready segments → Sayifier → Speaker

Boundaries:
    - ``[pause-NNN]`` tags (2-5 digits) are always hard boundaries; the tag
      stays at the end of the segment and its duration is exposed as
      ``Segment.pause_ms``.
    - ``.``, ``!`` and ``?`` end a segment when followed by whitespace or a
      closing quote/bracket (closers are kept with the segment).
    - A run of three or more periods is an ellipsis and ends a segment
      wherever it appears.
    - A period between digits (``3.14``) or after a known abbreviation
      (``Dr.``, ``e.g.``, ``U.S.``) never ends a segment.

A boundary that cannot be decided without the next character (a terminator
at the very end of the buffer, a digit before a trailing period, a closer
run that reaches the end) is held back until more text arrives or
``flush()`` is called. Segments are therefore the same however the text
is chunked.

Usage:
    segmenter = Segmenter()

    for token in llm_stream:
        for segment in segmenter.push(token).ready:
            await speaker.speak(SpeakItem(say=segment.text))

    for segment in segmenter.flush():
        await speaker.speak(SpeakItem(say=segment.text))
"""

import re
from dataclasses import dataclass
from typing import List, NamedTuple, Optional

PAUSE_TAG_RE = re.compile(r"\[pause-(\d{2,5})\]")

TERMINATORS = ".!?"
CLOSERS = "\"')]”’"

# Tokens whose trailing period is not a sentence end
ABBREVIATIONS = frozenset(
    {
        "mr",
        "mrs",
        "ms",
        "dr",
        "prof",
        "sr",
        "jr",
        "st",
        "no",
        "nos",
        "etc",
        "e.g",
        "i.e",
        "vs",
        "fig",
        "cf",
        "inc",
        "ltd",
        "co",
        "u.s",
        "u.k",
        "ph.d",
    }
)

# Boundary decision needs characters that have not arrived yet
_PENDING = -1


@dataclass(frozen=True)
class Segment:
    """A complete, speakable chunk of text with an optional trailing pause."""

    text: str
    pause_ms: Optional[int] = None


class SegmentResult(NamedTuple):
    ready: List[Segment]
    rest: str


def _is_digit(ch: str) -> bool:
    return "0" <= ch <= "9"


def _is_token_char(ch: str) -> bool:
    return ch.isascii() and (ch.isalpha() or ch in ".-")


def _count_run(text: str, idx: int, ch: str) -> int:
    n = 0
    while idx + n < len(text) and text[idx + n] == ch:
        n += 1
    return n


def _consume_closers(text: str, idx: int) -> int:
    while idx < len(text) and text[idx] in CLOSERS:
        idx += 1
    return idx


def _read_prev_token(text: str, idx: int, start: int) -> str:
    # read back over letters, dots and dashes so "U.S" and "Ph.D" survive
    j = idx - 1
    while j >= start and _is_token_char(text[j]):
        j -= 1
    return text[j + 1 : idx]


class Segmenter:
    """
    Stateful segmenter holding an unconsumed ``tail`` between pushes.

    ``push`` and ``flush`` never raise; malformed pause tags are ordinary
    text.
    """

    def __init__(self) -> None:
        self._tail = ""

    @property
    def tail(self) -> str:
        """Text received but not yet part of a ready segment."""
        return self._tail

    def push(self, chunk: str) -> SegmentResult:
        """Append ``chunk`` and return every segment it completes."""
        if not chunk:
            return SegmentResult([], self._tail)

        text = self._tail + chunk
        ready: List[Segment] = []
        start = 0
        i = 0

        while i < len(text):
            match = PAUSE_TAG_RE.match(text, i)
            if match:
                self._emit(ready, text[start : match.end()], int(match.group(1)))
                start = i = match.end()
                continue

            if text[i] in TERMINATORS:
                end = self._boundary_end(text, i, start)
                if end == _PENDING:
                    break
                if end is not None:
                    self._emit(ready, text[start:end])
                    start = i = end
                    continue

            i += 1

        self._tail = text[start:]
        return SegmentResult(ready, self._tail)

    def flush(self) -> List[Segment]:
        """Return the remaining tail as a final segment and clear it."""
        remainder = self._tail.strip()
        self._tail = ""
        if not remainder:
            return []
        return [Segment(text=remainder)]

    def reset(self) -> None:
        """Drop buffered text (used on barge-in)."""
        self._tail = ""

    @staticmethod
    def _emit(ready: List[Segment], raw: str, pause_ms: Optional[int] = None) -> None:
        text = raw.lstrip()
        if text:
            ready.append(Segment(text=text, pause_ms=pause_ms))

    @staticmethod
    def _boundary_end(text: str, i: int, start: int) -> Optional[int]:
        """
        Return the end index of a segment terminated at ``i``.

        Returns None when ``text[i]`` is not a boundary and ``_PENDING`` when
        the answer depends on text that has not arrived.
        """
        size = len(text)

        if text[i] == ".":
            run = _count_run(text, i, ".")
            if run >= 3:
                end = _consume_closers(text, i + run)
                return _PENDING if end >= size else end

            prev = text[i - 1] if i > start else ""
            nxt = text[i + 1] if i + 1 < size else None
            if _is_digit(prev):
                if nxt is None:
                    return _PENDING
                if _is_digit(nxt):
                    return None

            token = _read_prev_token(text, i, start)
            if token and token.lower() in ABBREVIATIONS:
                return None

        if i + 1 >= size:
            return _PENDING

        nxt = text[i + 1]
        if nxt.isspace() or nxt in CLOSERS:
            end = _consume_closers(text, i + 1)
            return _PENDING if end >= size else end
        return None


__all__ = [
    "ABBREVIATIONS",
    "PAUSE_TAG_RE",
    "Segment",
    "SegmentResult",
    "Segmenter",
]
