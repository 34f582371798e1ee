"""
Sayifier: turn display text into speech-friendly text.

Pipeline (in order):
    1. contractions ("I am" → "I’m"), first letter case preserved
    2. acronyms spelled for the ear (API → "A-P-I", SSR → "server-side
       rendering") and letter/letter slashes read as "and"
    3. tokenize by ``[pause-NNN]`` tags, split text runs into sentences
    4. optional time cap: greedily keep chunks at 130 words per minute,
       pauses cost their literal duration
    5. optional invite suffix when something was trimmed

Nothing here raises; empty input yields empty output.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple, Union

from .segmenter import Segmenter

DEFAULT_MAX_SAY_SECONDS = 12.0
WORDS_PER_MINUTE = 130
MAX_PAUSE_MS = 4000
INVITE = "… Want the longer version?"

_PAUSE_RE = re.compile(r"\[pause-(\d{2,5})\]", re.IGNORECASE)
_PAUSE_SPACING_RE = re.compile(r"\s*\[pause-(\d{2,5})\]\s*", re.IGNORECASE)
_TRAILING_TERMINAL_RE = re.compile(r"[.?!]*\s*$")
_SLASH_RE = re.compile(r"([A-Za-z])\s*/\s*(?=[A-Za-z])(?!C-I C-D\b)")


def _cap_first(value: str) -> str:
    return value[:1].upper() + value[1:]


def _first_person(suffix: str) -> Callable[[re.Match], str]:
    def replace(match: re.Match) -> str:
        return f"I’{suffix}"

    return replace


def _fixed(replacement: str) -> Callable[[re.Match], str]:
    def replace(match: re.Match) -> str:
        if match.group(0)[:1].isupper():
            return _cap_first(replacement)
        return replacement

    return replace


# never after a hyphen: a spelled acronym ("A-P-I am") is not "I am"
_CONTRACTIONS = [
    (re.compile(r"(?<![-\w])i am\b", re.IGNORECASE), _first_person("m")),
    (re.compile(r"(?<![-\w])i have\b", re.IGNORECASE), _first_person("ve")),
    (re.compile(r"(?<![-\w])i will\b", re.IGNORECASE), _first_person("ll")),
    (re.compile(r"(?<![-\w])you are\b", re.IGNORECASE), _fixed("you’re")),
    (re.compile(r"(?<![-\w])we are\b", re.IGNORECASE), _fixed("we’re")),
    (re.compile(r"(?<![-\w])they are\b", re.IGNORECASE), _fixed("they’re")),
    (re.compile(r"(?<![-\w])he is\b", re.IGNORECASE), _fixed("he’s")),
    (re.compile(r"(?<![-\w])she is\b", re.IGNORECASE), _fixed("she’s")),
    (re.compile(r"(?<![-\w])it is\b", re.IGNORECASE), _fixed("it’s")),
    (re.compile(r"(?<![-\w])that is\b", re.IGNORECASE), _fixed("that’s")),
    (re.compile(r"(?<![-\w])there is\b", re.IGNORECASE), _fixed("there’s")),
    (re.compile(r"(?<![-\w])there are\b", re.IGNORECASE), _fixed("there’re")),
    (re.compile(r"(?<![-\w])we have\b", re.IGNORECASE), _fixed("we’ve")),
    (re.compile(r"(?<![-\w])you have\b", re.IGNORECASE), _fixed("you’ve")),
    (re.compile(r"(?<![-\w])they have\b", re.IGNORECASE), _fixed("they’ve")),
    (re.compile(r"(?<![-\w])do not\b", re.IGNORECASE), _fixed("don’t")),
    (re.compile(r"(?<![-\w])does not\b", re.IGNORECASE), _fixed("doesn’t")),
    (re.compile(r"(?<![-\w])did not\b", re.IGNORECASE), _fixed("didn’t")),
    (re.compile(r"(?<![-\w])can not\b", re.IGNORECASE), _fixed("cannot")),
    (re.compile(r"(?<![-\w])cannot\b", re.IGNORECASE), _fixed("can’t")),
    (re.compile(r"(?<![-\w])is not\b", re.IGNORECASE), _fixed("isn’t")),
    (re.compile(r"(?<![-\w])are not\b", re.IGNORECASE), _fixed("aren’t")),
    (re.compile(r"(?<![-\w])was not\b", re.IGNORECASE), _fixed("wasn’t")),
    (re.compile(r"(?<![-\w])were not\b", re.IGNORECASE), _fixed("weren’t")),
    (re.compile(r"(?<![-\w])should not\b", re.IGNORECASE), _fixed("shouldn’t")),
    (re.compile(r"(?<![-\w])could not\b", re.IGNORECASE), _fixed("couldn’t")),
    (re.compile(r"(?<![-\w])would not\b", re.IGNORECASE), _fixed("wouldn’t")),
    (re.compile(r"(?<![-\w])will not\b", re.IGNORECASE), _fixed("won’t")),
    (re.compile(r"(?<![-\w])let us\b", re.IGNORECASE), _fixed("let’s")),
    (re.compile(r"(?<![-\w])that will\b", re.IGNORECASE), _fixed("that’ll")),
    (re.compile(r"(?<![-\w])it will\b", re.IGNORECASE), _fixed("it’ll")),
    (re.compile(r"(?<![-\w])we will\b", re.IGNORECASE), _fixed("we’ll")),
    (re.compile(r"(?<![-\w])you will\b", re.IGNORECASE), _fixed("you’ll")),
    (re.compile(r"(?<![-\w])they will\b", re.IGNORECASE), _fixed("they’ll")),
    (re.compile(r"(?<![-\w])who is\b", re.IGNORECASE), _fixed("who’s")),
    (re.compile(r"(?<![-\w])what is\b", re.IGNORECASE), _fixed("what’s")),
    (re.compile(r"(?<![-\w])where is\b", re.IGNORECASE), _fixed("where’s")),
]

_ACRONYMS = [
    (re.compile(r"\bSSR\b", re.IGNORECASE), "server-side rendering"),
    (re.compile(r"\bISR\b", re.IGNORECASE), "incremental static regeneration"),
    (re.compile(r"\bCI/CD\b", re.IGNORECASE), "C-I C-D"),
    (re.compile(r"\bAPI\b", re.IGNORECASE), "A-P-I"),
    (re.compile(r"\bSDK\b", re.IGNORECASE), "S-D-K"),
    (re.compile(r"\bHTTP\b", re.IGNORECASE), "H-T-T-P"),
]


@dataclass(frozen=True)
class TextPiece:
    value: str
    # no whitespace separated it from the previous sentence in the source
    glued: bool = False


@dataclass(frozen=True)
class PausePiece:
    ms: int


Piece = Union[TextPiece, PausePiece]


@dataclass
class PlaybackChunk:
    """One unit of playback: spoken text, or a silent gap when text is empty."""

    text: str
    pause_ms: Optional[int] = None


def apply_contractions(text: str) -> str:
    for pattern, replace in _CONTRACTIONS:
        text = pattern.sub(replace, text)
    return text


def expand_acronyms(text: str) -> str:
    for pattern, spoken in _ACRONYMS:
        text = pattern.sub(spoken, text)
    return _SLASH_RE.sub(r"\1 and ", text)


def strip_pause_tags(text: str) -> str:
    """Remove pause tags for display copies."""
    return re.sub(r"\s+", " ", _PAUSE_SPACING_RE.sub(" ", text or "")).strip()


def tokenize_by_pause(text: str) -> List[Piece]:
    pieces: List[Piece] = []
    last = 0
    for match in _PAUSE_RE.finditer(text):
        if match.start() > last:
            pieces.append(TextPiece(text[last : match.start()]))
        ms = max(0, min(MAX_PAUSE_MS, int(match.group(1))))
        pieces.append(PausePiece(ms))
        last = match.end()
    if last < len(text):
        pieces.append(TextPiece(text[last:]))
    return pieces


def _sentence_spans(text: str) -> List[Tuple[int, int]]:
    """Sentence offsets in ``text`` using the streaming segmenter's boundary rules."""
    segmenter = Segmenter()
    segments = segmenter.push(text).ready + segmenter.flush()
    spans: List[Tuple[int, int]] = []
    pos = 0
    for segment in segments:
        start = text.find(segment.text, pos)
        if start < 0:
            continue
        pos = start + len(segment.text)
        spans.append((start, pos))
    return spans


def _sentence_pieces(text: str) -> List[TextPiece]:
    normalized = re.sub(r"\s+", " ", text).strip()
    pieces: List[TextPiece] = []
    previous_end: Optional[int] = None
    for start, end in _sentence_spans(normalized):
        value = normalized[start:end].strip()
        if value:
            pieces.append(TextPiece(value, glued=start == previous_end))
        previous_end = end
    return pieces


def split_sentences(text: str) -> List[str]:
    """Split on sentence ends; decimals, abbreviations and ellipses are respected."""
    return [piece.value for piece in _sentence_pieces(text)]


def _word_count(text: str) -> int:
    return len(text.split())


def _cost_units(words: int, pause_ms: int) -> int:
    # speaking time in integer units of 1/(130*1000) s, so budgets compare exactly
    return words * 60 * 1000 + pause_ms * WORDS_PER_MINUTE


def _render(pieces: List[Piece]) -> str:
    out = ""
    for piece in pieces:
        if isinstance(piece, PausePiece):
            out += f" [pause-{piece.ms:02d}] "
        elif piece.glued:
            out += piece.value
        else:
            out += " " + piece.value
    return re.sub(r"\s+", " ", out).strip()


def normalize_say(
    text: str,
    enforce_cap: bool = True,
    add_invite: bool = True,
    max_seconds: float = DEFAULT_MAX_SAY_SECONDS,
) -> str:
    """
    Build speech-friendly text, honouring pause tags and a time cap.

    When ``enforce_cap`` trims content and ``add_invite`` is set, the invite
    suffix replaces the trailing punctuation; its speaking time is reserved
    inside the budget, so a capped result passes through a second capped
    call unchanged.
    """
    if not text or not text.strip():
        return ""

    spoken = expand_acronyms(apply_contractions(text))

    pieces: List[Piece] = []
    for token in tokenize_by_pause(spoken):
        if isinstance(token, PausePiece):
            pieces.append(token)
        else:
            pieces.extend(_sentence_pieces(token.value))

    if not enforce_cap:
        return _render(pieces)

    budget = int(max(1.0, max_seconds) * 1000) * WORDS_PER_MINUTE
    kept = _take_within(pieces, budget)
    if len(kept) == len(pieces):
        return _render(kept)

    if not add_invite:
        return _render(kept)

    invite_cost = _cost_units(_word_count(INVITE), 0)
    if invite_cost > budget:
        return _render(kept)
    kept = _take_within(pieces, budget - invite_cost)
    body = _TRAILING_TERMINAL_RE.sub("", _render(kept))
    return f"{body} {INVITE}".strip()


def _take_within(pieces: List[Piece], budget: int) -> List[Piece]:
    spent = 0
    kept: List[Piece] = []
    for piece in pieces:
        if isinstance(piece, PausePiece):
            cost = _cost_units(0, piece.ms)
        else:
            cost = _cost_units(_word_count(piece.value), 0)
        if spent + cost > budget:
            break
        kept.append(piece)
        spent += cost
    return kept


def chunk_say_for_playback(say: str) -> List[PlaybackChunk]:
    """Convert a ``say`` string into playback chunks; pause tags become gaps."""
    chunks: List[PlaybackChunk] = []
    for token in tokenize_by_pause(say or ""):
        if isinstance(token, PausePiece):
            if chunks and not chunks[-1].text and chunks[-1].pause_ms:
                chunks[-1].pause_ms += token.ms
            elif token.ms:
                chunks.append(PlaybackChunk(text="", pause_ms=token.ms))
            continue
        for sentence in split_sentences(token.value):
            clean = strip_pause_tags(sentence)
            if clean:
                chunks.append(PlaybackChunk(text=clean))
    return chunks


def truncate_at_sentence_boundary(text: str, max_chars: int) -> str:
    """Hard character ceiling; cuts at the last sentence end, else a space."""
    trimmed = (text or "").strip()
    if len(trimmed) <= max_chars:
        return trimmed

    ends = [end for _, end in _sentence_spans(trimmed) if end <= max_chars]
    if ends:
        return trimmed[: ends[-1]].rstrip() + "…"

    window = trimmed[:max_chars]

    last_space = window.rfind(" ")
    if last_space > 0:
        return window[:last_space].rstrip() + "…"

    return window.rstrip() + "…"


__all__ = [
    "INVITE",
    "PlaybackChunk",
    "apply_contractions",
    "chunk_say_for_playback",
    "expand_acronyms",
    "normalize_say",
    "split_sentences",
    "strip_pause_tags",
    "truncate_at_sentence_boundary",
]
