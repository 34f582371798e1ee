"""Extract the ``{say, show}`` pair from free-form model output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Optional, Union

from .tts.sayifier import strip_pause_tags

MAX_FALLBACK_SAY_CHARS = 1200

_FENCED_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_MD_LINK_RE = re.compile(r"\[([^\]]*?)\]\(([^)]*?)\)")
_MD_CHARS_RE = re.compile(r"[*_`#>~]")
_MD_BULLET_RE = re.compile(r"^\s*[-+]\s+", re.MULTILINE)


@dataclass(frozen=True)
class ParsedReply:
    say: str
    show: str


@dataclass(frozen=True)
class FallbackReply:
    say: str
    show: str
    raw: str


Reply = Union[ParsedReply, FallbackReply]


def _as_reply(value: Any) -> Optional[ParsedReply]:
    if (
        isinstance(value, dict)
        and isinstance(value.get("say"), str)
        and isinstance(value.get("show"), str)
    ):
        return ParsedReply(say=value["say"], show=strip_pause_tags(value["show"]))
    return None


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def _balanced_objects(text: str):
    """Yield each top-level ``{...}`` span, honouring strings and escapes."""

    depth = 0
    start = -1
    in_string = False
    escaped = False
    for idx, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"' and depth > 0:
            in_string = True
        elif ch == "{":
            if depth == 0:
                start = idx
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0:
                yield text[start : idx + 1]


def strip_markdown(text: str) -> str:
    text = _MD_LINK_RE.sub(r"\1", text)
    text = _MD_BULLET_RE.sub("", text)
    return _MD_CHARS_RE.sub("", text)


def parse_reply(text: str) -> Reply:
    """Direct JSON, then a fenced block, then a balanced-brace scan.

    Never raises: unparseable text becomes a :class:`FallbackReply` whose
    ``say`` is markdown-free and whose ``show`` has no pause tags.
    """

    raw = (text or "").strip()

    reply = _as_reply(_loads(raw))
    if reply:
        return reply

    for match in _FENCED_RE.finditer(raw):
        reply = _as_reply(_loads(match.group(1)))
        if reply:
            return reply

    # last complete object wins; models tend to put the answer at the end
    for candidate in reversed(list(_balanced_objects(raw))):
        reply = _as_reply(_loads(candidate))
        if reply:
            return reply

    say = strip_pause_tags(strip_markdown(raw))[:MAX_FALLBACK_SAY_CHARS].strip()
    return FallbackReply(say=say, show=strip_pause_tags(raw), raw=raw)


def reply_from_raw(raw: Any) -> Reply:
    """Interpret the ``raw`` payload of a terminal ``done`` frame."""

    if isinstance(raw, dict):
        reply = _as_reply(raw)
        if reply:
            return reply
        text = raw.get("show") or raw.get("say") or raw.get("text") or ""
        if isinstance(text, str) and text:
            return parse_reply(text)
        return FallbackReply(say="", show="", raw=json.dumps(raw))
    if isinstance(raw, str):
        return parse_reply(raw)
    return FallbackReply(say="", show="", raw="")


__all__ = [
    "FallbackReply",
    "ParsedReply",
    "Reply",
    "parse_reply",
    "reply_from_raw",
    "strip_markdown",
]
