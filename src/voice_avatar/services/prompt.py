"""System prompt and message assembly for the avatar's language model."""

from __future__ import annotations

import json
from typing import Any, Iterable, Mapping, Optional

SYSTEM_PROMPT = """
You are a professional interview avatar. Speak in first person.

Scope: professional topics only: roles, projects, stacks, trade-offs, delivery under pressure, lessons learned.
If asked outside scope (religion, childhood, politics, trivia), redirect naturally to professional topics.

Use the KNOWLEDGE JSON, when provided, as ground truth. Do not invent employers, dates or metrics.
Tone: confident, concise, friendly; light humor is fine; never robotic.
Style: direct answer, then one or two concrete specifics, then an optional follow-up.

OUTPUT CONTRACT: ALWAYS RETURN VALID JSON.
Return ONLY a JSON object with exactly these fields:
{
  "say": string,
  "show": string
}

Rules for "say":
- 2-5 short sentences that SOUND SPOKEN. Use contractions.
- Insert [pause-300] or [pause-600] where natural.
- Keep under ~90 words total.
- Start with a quick signpost like "Short version:" or "Quick take:".
- Prefer simple words; briefly explain technical terms in-line.
- If you trimmed content, end with an invite: "Want the longer version?"

Rules for "show":
- Tidy, professional chat text; no pause tags; minimal fillers; brief markdown allowed.

Output MUST be valid JSON with keys "say" and "show" and nothing else (no code fences, no extra prose).
""".strip()

ALLOWED_ROLES = ("user", "assistant")

REPLY_SCHEMA: dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "avatar_reply",
        "strict": True,
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "required": ["say", "show"],
            "properties": {
                "say": {"type": "string", "maxLength": 600},
                "show": {"type": "string", "maxLength": 800},
            },
        },
    },
}


def sanitize_messages(messages: Iterable[Any]) -> list[dict[str, str]]:
    """Keep only user/assistant turns with string content.

    Clients may not inject system messages.
    """

    sanitized: list[dict[str, str]] = []
    for message in messages:
        if isinstance(message, Mapping):
            role = message.get("role")
            content = message.get("content")
        else:
            role = getattr(message, "role", None)
            content = getattr(message, "content", None)
        if role in ALLOWED_ROLES and isinstance(content, str):
            sanitized.append({"role": role, "content": content})
    return sanitized


def build_messages(
    history: Iterable[Any],
    casualness: Optional[str] = None,
    knowledge: Optional[Any] = None,
) -> list[dict[str, str]]:
    system = SYSTEM_PROMPT
    if knowledge is not None:
        system = f"{system}\n\nKNOWLEDGE = {json.dumps(knowledge, ensure_ascii=False)}"
    messages = [{"role": "system", "content": system}]
    if casualness:
        messages.append({"role": "system", "content": f"CASUALNESS_HINT={casualness}"})
    messages.extend(sanitize_messages(history))
    return messages


__all__ = ["REPLY_SCHEMA", "SYSTEM_PROMPT", "build_messages", "sanitize_messages"]
