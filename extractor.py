"""
NG-Gate — Content Extractor

Reduces an inbound request body to the single string the moderation guard
evaluates, or None when there is nothing to check (the request is then
forwarded unmoderated).

Only the latest user turn of a chat conversation is checked: earlier turns
were already checked when they were new.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union


# ---------------------------------------------------------------------------
# Message content variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PlainText:
    text: str


@dataclass(frozen=True)
class TypedParts:
    parts: list[Any]


@dataclass(frozen=True)
class Unrecognized:
    raw: Any = None


MessageContent = Union[PlainText, TypedParts, Unrecognized]


def classify_content(raw: Any) -> MessageContent:
    """Tag a message ``content`` value as plain text, typed parts, or neither."""
    if isinstance(raw, str):
        return PlainText(raw)
    if isinstance(raw, list):
        return TypedParts(raw)
    return Unrecognized(raw)


def content_text(content: MessageContent) -> str | None:
    """Flatten a tagged content value to text.

    Typed parts keep only ``{"type": "text", "text": ...}`` entries, joined
    with a single space; images, audio and anything else are dropped.
    """
    if isinstance(content, PlainText):
        text = content.text
    elif isinstance(content, TypedParts):
        text = " ".join(
            part["text"]
            for part in content.parts
            if isinstance(part, dict)
            and part.get("type") == "text"
            and isinstance(part.get("text"), str)
        )
    else:
        return None
    return text or None


# ---------------------------------------------------------------------------
# Body extraction
# ---------------------------------------------------------------------------

def extract_text(body: Any) -> str | None:
    """Return the text to moderate from a chat or legacy completion body."""
    if not isinstance(body, dict):
        return None

    messages = body.get("messages")
    if isinstance(messages, list):
        user_messages = [
            m for m in messages if isinstance(m, dict) and m.get("role") == "user"
        ]
        if not user_messages:
            return None
        return content_text(classify_content(user_messages[-1].get("content")))

    prompt = body.get("prompt")
    if isinstance(prompt, str) and prompt:
        return prompt
    return None
