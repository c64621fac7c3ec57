"""Response Sanitizer — turns structured model output back into plain reply text.

Models sometimes ignore a "respond in plain text" instruction and wrap the
answer in JSON or a fenced code block. ``sanitize`` runs an ordered chain of
pure extractors ``str -> str | None``; the first one that returns a value
wins, and a fenced block is unwrapped and run through the chain once more.
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable

_REPLY_FIELDS = ("reply", "text", "message")
_REPLY_FRAGMENT = re.compile(r'"reply"\s*:\s*"((?:[^"\\]|\\.)*)"')
# Optional language tag only when followed by a newline, so "```hi```" keeps "hi"
_CODE_FENCE = re.compile(r"^```(?:[\w+.-]*[ \t]*\n)?(.*?)\n?```$", re.DOTALL)

Extractor = Callable[[str], "str | None"]


def extract_json_reply(text: str) -> str | None:
    """Whole-string JSON object with a reply/text/message field."""
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    for field in _REPLY_FIELDS:
        value = parsed.get(field)
        if isinstance(value, str) and value:
            return value
    return None


def extract_reply_fragment(text: str) -> str | None:
    """A ``"reply": "..."`` fragment anywhere in the text, unescaped."""
    match = _REPLY_FRAGMENT.search(text)
    if not match or not match.group(1):
        return None
    raw = match.group(1)
    try:
        return json.loads(f'"{raw}"')
    except ValueError:
        return raw


def strip_code_fence(text: str) -> str | None:
    """Inner text when the whole string is one fenced code block."""
    match = _CODE_FENCE.match(text.strip())
    if not match:
        return None
    return match.group(1).strip()


EXTRACTORS: tuple[Extractor, ...] = (extract_json_reply, extract_reply_fragment)


def sanitize(raw_text: str | None) -> str:
    """Best-effort normalization of buffered model output. Never raises."""
    if not raw_text:
        return ""

    text = raw_text
    for _ in range(2):
        for extractor in EXTRACTORS:
            extracted = extractor(text)
            if extracted is not None:
                return extracted
        unfenced = strip_code_fence(text)
        if unfenced is None:
            return text
        text = unfenced
    return text
