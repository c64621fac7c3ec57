"""Reduce an OpenAI-style ``messages`` array to a NormalizedPrompt."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from app.core.exceptions import MalformedRequestError
from app.gateway.types import ChatTurn, NormalizedPrompt

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."

IMAGE_MARKER = " [Image] "
AUDIO_MARKER = " [Audio] "


def _part_url(part: dict[str, Any], key: str) -> str | None:
    value = part.get(key)
    if isinstance(value, dict):
        value = value.get("url")
    return value if isinstance(value, str) and value else None


def parse_messages(messages: Sequence[dict[str, Any]]) -> NormalizedPrompt:
    """Split messages into system prompt, history and the active user turn.

    The last message must come from the user. Its image and audio parts are
    collected as references for the preprocessor. Media in earlier messages
    cannot be replayed, so it collapses to a text marker.
    """
    if not messages:
        raise MalformedRequestError("messages array is required")

    prompt = NormalizedPrompt()
    last_index = len(messages) - 1
    active_is_user = messages[last_index].get("role") == "user"

    for index, msg in enumerate(messages):
        role = msg.get("role") or "user"
        content = msg.get("content")
        is_active = index == last_index and active_is_user

        if isinstance(content, list):
            text = ""
            for part in content:
                if not isinstance(part, dict):
                    continue
                kind = part.get("type")
                if kind == "text":
                    text += part.get("text") or ""
                elif kind == "image_url":
                    url = _part_url(part, "image_url")
                    if url:
                        if is_active:
                            prompt.image_refs.append(url)
                        else:
                            text += IMAGE_MARKER
                elif kind == "audio_url":
                    url = _part_url(part, "audio_url")
                    if url:
                        if is_active:
                            prompt.audio_refs.append(url)
                        else:
                            text += AUDIO_MARKER
        else:
            text = content or ""

        if role == "system":
            prompt.system_prompt = text
        elif is_active:
            prompt.user_message = text
        else:
            prompt.history.append(ChatTurn(role=role, content=text))

    if not active_is_user:
        raise MalformedRequestError("Last message must be from user")
    if not prompt.user_message and not prompt.image_refs and not prompt.audio_refs:
        raise MalformedRequestError("Last user message is empty")
    return prompt


def build_messages(system_content: str, history: Sequence[ChatTurn], user_message: str) -> list[dict[str, str]]:
    """Assemble the upstream ``messages`` array."""
    messages = [{"role": "system", "content": system_content}]
    messages.extend(turn.to_message() for turn in history)
    messages.append({"role": "user", "content": user_message})
    return messages
