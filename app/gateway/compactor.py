"""Context Compactor — keeps a prompt inside the backend's token budget.

Token cost is estimated as ``ceil(chars / 3.5)``, a fixed approximation that
needs no tokenizer and errs on the high side for mixed-script text.

  - estimate(system + user) > hard ceiling → OversizeError, nothing trimmed
  - otherwise drop the oldest history turn while
    estimate(system + history + user) > soft budget
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence

from app.core.exceptions import OversizeError
from app.gateway.types import ChatTurn

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 3.5
DEFAULT_SOFT_BUDGET = 40_000
DEFAULT_HARD_CEILING = 100_000


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_prompt_tokens(system_prompt: str, history: Sequence[ChatTurn], user_message: str) -> int:
    chars = len(system_prompt) + len(user_message) + sum(len(turn.content) for turn in history)
    return math.ceil(chars / CHARS_PER_TOKEN)


class ContextCompactor:
    def __init__(self, soft_budget: int = DEFAULT_SOFT_BUDGET, hard_ceiling: int = DEFAULT_HARD_CEILING):
        if soft_budget > hard_ceiling:
            raise ValueError("soft_budget must not exceed hard_ceiling")
        self.soft_budget = soft_budget
        self.hard_ceiling = hard_ceiling

    def compact(self, system_prompt: str, history: Sequence[ChatTurn], user_message: str) -> list[ChatTurn]:
        """Return the longest suffix of ``history`` that fits the soft budget."""
        fixed = estimate_prompt_tokens(system_prompt, (), user_message)
        if fixed > self.hard_ceiling:
            raise OversizeError(
                f"Your system prompt and message are too large ({fixed} estimated tokens, "
                f"limit {self.hard_ceiling}). Please reduce the prompt size."
            )

        kept = list(history)
        fixed_chars = len(system_prompt) + len(user_message)
        history_chars = sum(len(turn.content) for turn in kept)

        # Oldest-first eviction
        start = 0
        while start < len(kept) and math.ceil((fixed_chars + history_chars) / CHARS_PER_TOKEN) > self.soft_budget:
            history_chars -= len(kept[start].content)
            start += 1

        trimmed = kept[start:]
        if start:
            logger.info(
                "Sliced history from %d to %d messages to fit token limits (~%d tokens)",
                len(kept),
                len(trimmed),
                math.ceil((fixed_chars + history_chars) / CHARS_PER_TOKEN),
            )
        return trimmed
