# Role: Rough context-size estimate shown next to the conversation. Word count scaled to tokens;
# error turns and anything that is not a user/assistant turn are ignored.

from __future__ import annotations

from typing import Optional, Sequence

from tech_router.models.message import Message

TOKENS_PER_WORD = 1.3


def _word_count(text: str) -> int:
    return len(text.split())


def estimate_tokens(routing_prompt: Optional[str], history: Sequence[Message]) -> int:
    words = _word_count(routing_prompt) if routing_prompt else 0
    for m in history:
        if m.role in ("user", "assistant") and not m.is_error:
            words += _word_count(m.content)
    return round(words * TOKENS_PER_WORD)
