"""
Token counting and usage tracking.

Holds exact usage counts and the character-based estimate used while streaming.
"""

import json
import math
from dataclasses import dataclass
from typing import Any, Iterable, Optional

CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Exact token counts reported by the provider."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    @classmethod
    def from_response_usage(cls, usage: Any) -> "TokenUsage":
        """Build from an OpenAI `usage` block (object or dict)."""
        if isinstance(usage, dict):
            prompt = usage.get("prompt_tokens")
            completion = usage.get("completion_tokens")
        else:
            prompt = getattr(usage, "prompt_tokens", None)
            completion = getattr(usage, "completion_tokens", None)
        return cls(prompt_tokens=prompt or 0, completion_tokens=completion or 0)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters, rounded up."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _message_content(message: Any) -> Optional[Any]:
    if isinstance(message, dict):
        return message.get("content")
    return getattr(message, "content", None)


def estimate_message_tokens(messages: Optional[Iterable[Any]]) -> int:
    """Estimate prompt tokens for a chat message list.

    Sums the character length of every message's content, JSON-serializing
    structured content (e.g. multi-part text/image lists) first.
    """
    if not messages:
        return 0

    total_chars = 0
    for message in messages:
        content = _message_content(message)
        if content is None:
            continue
        if not isinstance(content, str):
            content = json.dumps(content, separators=(",", ":"), default=str)
        total_chars += len(content)
    return math.ceil(total_chars / CHARS_PER_TOKEN)
