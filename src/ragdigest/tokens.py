"""Character based token estimates."""
from __future__ import annotations

from typing import Iterable

CHARS_PER_TOKEN = 2.5


def estimate_tokens(char_count: int) -> int:
    """Return ``floor(char_count / 2.5)`` using integer arithmetic."""

    if char_count <= 0:
        return 0
    return (char_count * 2) // 5


def estimate_text_tokens(text: str) -> int:
    return estimate_tokens(len(text))


def estimate_sections_tokens(sections: Iterable[str]) -> int:
    return estimate_tokens(sum(len(section) for section in sections))


__all__ = ["CHARS_PER_TOKEN", "estimate_sections_tokens", "estimate_text_tokens", "estimate_tokens"]
