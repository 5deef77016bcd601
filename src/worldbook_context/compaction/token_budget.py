"""
Rough token estimates for tier payloads.
"""

from typing import Iterable


def estimate_tokens(text: str) -> int:
    """Rough token estimate: ~3 chars per token for mixed CJK/English."""
    if not text:
        return 0
    return max(1, len(text) // 3)


def estimate_texts_tokens(texts: Iterable[str]) -> int:
    return sum(estimate_tokens(t) for t in texts)
