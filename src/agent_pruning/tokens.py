"""Rough token estimation for pruned content."""

from __future__ import annotations

# Rough chars-per-token for estimation
_CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return round(len(text) / _CHARS_PER_TOKEN)


def estimate_tokens_batch(texts: list[str]) -> int:
    """Total estimated tokens across several texts."""
    return sum(estimate_tokens(t) for t in texts)


def format_token_count(tokens: int) -> str:
    """1500 -> "1.5K", 2000 -> "2K", 50 -> "50"."""
    if tokens >= 1000:
        return f"{tokens / 1000:.1f}K".replace(".0K", "K")
    return str(tokens)
