"""Token estimator: approximate character-based token counting.

This is NOT a real tokenizer.  Every budget constant in the package
(compaction threshold, default summary budget, truncation caps) is
calibrated against this estimate, so swapping it for an exact tokenizer
means revisiting those constants too.
"""

from __future__ import annotations

import math

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    """Estimate token count as ``ceil(len(text) / CHARS_PER_TOKEN)``."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def format_token_count(count: int) -> str:
    """Human-readable token count, e.g. ``"950 tokens"`` or ``"1.2k tokens"``."""
    if count < 1000:
        return f"{count} tokens"
    return f"{count / 1000:.1f}k tokens"
