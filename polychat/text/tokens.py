"""Character-based token estimation.

This is a crude heuristic (roughly four characters per token), not a real
tokenizer.  It only feeds usage metadata when a provider does not report
its own counts, so prompt and completion totals must both go through
:func:`estimate_tokens` to stay comparable.
"""

from __future__ import annotations

import math
from typing import Iterable

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    """Return ``ceil(len(text) / 4)``; 0 for empty or missing text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_messages_tokens(contents: Iterable[str]) -> int:
    """Sum of :func:`estimate_tokens` over several message bodies."""
    return sum(estimate_tokens(c) for c in contents)
