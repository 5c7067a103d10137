#!/usr/bin/env python3

"""
Token Estimator - approximate token counts for budgeting.

This is a heuristic (about four characters per token), not a tokenizer.
Counts will not match any backend's real tokenizer exactly.
"""

from typing import Iterable

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Estimate tokens in text, never less than one"""
    return max(1, len(text or "") // CHARS_PER_TOKEN)


def estimate_total(texts: Iterable[str]) -> int:
    return sum(estimate_tokens(text) for text in texts)
