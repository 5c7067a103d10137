#!/usr/bin/env python3
"""
Context Optimizer for OneShot

Fits a set of context items into a token budget before they are sent to a
model. Strategies:
- none: pass through unchanged
- truncate: keep the most recently modified items, cut the first overflowing one
- summarize: replace overflowing items with shorter summaries
- smart: keep items by declared relevance then recency, cut like truncate

The result always keeps the input order of the surviving items, and any
strategy returns the input unchanged when it already fits.
"""

import re
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from .models.context_models import (
    ContextItem, ContextOptimizationConfig, ContextOptimizationStrategy
)
from .token_estimator import CHARS_PER_TOKEN, estimate_tokens

log = structlog.get_logger(__name__)

_Indexed = Tuple[int, ContextItem]


class ContentSummarizer(ABC):
    """Text summarization capability used by the summarize strategy"""

    @abstractmethod
    def summarize(self, content: str, target_tokens: int) -> str:
        """Return a summary of content aiming at no more than target_tokens"""
        pass


class ExtractiveSummarizer(ContentSummarizer):
    """
    Summarizer that keeps structurally important lines.

    Declarations, imports and headings are kept first. When a text has none,
    the leading lines are used instead.
    """

    KEY_LINE_PATTERN = re.compile(
        r'^\s*(def |async def |class |func |function |fn |struct |enum |interface |'
        r'protocol |import |from \S+ import |#{1,6} |export |public |package )'
    )

    def summarize(self, content: str, target_tokens: int) -> str:
        lines = content.splitlines()
        key_lines = [line for line in lines if self.KEY_LINE_PATTERN.match(line)]
        header = f"[Summary of {len(lines):,} lines]"
        body = "\n".join(key_lines) if key_lines else content

        max_chars = target_tokens * CHARS_PER_TOKEN - len(header) - 1
        if max_chars <= 0:
            return header[:max(0, target_tokens * CHARS_PER_TOKEN)]

        if len(body) > max_chars:
            clipped = body[:max_chars]
            # Prefer a line boundary when it doesn't lose too much
            last_newline = clipped.rfind('\n')
            if last_newline > max_chars * 0.8:
                clipped = clipped[:last_newline]
            body = clipped

        return f"{header}\n{body}"


class ContextOptimizer:
    """Selects and trims context items to fit a token budget"""

    def __init__(self, config: Optional[ContextOptimizationConfig] = None,
                 summarizer: Optional[ContentSummarizer] = None):
        self.config = config or ContextOptimizationConfig()
        self.summarizer = summarizer or ExtractiveSummarizer()

    def optimize(self, items: Iterable[ContextItem], max_tokens: int,
                 strategy: ContextOptimizationStrategy = ContextOptimizationStrategy.SMART) -> List[ContextItem]:
        """
        Fit items into max_tokens.

        Args:
            items: Candidate context items
            max_tokens: Token budget for all context
            strategy: Optimization strategy

        Returns:
            Surviving items in their input order. At most one item is a
            truncated copy; its token_count equals the budget left for it.

        Raises:
            ValueError: If max_tokens is negative
        """
        items = list(items)
        if max_tokens < 0:
            raise ValueError(f"max_tokens must be non-negative, got {max_tokens}")

        total = total_tokens(items)
        if strategy is ContextOptimizationStrategy.NONE or total <= max_tokens:
            return items

        indexed = list(enumerate(items))
        if strategy is ContextOptimizationStrategy.TRUNCATE:
            kept = self._fill(self._by_recency(indexed), max_tokens)
        elif strategy is ContextOptimizationStrategy.SUMMARIZE:
            kept = self._fill_with_summaries(self._by_recency(indexed), max_tokens)
        else:
            kept = self._fill(self._by_priority(indexed), max_tokens)

        result = [kept[index] for index in sorted(kept)]
        log.debug(
            "context.optimized",
            strategy=strategy.value,
            budget=max_tokens,
            tokens_before=total,
            tokens_after=total_tokens(result),
            items_before=len(items),
            items_after=len(result),
        )
        return result

    def truncate_item(self, item: ContextItem, budget: int) -> ContextItem:
        """
        Cut an item down to a token budget.

        Trailing lines are dropped in proportion to the budget and the
        truncation marker is appended. The copy reports exactly ``budget``
        tokens.
        """
        lines = item.content.split('\n')
        keep = int(len(lines) * budget / max(1, item.token_count))
        if keep > 0:
            text = '\n'.join(lines[:keep])
        else:
            # A single line longer than the whole budget
            text = item.content[:budget * CHARS_PER_TOKEN]

        return item.with_content(
            f"{text}\n\n{self.config.truncation_marker}",
            budget,
            truncated="true",
            original_token_count=str(item.token_count),
        )

    def _fill(self, ordered: Sequence[_Indexed], max_tokens: int) -> Dict[int, ContextItem]:
        kept: Dict[int, ContextItem] = {}
        used = 0
        for index, item in ordered:
            if used + item.token_count <= max_tokens:
                kept[index] = item
                used += item.token_count
                continue

            remaining = max_tokens - used
            if remaining > 0 and remaining >= self.config.min_partial_tokens:
                kept[index] = self.truncate_item(item, remaining)
            # Everything after the first overflow is dropped
            break
        return kept

    def _fill_with_summaries(self, ordered: Sequence[_Indexed], max_tokens: int) -> Dict[int, ContextItem]:
        kept: Dict[int, ContextItem] = {}
        used = 0
        for index, item in ordered:
            remaining = max_tokens - used
            if item.token_count <= remaining:
                kept[index] = item
                used += item.token_count
                continue

            if remaining <= 0 or remaining < self.config.min_partial_tokens:
                continue

            summary = self.summarizer.summarize(item.content, remaining)
            summary_tokens = estimate_tokens(summary)
            if summary_tokens > remaining:
                replacement = self.truncate_item(item, remaining)
            else:
                replacement = item.with_content(
                    summary,
                    summary_tokens,
                    summarized="true",
                    original_token_count=str(item.token_count),
                )
            kept[index] = replacement
            used += replacement.token_count
        return kept

    @staticmethod
    def _by_recency(indexed: List[_Indexed]) -> List[_Indexed]:
        return sorted(indexed, key=lambda pair: pair[1].last_modified, reverse=True)

    def _by_priority(self, indexed: List[_Indexed]) -> List[_Indexed]:
        default = self.config.default_relevance

        def priority(pair: _Indexed):
            relevance = pair[1].metadata.relevance
            return (default if relevance is None else relevance, pair[1].last_modified)

        return sorted(indexed, key=priority, reverse=True)


def total_tokens(items: Iterable[ContextItem]) -> int:
    return sum(item.token_count for item in items)
