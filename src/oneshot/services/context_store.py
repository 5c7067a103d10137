#!/usr/bin/env python3

"""
Context Store - the active context items of one conversation.

The store is not thread-safe. Its owner (the chat controller) is the single
writer and serializes add, remove and clear.
"""

from typing import Dict, Iterator, Optional, Tuple

from .models.context_models import ContextItem, ContextType


class ContextStore:
    """
    Insertion-ordered collection of context items, unique by id.

    Adding an item whose id is already present replaces it at its original
    position.
    """

    def __init__(self):
        self._items: Dict[str, ContextItem] = {}

    def add(self, item: ContextItem) -> None:
        # dict assignment keeps the position of an existing key
        self._items[item.id] = item

    def remove(self, item_id: str) -> Optional[ContextItem]:
        """Remove an item, returning it or None if absent"""
        return self._items.pop(item_id, None)

    def clear(self) -> None:
        self._items.clear()

    def get(self, item_id: str) -> Optional[ContextItem]:
        return self._items.get(item_id)

    @property
    def items(self) -> Tuple[ContextItem, ...]:
        """Read-only ordered snapshot"""
        return tuple(self._items.values())

    def total_tokens(self) -> int:
        return sum(item.token_count for item in self._items.values())

    def summary(self) -> str:
        """Short description of the active context, e.g. '2 files, 1 folder'"""
        if not self._items:
            return "No context"

        counts: Dict[ContextType, int] = {}
        for item in self._items.values():
            counts[item.type] = counts.get(item.type, 0) + 1

        labels = {
            ContextType.FILE: ("file", "files"),
            ContextType.DIRECTORY: ("folder", "folders"),
            ContextType.CLIPBOARD: ("clipboard", "clipboards"),
            ContextType.SELECTION: ("selection", "selections"),
            ContextType.OUTPUT: ("output", "outputs"),
            ContextType.URL: ("URL", "URLs"),
        }
        parts = []
        for context_type in ContextType:
            count = counts.get(context_type)
            if count:
                singular, plural = labels[context_type]
                parts.append(f"{count} {singular if count == 1 else plural}")
        return ", ".join(parts)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, item_id: object) -> bool:
        return item_id in self._items

    def __iter__(self) -> Iterator[ContextItem]:
        return iter(self.items)
