#!/usr/bin/env python3
"""
Context Models for OneShot

This module provides data models for context items injected into prompts,
their metadata, and the configuration of context window optimization.
"""

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ContextType(Enum):
    """Kinds of context a user can attach to a message"""
    FILE = "file"
    DIRECTORY = "directory"
    CLIPBOARD = "clipboard"
    SELECTION = "selection"
    OUTPUT = "output"
    URL = "url"

    @property
    def display_name(self) -> str:
        return {
            ContextType.FILE: "File",
            ContextType.DIRECTORY: "Directory",
            ContextType.CLIPBOARD: "Clipboard",
            ContextType.SELECTION: "Selection",
            ContextType.OUTPUT: "Output",
            ContextType.URL: "URL",
        }[self]


class GitFileStatus(Enum):
    """Porcelain status codes reported by git"""
    UNTRACKED = "??"
    MODIFIED = "M"
    ADDED = "A"
    DELETED = "D"
    RENAMED = "R"
    COPIED = "C"
    UNMERGED = "U"
    IGNORED = "!"
    CLEAN = ""


class ContextOptimizationStrategy(Enum):
    """How to fit context items into a token budget"""
    NONE = "none"
    TRUNCATE = "truncate"
    SUMMARIZE = "summarize"
    SMART = "smart"

    @property
    def display_name(self) -> str:
        return {
            ContextOptimizationStrategy.NONE: "None",
            ContextOptimizationStrategy.TRUNCATE: "Truncate",
            ContextOptimizationStrategy.SUMMARIZE: "Summarize",
            ContextOptimizationStrategy.SMART: "Smart",
        }[self]

    @property
    def description(self) -> str:
        return {
            ContextOptimizationStrategy.NONE: "Send all context as-is",
            ContextOptimizationStrategy.TRUNCATE: "Drop the oldest context and cut the remainder to fit",
            ContextOptimizationStrategy.SUMMARIZE: "Replace overflowing context with shorter summaries",
            ContextOptimizationStrategy.SMART: "Prefer relevant and recent context, then truncate",
        }[self]


@dataclass(frozen=True)
class ContextKind:
    """
    Kind of a context item plus its kind-specific payload.

    Files carry an optional language, URLs carry the address.
    """
    type: ContextType
    language: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def file(cls, language: Optional[str] = None) -> 'ContextKind':
        return cls(ContextType.FILE, language=language)

    @classmethod
    def directory(cls) -> 'ContextKind':
        return cls(ContextType.DIRECTORY)

    @classmethod
    def clipboard(cls) -> 'ContextKind':
        return cls(ContextType.CLIPBOARD)

    @classmethod
    def selection(cls) -> 'ContextKind':
        return cls(ContextType.SELECTION)

    @classmethod
    def output(cls) -> 'ContextKind':
        return cls(ContextType.OUTPUT)

    @classmethod
    def for_url(cls, url: str) -> 'ContextKind':
        return cls(ContextType.URL, url=url)

    @property
    def display_name(self) -> str:
        return self.type.display_name

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type.value, 'language': self.language, 'url': self.url}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContextKind':
        return cls(ContextType(data['type']), language=data.get('language'), url=data.get('url'))


@dataclass(frozen=True)
class ContextMetadata:
    """Advisory descriptive fields of a context item"""
    file_size: Optional[int] = None
    encoding: Optional[str] = None
    mime_type: Optional[str] = None
    git_status: Optional[GitFileStatus] = None
    line_count: Optional[int] = None
    language: Optional[str] = None
    custom_properties: Dict[str, str] = field(default_factory=dict)

    @property
    def relevance(self) -> Optional[float]:
        """Declared relevance score, if a caller attached one"""
        value = self.custom_properties.get('relevance')
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'file_size': self.file_size,
            'encoding': self.encoding,
            'mime_type': self.mime_type,
            'git_status': self.git_status.value if self.git_status is not None else None,
            'line_count': self.line_count,
            'language': self.language,
            'custom_properties': dict(self.custom_properties),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'ContextMetadata':
        if not data:
            return cls()
        git_status = data.get('git_status')
        return cls(
            file_size=data.get('file_size'),
            encoding=data.get('encoding'),
            mime_type=data.get('mime_type'),
            git_status=GitFileStatus(git_status) if git_status is not None else None,
            line_count=data.get('line_count'),
            language=data.get('language'),
            custom_properties=dict(data.get('custom_properties') or {}),
        )


@dataclass(frozen=True)
class ContextItem:
    """
    A resolved, self-contained unit of injected context.

    Items are immutable. ``token_count`` is fixed when the item is created
    and is never recomputed; re-resolve the source to refresh it.
    """
    id: str
    kind: ContextKind
    source_path: str
    display_name: str
    content: str
    token_count: int
    last_modified: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: ContextMetadata = field(default_factory=ContextMetadata)

    @property
    def type(self) -> ContextType:
        return self.kind.type

    def with_content(self, content: str, token_count: int, **custom_properties: str) -> 'ContextItem':
        """Copy of this item carrying replacement content"""
        metadata = self.metadata
        if custom_properties:
            properties = dict(metadata.custom_properties)
            properties.update(custom_properties)
            metadata = dataclasses.replace(metadata, custom_properties=properties)
        return dataclasses.replace(self, content=content, token_count=token_count, metadata=metadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'kind': self.kind.to_dict(),
            'source_path': self.source_path,
            'display_name': self.display_name,
            'content': self.content,
            'token_count': self.token_count,
            'last_modified': self.last_modified.isoformat(),
            'metadata': self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ContextItem':
        return cls(
            id=data['id'],
            kind=ContextKind.from_dict(data['kind']),
            source_path=data.get('source_path', ''),
            display_name=data.get('display_name', data['id']),
            content=data.get('content', ''),
            token_count=int(data.get('token_count', 1)),
            last_modified=datetime.fromisoformat(data['last_modified']),
            metadata=ContextMetadata.from_dict(data.get('metadata')),
        )


@dataclass
class ContextOptimizationConfig:
    """Configuration for context window optimization"""

    # Smallest remaining budget worth spending on a partially included item
    min_partial_tokens: int = 50

    # Appended to content cut down to fit the budget
    truncation_marker: str = "[... content truncated for token limit ...]"

    # Relevance assumed for items that declare none (smart strategy)
    default_relevance: float = 0.0
