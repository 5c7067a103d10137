#!/usr/bin/env python3

"""
Session Models - Conversations, messages and the shapes used to search and export them
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .context_models import ContextItem
from .llm_models import MessageRole, TokenUsage


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _parse_time(value: Optional[str]) -> datetime:
    if not value:
        return _utcnow()
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class MessageMetadata:
    latency: Optional[float] = None
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    error: Optional[str] = None
    custom_properties: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'latency': self.latency,
            'model': self.model,
            'temperature': self.temperature,
            'max_tokens': self.max_tokens,
            'error': self.error,
            'custom_properties': dict(self.custom_properties),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'MessageMetadata':
        if not data:
            return cls()
        return cls(
            latency=data.get('latency'),
            model=data.get('model'),
            temperature=data.get('temperature'),
            max_tokens=data.get('max_tokens'),
            error=data.get('error'),
            custom_properties=dict(data.get('custom_properties') or {}),
        )


@dataclass(frozen=True)
class Message:
    """
    One message of a conversation.

    ``context_items`` holds copies of the context attached at send time, so
    later changes to the live context never rewrite history.
    """
    content: str
    role: MessageRole
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_utcnow)
    token_usage: Optional[TokenUsage] = None
    context_items: Tuple[ContextItem, ...] = ()
    metadata: MessageMetadata = field(default_factory=MessageMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'content': self.content,
            'role': self.role.value,
            'timestamp': self.timestamp.isoformat(),
            'token_usage': self.token_usage.to_dict() if self.token_usage else None,
            'context_items': [item.to_dict() for item in self.context_items],
            'metadata': self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Message':
        return cls(
            id=data.get('id') or _new_id(),
            content=data.get('content', ''),
            role=MessageRole(data['role']),
            timestamp=_parse_time(data.get('timestamp')),
            token_usage=TokenUsage.from_dict(data.get('token_usage')),
            context_items=tuple(ContextItem.from_dict(item) for item in data.get('context_items') or []),
            metadata=MessageMetadata.from_dict(data.get('metadata')),
        )


@dataclass(frozen=True)
class SessionMetadata:
    tags: Tuple[str, ...] = ()
    custom_properties: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'tags': list(self.tags), 'custom_properties': dict(self.custom_properties)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SessionMetadata':
        if not data:
            return cls()
        return cls(tags=tuple(data.get('tags') or ()),
                   custom_properties=dict(data.get('custom_properties') or {}))


@dataclass(frozen=True)
class Session:
    """A persisted conversation with one provider/model"""
    provider_id: str
    model_id: str
    title: str = "New Chat"
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utcnow)
    last_modified_at: datetime = field(default_factory=_utcnow)
    is_archived: bool = False
    messages: Tuple[Message, ...] = ()
    metadata: SessionMetadata = field(default_factory=SessionMetadata)

    @property
    def total_tokens(self) -> int:
        return sum(m.token_usage.total for m in self.messages if m.token_usage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'title': self.title,
            'created_at': self.created_at.isoformat(),
            'last_modified_at': self.last_modified_at.isoformat(),
            'is_archived': self.is_archived,
            'provider_id': self.provider_id,
            'model_id': self.model_id,
            'messages': [m.to_dict() for m in self.messages],
            'metadata': self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Session':
        return cls(
            id=data.get('id') or _new_id(),
            title=data.get('title') or "New Chat",
            created_at=_parse_time(data.get('created_at')),
            last_modified_at=_parse_time(data.get('last_modified_at')),
            is_archived=bool(data.get('is_archived', False)),
            provider_id=data.get('provider_id', ''),
            model_id=data.get('model_id', ''),
            messages=tuple(Message.from_dict(m) for m in data.get('messages') or []),
            metadata=SessionMetadata.from_dict(data.get('metadata')),
        )


@dataclass(frozen=True)
class SessionSummary:
    """Lightweight listing row for a session"""
    id: str
    title: str
    created_at: datetime
    last_modified_at: datetime
    is_archived: bool
    provider_id: str
    model_id: str
    message_count: int
    total_tokens: int

    @classmethod
    def from_session(cls, session: Session) -> 'SessionSummary':
        return cls(
            id=session.id,
            title=session.title,
            created_at=session.created_at,
            last_modified_at=session.last_modified_at,
            is_archived=session.is_archived,
            provider_id=session.provider_id,
            model_id=session.model_id,
            message_count=len(session.messages),
            total_tokens=session.total_tokens,
        )


@dataclass(frozen=True)
class SessionFilters:
    provider_id: Optional[str] = None
    date_range: Optional[Tuple[datetime, datetime]] = None
    archived_only: bool = False
    include_archived: bool = True
    tags: Tuple[str, ...] = ()


class ExportFormat(Enum):
    MARKDOWN = "markdown"
    HTML = "html"
    PLAIN_TEXT = "plainText"
    JSON = "json"

    @property
    def file_extension(self) -> str:
        return {
            ExportFormat.MARKDOWN: "md",
            ExportFormat.HTML: "html",
            ExportFormat.PLAIN_TEXT: "txt",
            ExportFormat.JSON: "json",
        }[self]

    @property
    def display_name(self) -> str:
        return {
            ExportFormat.MARKDOWN: "Markdown",
            ExportFormat.HTML: "HTML",
            ExportFormat.PLAIN_TEXT: "Plain Text",
            ExportFormat.JSON: "JSON",
        }[self]
