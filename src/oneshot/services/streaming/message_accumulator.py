#!/usr/bin/env python3

"""
Message Accumulator - builds the assistant message while it streams

The accumulator is owned and mutated by the task consuming the stream. Any
other consumer (a UI, a logger) only ever sees immutable snapshots.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple
import uuid

from ..models.context_models import ContextItem
from ..models.llm_models import FinishReason, MessageRole, TokenUsage
from ..models.session_models import Message, MessageMetadata


@dataclass(frozen=True)
class MessageSnapshot:
    message_id: str
    role: MessageRole
    content: str
    is_streaming: bool
    chunk_count: int
    error: Optional[str] = None
    finish_reason: Optional[FinishReason] = None


class MessageAccumulator:
    """Collects streamed chunks into one message"""

    def __init__(self, role: MessageRole = MessageRole.ASSISTANT,
                 message_id: Optional[str] = None):
        self.message_id = message_id or str(uuid.uuid4())
        self.role = role
        self.started_at = datetime.now(timezone.utc)
        self._parts: List[str] = []
        self._is_streaming = True
        self._error: Optional[str] = None
        self._finish_reason: Optional[FinishReason] = None

    @property
    def content(self) -> str:
        return "".join(self._parts)

    @property
    def is_streaming(self) -> bool:
        return self._is_streaming

    def append(self, text: str) -> MessageSnapshot:
        if not self._is_streaming:
            raise RuntimeError("Cannot append to a finished message")
        if text:
            self._parts.append(text)
        return self.snapshot()

    def finish(self, finish_reason: FinishReason = FinishReason.STOP) -> MessageSnapshot:
        self._is_streaming = False
        self._finish_reason = finish_reason
        return self.snapshot()

    def fail(self, error: str) -> MessageSnapshot:
        """Stop streaming and note the error; received content is kept"""
        self._is_streaming = False
        self._error = error
        self._finish_reason = FinishReason.ERROR
        return self.snapshot()

    def snapshot(self) -> MessageSnapshot:
        return MessageSnapshot(
            message_id=self.message_id,
            role=self.role,
            content=self.content,
            is_streaming=self._is_streaming,
            chunk_count=len(self._parts),
            error=self._error,
            finish_reason=self._finish_reason,
        )

    def to_message(self, token_usage: Optional[TokenUsage] = None,
                   latency: Optional[float] = None,
                   model_id: Optional[str] = None,
                   temperature: Optional[float] = None,
                   max_tokens: Optional[int] = None,
                   context_items: Tuple[ContextItem, ...] = ()) -> Message:
        custom = {}
        if self._finish_reason is not None:
            custom['finish_reason'] = self._finish_reason.value
        return Message(
            id=self.message_id,
            content=self.content,
            role=self.role,
            timestamp=self.started_at,
            token_usage=token_usage,
            context_items=tuple(context_items),
            metadata=MessageMetadata(
                latency=latency,
                model=model_id,
                temperature=temperature,
                max_tokens=max_tokens,
                error=self._error,
                custom_properties=custom,
            ),
        )
