#!/usr/bin/env python3

"""
LLM Models - Data structures for models, parameters and streamed responses
Normalized so every provider adapter produces the same shapes
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .context_models import ContextOptimizationStrategy


class MessageRole(Enum):
    """Message roles in chat conversations"""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class ModelCapability(Enum):
    """Features a model variant offers"""
    CHAT = "chat"
    CODE_GENERATION = "codeGeneration"
    CODE_ANALYSIS = "codeAnalysis"
    FUNCTION_CALLING = "functionCalling"
    IMAGE_GENERATION = "imageGeneration"
    IMAGE_ANALYSIS = "imageAnalysis"
    EMBEDDING = "embedding"


class FinishReason(Enum):
    """Why a generation ended"""
    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    ERROR = "error"
    CANCELLED = "cancelled"

    @classmethod
    def from_backend(cls, value: Optional[str]) -> 'FinishReason':
        """Map a backend finish reason string, defaulting to STOP"""
        if not value:
            return cls.STOP
        try:
            return cls(value)
        except ValueError:
            return cls.STOP


class RequestState(Enum):
    """Lifecycle of a single chat request"""
    IDLE = "idle"
    SENT = "sent"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestState.COMPLETED, RequestState.FAILED, RequestState.CANCELLED)


@dataclass(frozen=True, eq=False)
class LLMModel:
    """
    A model variant offered by a provider.

    Identity is the ``(id, provider_id)`` pair: two providers may expose
    models with colliding bare ids.
    """
    id: str
    display_name: str
    context_window_tokens: int
    provider_id: str
    capabilities: FrozenSet[ModelCapability] = frozenset({ModelCapability.CHAT})
    is_local: bool = False
    # USD per 1K tokens
    input_pricing: Optional[float] = None
    output_pricing: Optional[float] = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, LLMModel):
            return NotImplemented
        return (self.id, self.provider_id) == (other.id, other.provider_id)

    def __hash__(self) -> int:
        return hash((self.id, self.provider_id))

    def supports(self, capability: ModelCapability) -> bool:
        return capability in self.capabilities

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'display_name': self.display_name,
            'context_window_tokens': self.context_window_tokens,
            'provider_id': self.provider_id,
            'capabilities': sorted(c.value for c in self.capabilities),
            'is_local': self.is_local,
            'input_pricing': self.input_pricing,
            'output_pricing': self.output_pricing,
        }


@dataclass(frozen=True)
class LLMParameters:
    """Sampling configuration for a request"""
    temperature: float = 0.7
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop_sequences: Tuple[str, ...] = ()

    @classmethod
    def creative(cls) -> 'LLMParameters':
        return cls(temperature=0.9)

    @classmethod
    def precise(cls) -> 'LLMParameters':
        return cls(temperature=0.1)

    @classmethod
    def balanced(cls) -> 'LLMParameters':
        return cls(temperature=0.7)


@dataclass(frozen=True)
class LLMConfiguration:
    """Everything needed to dispatch a message: model, sampling and context policy"""
    model: LLMModel
    parameters: LLMParameters = field(default_factory=LLMParameters)
    system_prompt: Optional[str] = None
    context_optimization: ContextOptimizationStrategy = ContextOptimizationStrategy.SMART


@dataclass(frozen=True)
class TokenUsage:
    """Token usage information"""
    input: int
    output: int

    @property
    def total(self) -> int:
        return self.input + self.output

    def to_dict(self) -> Dict[str, int]:
        return {'input': self.input, 'output': self.output, 'total': self.total}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional['TokenUsage']:
        if not data:
            return None
        return cls(input=int(data.get('input', 0)), output=int(data.get('output', 0)))


@dataclass(frozen=True)
class MessageChunk:
    """
    One incremental piece of a streamed response.

    Adapters finish every stream with a single terminal chunk
    (``is_complete=True``, empty content) whose metadata carries the
    backend-reported usage and finish reason.
    """
    content: str
    is_complete: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def terminal(cls, usage: Optional[TokenUsage] = None,
                 finish_reason: Optional[str] = None) -> 'MessageChunk':
        return cls(content="", is_complete=True,
                   metadata={'usage': usage, 'finish_reason': finish_reason})

    @property
    def usage(self) -> Optional[TokenUsage]:
        return self.metadata.get('usage')

    @property
    def finish_reason(self) -> Optional[str]:
        return self.metadata.get('finish_reason')


@dataclass
class ChatMessage:
    """Individual message in the wire-level conversation sent to a backend"""
    role: MessageRole
    content: str

    def __post_init__(self):
        """Convert string roles to MessageRole enum"""
        if isinstance(self.role, str):
            self.role = MessageRole(self.role)

    def to_dict(self) -> Dict[str, str]:
        return {'role': self.role.value, 'content': self.content}
