#!/usr/bin/env python3

"""
Base LLM Provider - Abstract interface for all LLM provider adapters
Defines the contract that every backend family implements
"""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import structlog

from ...exceptions import LLMProviderError, ModelNotAvailableError, NotConfiguredError
from ..metrics_service import MetricsAggregator
from ..models.context_models import ContextItem
from ..models.llm_models import (
    ChatMessage, LLMModel, LLMParameters, MessageChunk, MessageRole
)
from ..models.metrics_models import ProviderMetrics
from ..models.provider_types import ProviderType
from ..streaming.chat_stream import ChatStream
from ..token_estimator import estimate_tokens

log = structlog.get_logger(__name__)

DEFAULT_CHAT_TIMEOUT = 60.0
DEFAULT_REQUEST_TIMEOUT = 30.0

CONTEXT_PREAMBLE = "You have access to the following context:"
CONTEXT_INSTRUCTION = "Please use this context to provide more accurate and relevant responses."


def _item_header(item: ContextItem) -> List[str]:
    return [
        f"## {item.display_name}",
        f"Path: {item.source_path}",
        f"Type: {item.kind.display_name}",
        "",
        "```",
    ]


def format_context(items: Sequence[ContextItem]) -> str:
    """
    Serialize context items into the text of a single system message.

    Each item becomes a level-2 heading with its name, a Path and a Type
    line, and its raw content in a fenced block.
    """
    parts = [CONTEXT_PREAMBLE, ""]
    for item in items:
        parts.extend(_item_header(item))
        parts.extend([item.content, "```", ""])
    parts.append(CONTEXT_INSTRUCTION)
    return "\n".join(parts)


def framing_tokens(items: Sequence[ContextItem]) -> int:
    """Estimated tokens the context message adds around the content of these items"""
    if not items:
        return 0
    per_item = sum(estimate_tokens("\n".join(_item_header(item) + ["", "```", ""])) for item in items)
    return estimate_tokens(format_context(())) + per_item


def build_messages(text: str, context: Sequence[ContextItem] = (),
                   system_prompt: Optional[str] = None,
                   history: Sequence[ChatMessage] = ()) -> List[ChatMessage]:
    """Wire conversation: system prompt, context, earlier turns, then the new user message"""
    messages = []
    if system_prompt:
        messages.append(ChatMessage(MessageRole.SYSTEM, system_prompt))
    if context:
        messages.append(ChatMessage(MessageRole.SYSTEM, format_context(context)))
    messages.extend(history)
    messages.append(ChatMessage(MessageRole.USER, text))
    return messages


class BaseLLMProvider(ABC):
    """
    Abstract base class for all LLM provider adapters.

    Subclasses implement the backend dialect in ``_stream_chat``,
    ``authenticate``, ``get_models`` and ``_check_health``. Request
    validation, prompt framing and metrics reporting live here.
    """

    provider_type: ProviderType

    def __init__(self, config: Dict[str, Any], metrics: Optional[MetricsAggregator] = None):
        """
        Initialize provider with configuration from settings service.

        Args:
            config: Provider configuration dictionary containing:
                - id: Stable provider identifier (defaults to the provider type)
                - name: Provider name
                - url: API endpoint URL
                - api_key: API key (if required)
                - chat_timeout: Seconds allowed for a full chat completion
                - request_timeout: Seconds allowed for ancillary calls
            metrics: Aggregator receiving request outcomes
        """
        self.config = config
        self.id = str(config.get('id') or self.provider_type.value)
        self.name = config.get('name') or self.provider_type.display_name
        self.url = (config.get('url') or self.provider_type.default_url).rstrip('/')
        self.api_key = config.get('api_key') or ''
        self.chat_timeout = float(config.get('chat_timeout') or DEFAULT_CHAT_TIMEOUT)
        self.request_timeout = float(config.get('request_timeout') or DEFAULT_REQUEST_TIMEOUT)
        self._metrics = metrics or MetricsAggregator()
        self._metrics.register_provider(self.id)
        self._authenticated = False

    # Capabilities and state

    @property
    @abstractmethod
    def requires_authentication(self) -> bool:
        pass

    @property
    @abstractmethod
    def supported_models(self) -> List[LLMModel]:
        pass

    @property
    def is_authenticated(self) -> bool:
        return self._authenticated

    @property
    def is_available(self) -> bool:
        """Whether the provider can accept requests right now"""
        return self._authenticated or not self.requires_authentication

    @property
    def metrics(self) -> ProviderMetrics:
        return self._metrics.get_provider_metrics(self.id)

    def get_model(self, model_id: str) -> Optional[LLMModel]:
        for model in self.supported_models:
            if model.id == model_id:
                return model
        return None

    # Operations

    @abstractmethod
    async def authenticate(self, credentials: Dict[str, str]) -> None:
        """
        Verify credentials with a live round-trip and keep them on success.

        Raises:
            AuthenticationError: Missing or rejected credentials
            NetworkError: Backend unreachable
        """
        pass

    def send_message(self, text: str, context: Sequence[ContextItem], model: LLMModel,
                     parameters: Optional[LLMParameters] = None,
                     system_prompt: Optional[str] = None,
                     history: Sequence[ChatMessage] = ()) -> ChatStream:
        """
        Start a chat request.

        Validation happens immediately; the network request is opened when
        the returned stream is first iterated.

        Raises:
            NotConfiguredError: Provider needs authentication first
            ModelNotAvailableError: Model is not in supported_models
        """
        if not self.is_available:
            raise NotConfiguredError(f"{self.name} is not authenticated")
        if self.get_model(model.id) is None:
            raise ModelNotAvailableError(model.id, self.id)

        parameters = parameters or LLMParameters()
        messages = build_messages(text, context, system_prompt, history)
        prompt_text = "\n".join(message.content for message in messages)

        log.debug("provider.request_prepared", provider_id=self.id, model_id=model.id,
                  messages=len(messages), context_items=len(context))

        return ChatStream(
            lambda: self._stream_chat(messages, model, parameters),
            provider_id=self.id,
            model_id=model.id,
            prompt_text=prompt_text,
            on_complete=self._record_completion,
            on_error=self._record_failure,
        )

    @abstractmethod
    def _stream_chat(self, messages: List[ChatMessage], model: LLMModel,
                     parameters: LLMParameters) -> AsyncIterator[MessageChunk]:
        """
        Async generator of content chunks ending with ``MessageChunk.terminal``.

        Backend failures must be raised as LLMProviderError subclasses.
        """
        pass

    @abstractmethod
    async def get_models(self) -> List[LLMModel]:
        """Live model listing with fallback to the built-in list on any failure"""
        pass

    async def health_check(self) -> bool:
        """Probe the backend and record the result in this provider's metrics"""
        try:
            healthy = await self._check_health()
        except LLMProviderError as e:
            log.warning("provider.health_check_failed", provider_id=self.id, error=str(e))
            healthy = False

        try:
            self._metrics.record_health_check(self.id, healthy)
        except Exception as e:
            log.warning("provider.metrics_failed", provider_id=self.id, error=str(e))
        return healthy

    @abstractmethod
    async def _check_health(self) -> bool:
        pass

    # Metrics callbacks

    def _record_completion(self, stream: ChatStream):
        log.debug("provider.request_completed", provider_id=self.id, model_id=stream.model_id,
                  latency=stream.latency, finish_reason=stream.finish_reason.value)
        self._metrics.record_request(self.id, stream.model_id, stream.latency or 0.0, stream.usage)

    def _record_failure(self, stream: ChatStream, error: LLMProviderError):
        log.error("provider.request_failed", provider_id=self.id, model_id=stream.model_id,
                  error_type=type(error).__name__, error=str(error))
        self._metrics.record_error(self.id, error, model_id=stream.model_id, latency=stream.latency)

    def __str__(self) -> str:
        """String representation of provider"""
        return f"{self.__class__.__name__}(id='{self.id}', name='{self.name}')"

    def __repr__(self) -> str:
        """Detailed string representation"""
        return (f"{self.__class__.__name__}("
                f"id='{self.id}', "
                f"name='{self.name}', "
                f"url='{self.url}', "
                f"provider_type='{self.provider_type}')")
