#!/usr/bin/env python3

"""
OpenAI Provider - Implementation for the OpenAI chat completions API
Streams server-sent events through the official async SDK
"""

import re
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import openai
import structlog
from openai import AsyncOpenAI

from ...exceptions import (
    APIProviderError, AuthenticationError, ContextTooLargeError,
    InvalidParametersError, LLMProviderError, ModelNotAvailableError,
    NetworkError, ProviderUnavailableError, RateLimitError
)
from ..metrics_service import MetricsAggregator
from ..models.llm_models import (
    ChatMessage, LLMModel, LLMParameters, MessageChunk, ModelCapability, TokenUsage
)
from ..models.provider_types import ProviderType
from ..token_estimator import estimate_total
from .base_provider import BaseLLMProvider
from .provider_factory import ProviderFactory

log = structlog.get_logger(__name__)

_CONTEXT_LENGTH_PATTERN = re.compile(
    r"maximum context length is (\d+) tokens.*?(\d+) tokens", re.DOTALL
)

_FULL_CAPABILITIES = frozenset({
    ModelCapability.CHAT, ModelCapability.CODE_GENERATION, ModelCapability.CODE_ANALYSIS,
    ModelCapability.FUNCTION_CALLING, ModelCapability.IMAGE_ANALYSIS,
})


class OpenAIProvider(BaseLLMProvider):
    """
    OpenAI API provider implementation.

    The model list is built in; a live listing only narrows it to what the
    account can use. Token usage comes from the final stream chunk.
    """

    provider_type = ProviderType.OPENAI

    # id, display name, context window, capabilities
    MODEL_TABLE = [
        ("gpt-4o", "GPT-4o", 128000, _FULL_CAPABILITIES),
        ("gpt-4o-mini", "GPT-4o mini", 128000, _FULL_CAPABILITIES),
        ("gpt-4-turbo", "GPT-4 Turbo", 128000, _FULL_CAPABILITIES),
        ("gpt-4", "GPT-4", 8192, frozenset({
            ModelCapability.CHAT, ModelCapability.CODE_GENERATION,
            ModelCapability.CODE_ANALYSIS, ModelCapability.FUNCTION_CALLING,
        })),
        ("gpt-3.5-turbo", "GPT-3.5 Turbo", 16385, frozenset({
            ModelCapability.CHAT, ModelCapability.FUNCTION_CALLING,
        })),
    ]

    # USD per 1K tokens: (input, output)
    PRICING = {
        "gpt-4o": (0.0025, 0.01),
        "gpt-4o-mini": (0.00015, 0.0006),
        "gpt-4-turbo": (0.01, 0.03),
        "gpt-4": (0.03, 0.06),
        "gpt-3.5-turbo": (0.0015, 0.002),
    }

    def __init__(self, config: Dict[str, Any], metrics: Optional[MetricsAggregator] = None,
                 http_client: Optional[httpx.AsyncClient] = None):
        """
        Initialize OpenAI provider.

        The SDK client is only created by a successful ``authenticate``.

        Args:
            config: Provider configuration (see BaseLLMProvider)
            metrics: Aggregator receiving request outcomes
            http_client: Optional httpx client handed to the SDK
        """
        super().__init__(config, metrics)
        self._http_client = http_client
        self._client: Optional[AsyncOpenAI] = None
        self._models = [
            LLMModel(
                id=model_id,
                display_name=display_name,
                context_window_tokens=window,
                provider_id=self.id,
                capabilities=capabilities,
                is_local=False,
                input_pricing=self.PRICING.get(model_id, (None, None))[0],
                output_pricing=self.PRICING.get(model_id, (None, None))[1],
            )
            for model_id, display_name, window, capabilities in self.MODEL_TABLE
        ]

    @property
    def requires_authentication(self) -> bool:
        return True

    @property
    def supported_models(self) -> List[LLMModel]:
        return list(self._models)

    def _create_client(self, api_key: str) -> AsyncOpenAI:
        return AsyncOpenAI(
            api_key=api_key,
            base_url=self.url,
            timeout=httpx.Timeout(self.chat_timeout),
            max_retries=0,  # Retry is a caller decision
            http_client=self._http_client,
        )

    async def authenticate(self, credentials: Dict[str, str]) -> None:
        api_key = credentials.get('api_key') or credentials.get('apiKey')
        if not api_key:
            raise AuthenticationError("OpenAI API key is required")
        if credentials.get('base_url'):
            self.url = credentials['base_url'].rstrip('/')

        client = self._create_client(api_key)
        try:
            await client.models.list(timeout=self.request_timeout)
        except (openai.APIError, httpx.HTTPError) as e:
            error = self._map_error(e)
            log.error("openai.authentication_failed", provider_id=self.id,
                      error_type=type(error).__name__, error=str(error))
            raise error from e

        self._client = client
        self.api_key = api_key
        self._authenticated = True
        log.info("openai.authenticated", provider_id=self.id)

    async def _stream_chat(self, messages: List[ChatMessage], model: LLMModel,
                           parameters: LLMParameters) -> AsyncIterator[MessageChunk]:
        request = self._build_request(messages, model, parameters)
        log.debug("openai.stream_started", provider_id=self.id, model_id=model.id,
                  messages=len(messages))

        try:
            stream = await self._client.chat.completions.create(**request)
        except (openai.APIError, httpx.HTTPError) as e:
            raise self._map_error(e, model, messages) from e

        usage: Optional[TokenUsage] = None
        finish_reason: Optional[str] = None
        try:
            async for chunk in stream:
                if chunk.usage is not None:
                    usage = TokenUsage(
                        input=chunk.usage.prompt_tokens or 0,
                        output=chunk.usage.completion_tokens or 0,
                    )
                if not chunk.choices:
                    continue

                choice = chunk.choices[0]
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                if choice.delta is not None and choice.delta.content:
                    yield MessageChunk(content=choice.delta.content)
        except (openai.APIError, httpx.HTTPError) as e:
            raise self._map_error(e, model, messages) from e
        finally:
            await stream.close()

        yield MessageChunk.terminal(usage=usage, finish_reason=finish_reason)

    def _build_request(self, messages: List[ChatMessage], model: LLMModel,
                       parameters: LLMParameters) -> Dict[str, Any]:
        request: Dict[str, Any] = {
            "model": model.id,
            "messages": [message.to_dict() for message in messages],
            "stream": True,
            "stream_options": {"include_usage": True},
            "temperature": parameters.temperature,
            "timeout": self.chat_timeout,
        }
        if parameters.max_tokens is not None:
            request["max_tokens"] = parameters.max_tokens
        if parameters.top_p is not None:
            request["top_p"] = parameters.top_p
        if parameters.frequency_penalty is not None:
            request["frequency_penalty"] = parameters.frequency_penalty
        if parameters.presence_penalty is not None:
            request["presence_penalty"] = parameters.presence_penalty
        if parameters.stop_sequences:
            request["stop"] = list(parameters.stop_sequences)
        return request

    async def get_models(self) -> List[LLMModel]:
        if self._client is None:
            return self.supported_models

        try:
            page = await self._client.models.list(timeout=self.request_timeout)
            available = {entry.id for entry in page.data}
        except (openai.APIError, httpx.HTTPError) as e:
            log.warning("openai.model_listing_failed", provider_id=self.id, error=str(e))
            return self.supported_models

        models = [model for model in self._models if model.id in available]
        return models or self.supported_models

    async def _check_health(self) -> bool:
        if self._client is None:
            return False
        try:
            await self._client.models.list(timeout=self.request_timeout)
        except (openai.APIError, httpx.HTTPError) as e:
            raise self._map_error(e) from e
        return True

    def _map_error(self, error: Exception, model: Optional[LLMModel] = None,
                   messages: Optional[List[ChatMessage]] = None) -> LLMProviderError:
        """Translate SDK and transport exceptions into the provider error taxonomy"""
        if isinstance(error, (openai.APITimeoutError, httpx.TimeoutException)):
            log.error("openai.request_failed", provider_id=self.id, timeout=True, error=str(error))
            return NetworkError(f"OpenAI request timed out: {error}", timeout=True)

        if isinstance(error, (openai.APIConnectionError, httpx.HTTPError)):
            log.error("openai.request_failed", provider_id=self.id, timeout=False,
                      error=str(error), cause=str(error.__cause__) if error.__cause__ else None)
            return NetworkError(f"OpenAI connection failed: {error}")

        if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
            return AuthenticationError(f"OpenAI authentication failed: {self._error_message(error)}")

        if isinstance(error, openai.RateLimitError):
            return RateLimitError(f"OpenAI rate limit exceeded: {self._error_message(error)}")

        if isinstance(error, openai.BadRequestError):
            message = self._error_message(error)
            if getattr(error, 'code', None) == 'context_length_exceeded':
                return self._context_too_large(message, model, messages)
            return InvalidParametersError(message)

        if isinstance(error, openai.NotFoundError) and model is not None:
            return ModelNotAvailableError(model.id, self.id)

        if isinstance(error, openai.InternalServerError):
            return ProviderUnavailableError(f"OpenAI service unavailable: {self._error_message(error)}")

        return APIProviderError(f"OpenAI API error: {error}")

    @staticmethod
    def _error_message(error: Exception) -> str:
        body = getattr(error, 'body', None)
        if isinstance(body, dict) and body.get('message'):
            return str(body['message'])
        return str(error)

    @staticmethod
    def _context_too_large(message: str, model: Optional[LLMModel],
                           messages: Optional[List[ChatMessage]]) -> ContextTooLargeError:
        match = _CONTEXT_LENGTH_PATTERN.search(message)
        if match:
            return ContextTooLargeError(current=int(match.group(2)), maximum=int(match.group(1)))

        current = estimate_total(m.content for m in messages) if messages else 0
        maximum = model.context_window_tokens if model is not None else 0
        return ContextTooLargeError(current=current, maximum=maximum)


class OpenAIProviderFactory(ProviderFactory):
    """Factory for creating OpenAI providers"""

    def create_provider(self, config: Dict[str, Any],
                        metrics: Optional[MetricsAggregator] = None) -> OpenAIProvider:
        """Create OpenAI provider instance"""
        return OpenAIProvider(config, metrics)

    def supports_provider_type(self, provider_type: ProviderType) -> bool:
        """Check if this factory supports OpenAI providers"""
        return provider_type == ProviderType.OPENAI
