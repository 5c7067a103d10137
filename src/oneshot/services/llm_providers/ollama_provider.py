#!/usr/bin/env python3

"""
Ollama Provider - Implementation for a local Ollama server
Streams newline-delimited JSON from /api/chat over httpx
"""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import structlog

from ...exceptions import (
    APIProviderError, AuthenticationError, InvalidParametersError, LLMProviderError,
    ModelNotAvailableError, NetworkError, ProviderUnavailableError, RateLimitError
)
from ..metrics_service import MetricsAggregator
from ..models.llm_models import (
    ChatMessage, LLMModel, LLMParameters, MessageChunk, ModelCapability, TokenUsage
)
from ..models.provider_types import ProviderType
from .base_provider import BaseLLMProvider
from .provider_factory import ProviderFactory

log = structlog.get_logger(__name__)


class OllamaProvider(BaseLLMProvider):
    """
    Ollama local provider implementation.

    No API key is needed. The models installed on the server (``/api/tags``)
    become the supported list once discovered; until then a default list is
    used.
    """

    provider_type = ProviderType.OLLAMA

    DEFAULT_CONTEXT_WINDOW = 8192
    TAGS_PATH = "/api/tags"
    CHAT_PATH = "/api/chat"

    def __init__(self, config: Dict[str, Any], metrics: Optional[MetricsAggregator] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize Ollama provider.

        Args:
            config: Provider configuration (see BaseLLMProvider)
            metrics: Aggregator receiving request outcomes
            transport: Optional httpx transport used for every request
        """
        super().__init__(config, metrics)
        # Ollama serves its native API at the root, not under the OpenAI-compatible /v1
        if self.url.endswith('/v1'):
            self.url = self.url[:-len('/v1')]
        self._transport = transport
        self._discovered: List[LLMModel] = []
        self._default_models = [self._make_model(name) for name in self.provider_type.default_models]

    @property
    def requires_authentication(self) -> bool:
        return False

    @property
    def supported_models(self) -> List[LLMModel]:
        return list(self._discovered or self._default_models)

    def _client(self, timeout: float) -> httpx.AsyncClient:
        headers = {}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(base_url=self.url, timeout=timeout,
                                 transport=self._transport, headers=headers)

    def _make_model(self, name: str, details: Optional[Dict[str, Any]] = None) -> LLMModel:
        display_name = name
        if details and details.get('parameter_size'):
            display_name = f"{name} ({details['parameter_size']})"
        return LLMModel(
            id=name,
            display_name=display_name,
            context_window_tokens=self.DEFAULT_CONTEXT_WINDOW,
            provider_id=self.id,
            capabilities=frozenset({
                ModelCapability.CHAT, ModelCapability.CODE_GENERATION, ModelCapability.CODE_ANALYSIS,
            }),
            is_local=True,
        )

    async def authenticate(self, credentials: Dict[str, str]) -> None:
        """Verify the server answers (and accepts the key, if one is given)"""
        if credentials.get('base_url'):
            self.url = credentials['base_url'].rstrip('/')

        previous_key = self.api_key
        self.api_key = credentials.get('api_key') or credentials.get('apiKey') or previous_key
        try:
            models = await self._fetch_models()
        except LLMProviderError as e:
            self.api_key = previous_key
            log.error("ollama.authentication_failed", provider_id=self.id,
                      error_type=type(e).__name__, error=str(e))
            raise

        self._discovered = models
        self._authenticated = True
        log.info("ollama.authenticated", provider_id=self.id, models=len(models))

    async def _stream_chat(self, messages: List[ChatMessage], model: LLMModel,
                           parameters: LLMParameters) -> AsyncIterator[MessageChunk]:
        payload = {
            "model": model.id,
            "messages": [message.to_dict() for message in messages],
            "stream": True,
            "options": self._build_options(parameters),
        }
        log.debug("ollama.stream_started", provider_id=self.id, model_id=model.id,
                  messages=len(messages))

        async with self._client(self.chat_timeout) as client:
            try:
                async with client.stream("POST", self.CHAT_PATH, json=payload) as response:
                    if response.status_code != 200:
                        body = await response.aread()
                        raise self._map_status(response.status_code,
                                               self._error_text(body.decode('utf-8', 'replace')), model)

                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError as e:
                            log.warning("ollama.malformed_line", line=line[:200], error=str(e))
                            continue

                        if not isinstance(data, dict):
                            log.warning("ollama.malformed_line", line=line[:200], error="not an object")
                            continue

                        if data.get('error'):
                            raise APIProviderError(f"Ollama streaming API error: {data['error']}")

                        content = (data.get('message') or {}).get('content')
                        if content:
                            yield MessageChunk(content=content)

                        if data.get('done'):
                            yield MessageChunk.terminal(
                                usage=self._usage_from(data),
                                finish_reason=data.get('done_reason') or "stop",
                            )
                            return
            except httpx.HTTPError as e:
                raise self._map_transport_error(e) from e

        # Stream ended without a done line
        yield MessageChunk.terminal()

    @staticmethod
    def _build_options(parameters: LLMParameters) -> Dict[str, Any]:
        options: Dict[str, Any] = {"temperature": parameters.temperature}
        if parameters.max_tokens is not None:
            options["num_predict"] = parameters.max_tokens
        if parameters.top_p is not None:
            options["top_p"] = parameters.top_p
        if parameters.frequency_penalty is not None:
            options["frequency_penalty"] = parameters.frequency_penalty
        if parameters.presence_penalty is not None:
            options["presence_penalty"] = parameters.presence_penalty
        if parameters.stop_sequences:
            options["stop"] = list(parameters.stop_sequences)
        return options

    @staticmethod
    def _usage_from(data: Dict[str, Any]) -> Optional[TokenUsage]:
        if 'prompt_eval_count' not in data and 'eval_count' not in data:
            return None
        return TokenUsage(
            input=int(data.get('prompt_eval_count') or 0),
            output=int(data.get('eval_count') or 0),
        )

    async def get_models(self) -> List[LLMModel]:
        try:
            models = await self._fetch_models()
        except LLMProviderError as e:
            log.warning("ollama.model_listing_failed", provider_id=self.id, error=str(e))
            return self.supported_models

        if models:
            self._discovered = models
        return self.supported_models

    async def _fetch_models(self) -> List[LLMModel]:
        async with self._client(self.request_timeout) as client:
            try:
                response = await client.get(self.TAGS_PATH)
            except httpx.HTTPError as e:
                raise self._map_transport_error(e) from e

        if response.status_code != 200:
            raise self._map_status(response.status_code, self._error_text(response.text))

        try:
            data = response.json()
        except ValueError as e:
            raise APIProviderError(f"Invalid response from Ollama tags API: {e}") from e
        if not isinstance(data, dict):
            raise APIProviderError("Invalid response from Ollama tags API: expected an object")

        entries = data.get('models') or []
        if not isinstance(entries, list):
            raise APIProviderError("Invalid response from Ollama tags API: models is not a list")

        models = []
        for entry in entries:
            if not isinstance(entry, dict) or not isinstance(entry.get('name'), str) or not entry['name']:
                log.debug("ollama.model_entry_skipped", provider_id=self.id, entry=str(entry)[:200])
                continue
            details = entry.get('details')
            models.append(self._make_model(entry['name'], details if isinstance(details, dict) else None))
        return models

    async def _check_health(self) -> bool:
        async with self._client(self.request_timeout) as client:
            try:
                response = await client.get(self.TAGS_PATH)
            except httpx.HTTPError as e:
                raise self._map_transport_error(e) from e
        return response.status_code == 200

    @staticmethod
    def _error_text(body: str) -> str:
        try:
            data = json.loads(body)
        except (json.JSONDecodeError, TypeError):
            return body.strip()
        if isinstance(data, dict) and data.get('error'):
            return str(data['error'])
        return body.strip()

    def _map_status(self, status: int, message: str,
                    model: Optional[LLMModel] = None) -> LLMProviderError:
        message = message or f"HTTP {status}"
        if status in (401, 403):
            return AuthenticationError(f"Ollama authentication failed: {message}")
        if status == 404 and model is not None:
            return ModelNotAvailableError(model.id, self.id)
        if status == 429:
            return RateLimitError(f"Ollama rate limit exceeded: {message}")
        if status == 400:
            return InvalidParametersError(message)
        if status in (502, 503, 504):
            return ProviderUnavailableError(f"Ollama unavailable: {message}")
        return APIProviderError(f"Ollama API error (HTTP {status}): {message}")

    def _map_transport_error(self, error: httpx.HTTPError) -> NetworkError:
        if isinstance(error, httpx.TimeoutException):
            log.error("ollama.request_failed", provider_id=self.id, timeout=True, error=str(error))
            return NetworkError(f"Ollama request timed out: {error}", timeout=True)
        log.error("ollama.request_failed", provider_id=self.id, timeout=False, error=str(error))
        return NetworkError(f"Ollama connection failed: {error}")


class OllamaProviderFactory(ProviderFactory):
    """Factory for creating Ollama providers"""

    def create_provider(self, config: Dict[str, Any],
                        metrics: Optional[MetricsAggregator] = None) -> OllamaProvider:
        """Create Ollama provider instance"""
        return OllamaProvider(config, metrics)

    def supports_provider_type(self, provider_type: ProviderType) -> bool:
        """Check if this factory supports Ollama providers"""
        return provider_type == ProviderType.OLLAMA
