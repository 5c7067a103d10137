#!/usr/bin/env python3

"""
Provider Registry - configured provider adapters and the current selection
Validates model compatibility before dispatching a message
"""

import asyncio
from threading import Lock
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from ..exceptions import ModelNotAvailableError, NotConfiguredError
from .llm_providers.base_provider import BaseLLMProvider
from .metrics_service import MetricsAggregator
from .models.context_models import ContextItem
from .models.llm_models import ChatMessage, LLMConfiguration
from .models.metrics_models import DiagnosticEvent, DiagnosticEventType
from .streaming.chat_stream import ChatStream

log = structlog.get_logger(__name__)


class ProviderRegistry:
    """
    Holds the configured providers in list order and tracks the current one.

    Responsibilities:
    - Provider list management (add, remove, select)
    - Model compatibility check before every send
    - Health checks across providers
    """

    def __init__(self, metrics: Optional[MetricsAggregator] = None):
        self._providers: List[BaseLLMProvider] = []
        self._current_id: Optional[str] = None
        self._lock = Lock()
        self._metrics = metrics

    @property
    def providers(self) -> Tuple[BaseLLMProvider, ...]:
        with self._lock:
            return tuple(self._providers)

    @property
    def current_provider(self) -> Optional[BaseLLMProvider]:
        with self._lock:
            return self._find(self._current_id)

    @property
    def available_providers(self) -> Tuple[BaseLLMProvider, ...]:
        return tuple(p for p in self.providers if p.is_available)

    @property
    def is_configured(self) -> bool:
        provider = self.current_provider
        return provider is not None and provider.is_available

    def get_provider(self, provider_id: str) -> Optional[BaseLLMProvider]:
        with self._lock:
            return self._find(provider_id)

    def add_provider(self, provider: BaseLLMProvider) -> None:
        """Add a provider, replacing one with the same id. The first one added becomes current."""
        with self._lock:
            for index, existing in enumerate(self._providers):
                if existing.id == provider.id:
                    self._providers[index] = provider
                    break
            else:
                self._providers.append(provider)
            if self._current_id is None:
                self._current_id = provider.id

        log.info("providers.added", provider_id=provider.id, provider_type=provider.provider_type.value)
        self._record_event(DiagnosticEventType.PROVIDER_ADDED, provider)

    def remove_provider(self, provider_id: str) -> Optional[BaseLLMProvider]:
        """
        Remove a provider.

        Removing the current provider selects the first remaining provider,
        or none when the list is empty.
        """
        with self._lock:
            provider = self._find(provider_id)
            if provider is None:
                return None
            self._providers.remove(provider)
            if self._current_id == provider_id:
                self._current_id = self._providers[0].id if self._providers else None
            current_id = self._current_id

        log.info("providers.removed", provider_id=provider_id, current_provider_id=current_id)
        self._record_event(DiagnosticEventType.PROVIDER_REMOVED, provider)
        if self._metrics is not None:
            self._metrics.forget_provider(provider_id)
        return provider

    def set_current_provider(self, provider_id: str) -> BaseLLMProvider:
        with self._lock:
            provider = self._find(provider_id)
            if provider is None:
                raise NotConfiguredError(f"Unknown provider: {provider_id}")
            self._current_id = provider_id
        log.info("providers.selected", provider_id=provider_id)
        return provider

    def send(self, text: str, context: Sequence[ContextItem],
             configuration: LLMConfiguration,
             history: Sequence[ChatMessage] = ()) -> ChatStream:
        """
        Dispatch a message to the current provider.

        Raises:
            NotConfiguredError: No current provider, or it is unauthenticated
            ModelNotAvailableError: The configured model is not offered by the
                current provider (checked before any network activity)
        """
        provider = self.current_provider
        if provider is None:
            raise NotConfiguredError("No LLM provider configured")

        model_id = configuration.model.id
        if not any(model.id == model_id for model in provider.supported_models):
            log.warning("providers.model_not_available", provider_id=provider.id, model_id=model_id)
            raise ModelNotAvailableError(model_id, provider.id)

        return provider.send_message(
            text,
            context,
            provider.get_model(model_id),
            configuration.parameters,
            system_prompt=configuration.system_prompt,
            history=history,
        )

    async def health_check_all(self) -> Dict[str, bool]:
        """Probe every provider concurrently"""
        providers = self.providers
        results = await asyncio.gather(*(p.health_check() for p in providers))
        return {provider.id: healthy for provider, healthy in zip(providers, results)}

    async def authenticate(self, provider_id: str, credentials: Dict[str, str]) -> None:
        provider = self.get_provider(provider_id)
        if provider is None:
            raise NotConfiguredError(f"Unknown provider: {provider_id}")
        await provider.authenticate(credentials)

    def _find(self, provider_id: Optional[str]) -> Optional[BaseLLMProvider]:
        if provider_id is None:
            return None
        for provider in self._providers:
            if provider.id == provider_id:
                return provider
        return None

    def _record_event(self, event_type: DiagnosticEventType, provider: BaseLLMProvider):
        if self._metrics is None:
            return
        try:
            self._metrics.record_event(DiagnosticEvent(event_type, properties={
                'provider_id': provider.id,
                'provider_type': provider.provider_type.value,
            }))
        except Exception as e:
            log.warning("providers.event_failed", error=str(e))
