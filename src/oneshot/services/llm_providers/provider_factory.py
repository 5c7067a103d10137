#!/usr/bin/env python3

"""
Provider Factory - Factory pattern for creating LLM provider adapters
Handles provider instantiation from persisted provider configuration
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from ...exceptions import LLMProviderError
from ..metrics_service import MetricsAggregator
from ..models.provider_types import ProviderType

if TYPE_CHECKING:
    from .base_provider import BaseLLMProvider


class ProviderFactory(ABC):
    """Abstract factory for creating LLM providers"""

    @abstractmethod
    def create_provider(self, config: Dict[str, Any],
                        metrics: Optional[MetricsAggregator] = None) -> 'BaseLLMProvider':
        """Create a provider instance from configuration"""
        pass

    @abstractmethod
    def supports_provider_type(self, provider_type: ProviderType) -> bool:
        """Check if this factory supports the given provider type"""
        pass


class LLMProviderFactory:
    """
    Main factory for creating LLM providers.

    Uses registry pattern to support multiple provider types.
    """

    def __init__(self):
        """Initialize factory with the built-in provider families"""
        self._factories: Dict[ProviderType, ProviderFactory] = {}
        self._register_default_factories()

    def register_factory(self, provider_type: ProviderType, factory: ProviderFactory):
        """
        Register a provider factory for a specific type

        Args:
            provider_type: Type of provider this factory creates
            factory: Factory instance to register
        """
        self._factories[provider_type] = factory

    def create_provider(self, config: Dict[str, Any],
                        metrics: Optional[MetricsAggregator] = None) -> 'BaseLLMProvider':
        """
        Create provider instance from configuration

        Args:
            config: Provider configuration dictionary containing:
                - provider_type: Type of provider (ProviderType enum value)
                - id, name, url, api_key, timeouts
            metrics: Aggregator shared by every provider

        Returns:
            Initialized provider instance

        Raises:
            LLMProviderError: If provider type not supported or creation fails
        """
        provider_type_value = config.get('provider_type', ProviderType.OPENAI.value)

        try:
            if isinstance(provider_type_value, str):
                provider_type = ProviderType(provider_type_value)
            else:
                provider_type = provider_type_value
        except ValueError:
            raise LLMProviderError(f"Unsupported provider type: {provider_type_value}")

        if provider_type not in self._factories:
            raise LLMProviderError(f"No factory registered for provider type: {provider_type}")

        factory = self._factories[provider_type]

        try:
            return factory.create_provider(config, metrics)
        except Exception as e:
            raise LLMProviderError(f"Failed to create provider: {e}") from e

    def get_supported_types(self) -> List[ProviderType]:
        """Get list of supported provider types"""
        return list(self._factories.keys())

    def _register_default_factories(self):
        """Register default provider factories"""
        # Imported here: the provider modules import ProviderFactory from this module
        from .openai_provider import OpenAIProviderFactory
        from .ollama_provider import OllamaProviderFactory

        self.register_factory(ProviderType.OPENAI, OpenAIProviderFactory())
        self.register_factory(ProviderType.OLLAMA, OllamaProviderFactory())
