#!/usr/bin/env python3

"""
Services Module - Core business logic services

This module provides the main services for OneShot:
- ContextResolver / ContextOptimizer / ContextStore: context references and token budgets
- ProviderRegistry: LLM provider adapters and the current selection
- MetricsAggregator: running performance statistics and diagnostics
- SQLiteSessionStore / SessionExporter: conversation persistence and export
- SettingsService: Persistent configuration management
- ServiceRegistry: Composition root
"""

from .token_estimator import estimate_tokens, estimate_total
from .context_resolver import ClipboardReader, StaticClipboard, ContextResolver
from .context_optimizer import ContentSummarizer, ExtractiveSummarizer, ContextOptimizer
from .context_store import ContextStore
from .metrics_service import MetricsAggregator, derive_health_status
from .provider_registry import ProviderRegistry
from .session_service import SessionStore, SQLiteSessionStore
from .export_service import SessionExporter
from .settings_service import SettingsService, get_data_directory
from .service_registry import ServiceRegistry

# Re-export provider interfaces for extensibility
from .llm_providers import (
    BaseLLMProvider, LLMProviderFactory, ProviderFactory,
    OpenAIProvider, OllamaProvider
)
from .streaming import ChatStream, MessageAccumulator, MessageSnapshot

__all__ = [
    'estimate_tokens',
    'estimate_total',
    'ClipboardReader',
    'StaticClipboard',
    'ContextResolver',
    'ContentSummarizer',
    'ExtractiveSummarizer',
    'ContextOptimizer',
    'ContextStore',
    'MetricsAggregator',
    'derive_health_status',
    'ProviderRegistry',
    'SessionStore',
    'SQLiteSessionStore',
    'SessionExporter',
    'SettingsService',
    'get_data_directory',
    'ServiceRegistry',

    # Provider interfaces
    'BaseLLMProvider',
    'LLMProviderFactory',
    'ProviderFactory',
    'OpenAIProvider',
    'OllamaProvider',

    # Streaming
    'ChatStream',
    'MessageAccumulator',
    'MessageSnapshot',
]
