#!/usr/bin/env python3

from .provider_types import ProviderType
from .context_models import (
    ContextType, ContextKind, ContextItem, ContextMetadata, GitFileStatus,
    ContextOptimizationStrategy, ContextOptimizationConfig
)
from .llm_models import (
    MessageRole, ModelCapability, FinishReason, RequestState,
    LLMModel, LLMParameters, LLMConfiguration, TokenUsage,
    MessageChunk, ChatMessage
)
from .metrics_models import (
    ProviderMetrics, AppMetrics, RequestMetric, ErrorMetric,
    HealthLevel, HealthStatus, DiagnosticEvent, DiagnosticEventType,
    MetricsExportFormat
)
from .session_models import (
    Message, MessageMetadata, Session, SessionMetadata, SessionSummary,
    SessionFilters, ExportFormat
)

__all__ = [
    'ProviderType',
    # Context models
    'ContextType', 'ContextKind', 'ContextItem', 'ContextMetadata', 'GitFileStatus',
    'ContextOptimizationStrategy', 'ContextOptimizationConfig',
    # LLM models
    'MessageRole', 'ModelCapability', 'FinishReason', 'RequestState',
    'LLMModel', 'LLMParameters', 'LLMConfiguration', 'TokenUsage',
    'MessageChunk', 'ChatMessage',
    # Metrics models
    'ProviderMetrics', 'AppMetrics', 'RequestMetric', 'ErrorMetric',
    'HealthLevel', 'HealthStatus', 'DiagnosticEvent', 'DiagnosticEventType',
    'MetricsExportFormat',
    # Session models
    'Message', 'MessageMetadata', 'Session', 'SessionMetadata', 'SessionSummary',
    'SessionFilters', 'ExportFormat'
]
