#!/usr/bin/env python3

"""
Metrics Models - Snapshots produced by the metrics aggregator
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class ProviderMetrics:
    """Read-only snapshot of one provider's cumulative counters"""
    provider_id: str
    request_count: int = 0
    error_count: int = 0
    average_latency_seconds: float = 0.0
    average_tokens_per_second: float = 0.0
    total_tokens_processed: int = 0
    last_health_check_at: Optional[datetime] = None
    is_healthy: bool = True

    @property
    def error_rate(self) -> float:
        if self.request_count == 0:
            return 0.0
        return self.error_count / self.request_count

    @property
    def average_tokens_per_request(self) -> float:
        if self.request_count == 0:
            return 0.0
        return self.total_tokens_processed / self.request_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            'provider_id': self.provider_id,
            'request_count': self.request_count,
            'error_count': self.error_count,
            'error_rate': self.error_rate,
            'average_latency_seconds': self.average_latency_seconds,
            'average_tokens_per_second': self.average_tokens_per_second,
            'total_tokens_processed': self.total_tokens_processed,
            'average_tokens_per_request': self.average_tokens_per_request,
            'last_health_check_at': (self.last_health_check_at.isoformat()
                                     if self.last_health_check_at else None),
            'is_healthy': self.is_healthy,
        }


@dataclass(frozen=True)
class AppMetrics:
    """Global aggregates across every provider"""
    total_requests: int = 0
    total_errors: int = 0
    average_latency_seconds: float = 0.0
    average_tokens_per_second: float = 0.0
    total_tokens_processed: int = 0
    uptime_seconds: float = 0.0
    session_count: int = 0
    message_count: int = 0

    @property
    def error_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_errors / self.total_requests

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_requests': self.total_requests,
            'total_errors': self.total_errors,
            'error_rate': self.error_rate,
            'average_latency_seconds': self.average_latency_seconds,
            'average_tokens_per_second': self.average_tokens_per_second,
            'total_tokens_processed': self.total_tokens_processed,
            'uptime_seconds': self.uptime_seconds,
            'session_count': self.session_count,
            'message_count': self.message_count,
        }


@dataclass(frozen=True)
class RequestMetric:
    """One finished request, kept in the bounded request history"""
    provider_id: str
    model_id: str
    input_tokens: int
    output_tokens: int
    latency: float
    success: bool
    error_message: Optional[str] = None
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def tokens_per_second(self) -> float:
        if self.latency <= 0:
            return 0.0
        return self.output_tokens / self.latency

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'provider_id': self.provider_id,
            'model_id': self.model_id,
            'input_tokens': self.input_tokens,
            'output_tokens': self.output_tokens,
            'total_tokens': self.total_tokens,
            'latency': self.latency,
            'tokens_per_second': self.tokens_per_second,
            'success': self.success,
            'error_message': self.error_message,
        }


@dataclass(frozen=True)
class ErrorMetric:
    """One recorded failure, kept in the bounded error history"""
    error_type: str
    error_message: str
    context: Dict[str, str] = field(default_factory=dict)
    stack_trace: Optional[str] = None
    id: str = field(default_factory=_new_id)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'timestamp': self.timestamp.isoformat(),
            'error_type': self.error_type,
            'error_message': self.error_message,
            'context': dict(self.context),
            'stack_trace': self.stack_trace,
        }


class HealthLevel(Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"

    @property
    def message(self) -> str:
        return {
            HealthLevel.HEALTHY: "All systems operational",
            HealthLevel.WARNING: "Some issues detected",
            HealthLevel.CRITICAL: "Critical issues require attention",
        }[self]


@dataclass(frozen=True)
class HealthStatus:
    level: HealthLevel
    details: Dict[str, str] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return self.level.message

    def to_dict(self) -> Dict[str, Any]:
        return {'level': self.level.value, 'message': self.message, 'details': dict(self.details)}


class DiagnosticEventType(Enum):
    APP_LAUNCHED = "app_launched"
    APP_TERMINATED = "app_terminated"
    SESSION_CREATED = "session_created"
    SESSION_DELETED = "session_deleted"
    PROVIDER_ADDED = "provider_added"
    PROVIDER_REMOVED = "provider_removed"
    CONTEXT_ADDED = "context_added"
    CONTEXT_REMOVED = "context_removed"
    EXPORT_COMPLETED = "export_completed"
    IMPORT_COMPLETED = "import_completed"
    CUSTOM = "custom"


@dataclass(frozen=True)
class DiagnosticEvent:
    """An application event surfaced to the telemetry/log sink"""
    type: DiagnosticEventType
    properties: Dict[str, str] = field(default_factory=dict)
    custom_name: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def name(self) -> str:
        if self.type is DiagnosticEventType.CUSTOM and self.custom_name:
            return self.custom_name
        return self.type.value

    @classmethod
    def custom(cls, name: str, **properties: str) -> 'DiagnosticEvent':
        return cls(DiagnosticEventType.CUSTOM, properties=dict(properties), custom_name=name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'timestamp': self.timestamp.isoformat(),
            'properties': dict(self.properties),
        }


class MetricsExportFormat(Enum):
    JSON = "json"
    CSV = "csv"
    TXT = "txt"

    @property
    def display_name(self) -> str:
        return {
            MetricsExportFormat.JSON: "JSON",
            MetricsExportFormat.CSV: "CSV",
            MetricsExportFormat.TXT: "Plain Text",
        }[self]
