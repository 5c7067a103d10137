#!/usr/bin/env python3

"""
Metrics Service - running per-provider and global request statistics

Latency and throughput are kept as incremental means, so updates and reads
are O(1) and no sample history is needed to answer a query. Separate
fixed-size ring buffers keep the most recent requests, errors and
diagnostic events for display and export; evicting from them never touches
the running means.

Provider adapters report from their own tasks, possibly concurrently, so
each provider record and the global record are guarded by a mutex.
"""

import csv
import io
import json
import threading
import time
import traceback
from collections import deque
from datetime import datetime, timezone
from typing import Dict, List, Optional

import structlog

from .models.llm_models import TokenUsage
from .models.metrics_models import (
    AppMetrics, DiagnosticEvent, DiagnosticEventType, ErrorMetric, HealthLevel,
    HealthStatus, MetricsExportFormat, ProviderMetrics, RequestMetric
)

log = structlog.get_logger(__name__)


class _RunningStats:
    """Mutable counters behind one ProviderMetrics / AppMetrics snapshot"""

    def __init__(self):
        self.lock = threading.Lock()
        self.request_count = 0
        self.error_count = 0
        self.success_count = 0
        self.average_latency = 0.0
        self.average_tokens_per_second = 0.0
        self.total_tokens = 0
        self.last_health_check_at: Optional[datetime] = None
        self.is_healthy = True

    def add_success(self, latency: float, tokens_per_second: float, tokens: int):
        self.request_count += 1
        self.success_count += 1
        # Same as (old * n + x) / (n + 1) without growing the product
        self.average_latency += (latency - self.average_latency) / self.success_count
        self.average_tokens_per_second += (
            (tokens_per_second - self.average_tokens_per_second) / self.success_count
        )
        self.total_tokens += tokens

    def add_error(self):
        self.request_count += 1
        self.error_count += 1

    def snapshot(self, provider_id: str) -> ProviderMetrics:
        return ProviderMetrics(
            provider_id=provider_id,
            request_count=self.request_count,
            error_count=self.error_count,
            average_latency_seconds=self.average_latency,
            average_tokens_per_second=self.average_tokens_per_second,
            total_tokens_processed=self.total_tokens,
            last_health_check_at=self.last_health_check_at,
            is_healthy=self.is_healthy,
        )


def derive_health_status(provider_metrics: Dict[str, ProviderMetrics],
                         app_metrics: AppMetrics,
                         error_rate_threshold: float = 0.10,
                         latency_threshold: float = 10.0) -> HealthStatus:
    """
    Overall health from a metrics snapshot.

    Critical when any known provider is unhealthy, warning when the global
    error rate or mean latency is above its threshold, healthy otherwise.
    """
    healthy = sum(1 for metrics in provider_metrics.values() if metrics.is_healthy)
    total = len(provider_metrics)

    if healthy < total:
        level = HealthLevel.CRITICAL
    elif (app_metrics.error_rate > error_rate_threshold
          or app_metrics.average_latency_seconds > latency_threshold):
        level = HealthLevel.WARNING
    else:
        level = HealthLevel.HEALTHY

    return HealthStatus(level=level, details={
        'providers_healthy': f"{healthy}/{total}",
        'error_rate': f"{app_metrics.error_rate * 100:.2f}%",
        'avg_latency': f"{app_metrics.average_latency_seconds:.2f}s",
    })


class MetricsAggregator:
    """
    Collects request outcomes, health checks and diagnostic events.

    Successful requests feed the latency and throughput means; errors only
    increment counters. Cancelled requests are never reported here.
    """

    DEFAULT_MAX_REQUEST_HISTORY = 1000
    DEFAULT_MAX_ERROR_HISTORY = 500
    DEFAULT_MAX_EVENT_HISTORY = 500

    CSV_COLUMNS = [
        'timestamp', 'provider_id', 'model_id', 'input_tokens', 'output_tokens',
        'total_tokens', 'latency_seconds', 'tokens_per_second', 'success', 'error_message'
    ]

    def __init__(self, max_request_history: int = DEFAULT_MAX_REQUEST_HISTORY,
                 max_error_history: int = DEFAULT_MAX_ERROR_HISTORY,
                 max_event_history: int = DEFAULT_MAX_EVENT_HISTORY):
        self._lock = threading.Lock()
        self._providers_lock = threading.Lock()
        self._providers: Dict[str, _RunningStats] = {}
        self._global = _RunningStats()
        self._requests: deque = deque(maxlen=max_request_history)
        self._errors: deque = deque(maxlen=max_error_history)
        self._events: deque = deque(maxlen=max_event_history)
        self._session_count = 0
        self._message_count = 0
        self._started_at = time.monotonic()

    # Recording

    def register_provider(self, provider_id: str) -> None:
        """Make a provider known so it takes part in health status"""
        self._stats_for(provider_id)

    def forget_provider(self, provider_id: str) -> None:
        with self._providers_lock:
            self._providers.pop(provider_id, None)

    def record_request(self, provider_id: str, model_id: str, latency: float,
                       usage: TokenUsage) -> None:
        """Record a successfully completed request"""
        latency = max(0.0, latency)
        tokens_per_second = usage.output / latency if latency > 0 else 0.0

        stats = self._stats_for(provider_id)
        with stats.lock:
            stats.add_success(latency, tokens_per_second, usage.total)

        with self._global.lock:
            self._global.add_success(latency, tokens_per_second, usage.total)

        with self._lock:
            self._requests.append(RequestMetric(
                provider_id=provider_id,
                model_id=model_id,
                input_tokens=usage.input,
                output_tokens=usage.output,
                latency=latency,
                success=True,
            ))

        log.debug("metrics.request_recorded", provider_id=provider_id, model_id=model_id,
                  latency=round(latency, 3), tokens=usage.total)

    def record_error(self, provider_id: str, error: BaseException,
                     model_id: Optional[str] = None, latency: Optional[float] = None,
                     context: Optional[Dict[str, str]] = None) -> None:
        """Record a failed request"""
        stats = self._stats_for(provider_id)
        with stats.lock:
            stats.add_error()

        with self._global.lock:
            self._global.add_error()

        error_context = {'provider_id': provider_id}
        if model_id:
            error_context['model_id'] = model_id
        if context:
            error_context.update(context)

        stack_trace = None
        if error.__traceback__ is not None:
            stack_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        with self._lock:
            self._requests.append(RequestMetric(
                provider_id=provider_id,
                model_id=model_id or "",
                input_tokens=0,
                output_tokens=0,
                latency=max(0.0, latency or 0.0),
                success=False,
                error_message=str(error),
            ))
            self._errors.append(ErrorMetric(
                error_type=type(error).__name__,
                error_message=str(error),
                context=error_context,
                stack_trace=stack_trace,
            ))

        log.debug("metrics.error_recorded", provider_id=provider_id,
                  error_type=type(error).__name__)

    def record_health_check(self, provider_id: str, is_healthy: bool,
                            checked_at: Optional[datetime] = None) -> None:
        stats = self._stats_for(provider_id)
        with stats.lock:
            stats.is_healthy = is_healthy
            stats.last_health_check_at = checked_at or datetime.now(timezone.utc)

    def record_event(self, event: DiagnosticEvent) -> None:
        with self._lock:
            self._events.append(event)
            if event.type is DiagnosticEventType.SESSION_CREATED:
                self._session_count += 1

        log.info("diagnostics.event", name=event.name, properties=dict(event.properties))

    def record_message(self, count: int = 1) -> None:
        with self._lock:
            self._message_count += count

    # Snapshots

    def get_provider_metrics(self, provider_id: str) -> ProviderMetrics:
        with self._providers_lock:
            stats = self._providers.get(provider_id)
        if stats is None:
            return ProviderMetrics(provider_id=provider_id)
        with stats.lock:
            return stats.snapshot(provider_id)

    def get_all_provider_metrics(self) -> Dict[str, ProviderMetrics]:
        with self._providers_lock:
            records = list(self._providers.items())

        snapshots = {}
        for provider_id, stats in records:
            with stats.lock:
                snapshots[provider_id] = stats.snapshot(provider_id)
        return snapshots

    def get_app_metrics(self) -> AppMetrics:
        with self._global.lock:
            totals = self._global.snapshot("*")
        with self._lock:
            session_count = self._session_count
            message_count = self._message_count

        return AppMetrics(
            total_requests=totals.request_count,
            total_errors=totals.error_count,
            average_latency_seconds=totals.average_latency_seconds,
            average_tokens_per_second=totals.average_tokens_per_second,
            total_tokens_processed=totals.total_tokens_processed,
            uptime_seconds=time.monotonic() - self._started_at,
            session_count=session_count,
            message_count=message_count,
        )

    def get_recent_requests(self, limit: Optional[int] = None) -> List[RequestMetric]:
        """Most recent request records, oldest first"""
        with self._lock:
            records = list(self._requests)
        return records[-limit:] if limit else records

    def get_recent_errors(self, limit: Optional[int] = None) -> List[ErrorMetric]:
        with self._lock:
            records = list(self._errors)
        return records[-limit:] if limit else records

    def get_recent_events(self, limit: Optional[int] = None) -> List[DiagnosticEvent]:
        with self._lock:
            records = list(self._events)
        return records[-limit:] if limit else records

    def get_health_status(self) -> HealthStatus:
        return derive_health_status(self.get_all_provider_metrics(), self.get_app_metrics())

    # Maintenance

    def clear_metrics(self) -> None:
        """Drop the request, error and event histories, keeping the running aggregates"""
        with self._lock:
            self._requests.clear()
            self._errors.clear()
            self._events.clear()

    def reset_metrics(self) -> None:
        """Reset everything, keeping the set of known providers"""
        with self._providers_lock:
            for provider_id in list(self._providers):
                self._providers[provider_id] = _RunningStats()
        self._global = _RunningStats()
        with self._lock:
            self._requests.clear()
            self._errors.clear()
            self._events.clear()
            self._session_count = 0
            self._message_count = 0
        self._started_at = time.monotonic()

    # Export

    def export_metrics(self, export_format: MetricsExportFormat) -> bytes:
        if export_format is MetricsExportFormat.JSON:
            return self._export_json()
        if export_format is MetricsExportFormat.CSV:
            return self._export_csv()
        return self._export_text()

    def _export_json(self) -> bytes:
        document = {
            'exported_at': datetime.now(timezone.utc).isoformat(),
            'app_metrics': self.get_app_metrics().to_dict(),
            'health': self.get_health_status().to_dict(),
            'providers': {pid: m.to_dict() for pid, m in self.get_all_provider_metrics().items()},
            'recent_requests': [r.to_dict() for r in self.get_recent_requests()],
            'recent_errors': [e.to_dict() for e in self.get_recent_errors()],
            'recent_events': [e.to_dict() for e in self.get_recent_events()],
        }
        return json.dumps(document, indent=2).encode('utf-8')

    def _export_csv(self) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerow(self.CSV_COLUMNS)
        for record in self.get_recent_requests():
            writer.writerow([
                record.timestamp.isoformat(),
                record.provider_id,
                record.model_id,
                record.input_tokens,
                record.output_tokens,
                record.total_tokens,
                f"{record.latency:.3f}",
                f"{record.tokens_per_second:.2f}",
                'true' if record.success else 'false',
                record.error_message or '',
            ])
        return buffer.getvalue().encode('utf-8')

    def _export_text(self) -> bytes:
        app = self.get_app_metrics()
        health = self.get_health_status()
        lines = [
            "OneShot Metrics Report",
            f"Generated: {datetime.now(timezone.utc).isoformat()}",
            "",
            f"Health: {health.level.value} - {health.message}",
            f"Total requests: {app.total_requests}",
            f"Total errors: {app.total_errors}",
            f"Error rate: {app.error_rate * 100:.2f}%",
            f"Average latency: {app.average_latency_seconds:.2f}s",
            f"Average throughput: {app.average_tokens_per_second:.2f} tokens/s",
            f"Tokens processed: {app.total_tokens_processed}",
            f"Uptime: {app.uptime_seconds:.0f}s",
            "",
            "Providers:",
        ]
        providers = self.get_all_provider_metrics()
        if not providers:
            lines.append("  (none)")
        for provider_id, metrics in sorted(providers.items()):
            state = "healthy" if metrics.is_healthy else "unhealthy"
            lines.append(
                f"  {provider_id}: {metrics.request_count} requests, "
                f"{metrics.error_count} errors, "
                f"{metrics.average_latency_seconds:.2f}s avg latency, "
                f"{metrics.average_tokens_per_second:.2f} tokens/s, {state}"
            )

        errors = self.get_recent_errors(limit=10)
        if errors:
            lines.extend(["", "Recent errors:"])
            for error in errors:
                lines.append(f"  [{error.timestamp.isoformat()}] {error.error_type}: {error.error_message}")

        return ("\n".join(lines) + "\n").encode('utf-8')

    def _stats_for(self, provider_id: str) -> _RunningStats:
        with self._providers_lock:
            stats = self._providers.get(provider_id)
            if stats is None:
                stats = _RunningStats()
                self._providers[provider_id] = stats
            return stats
