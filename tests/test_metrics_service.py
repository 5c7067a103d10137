"""Tests for the metrics aggregator."""

import csv
import io
import json

import pytest

from oneshot.exceptions import ProviderUnavailableError
from oneshot.services.metrics_service import MetricsAggregator
from oneshot.services.models.llm_models import TokenUsage
from oneshot.services.models.metrics_models import (
    DiagnosticEvent,
    DiagnosticEventType,
    HealthLevel,
    MetricsExportFormat,
)


def test_mean_latency_is_unaffected_by_errors(metrics: MetricsAggregator) -> None:
    for latency in (1.0, 2.0, 3.0):
        metrics.record_request("p1", "m", latency, TokenUsage(input=10, output=20))
    metrics.record_error("p1", ProviderUnavailableError("down"))

    provider = metrics.get_provider_metrics("p1")
    assert provider.request_count == 4
    assert provider.error_count == 1
    assert provider.average_latency_seconds == pytest.approx(2.0)
    assert provider.error_rate == pytest.approx(0.25)
    assert provider.total_tokens_processed == 90


def test_throughput_mean(metrics: MetricsAggregator) -> None:
    metrics.record_request("p1", "m", 2.0, TokenUsage(input=0, output=100))
    metrics.record_request("p1", "m", 1.0, TokenUsage(input=0, output=10))

    assert metrics.get_provider_metrics("p1").average_tokens_per_second == pytest.approx(30.0)


def test_zero_latency_counts_no_throughput(metrics: MetricsAggregator) -> None:
    metrics.record_request("p1", "m", 0.0, TokenUsage(input=1, output=5))
    assert metrics.get_provider_metrics("p1").average_tokens_per_second == 0.0


def test_global_metrics_span_providers(metrics: MetricsAggregator) -> None:
    metrics.record_request("a", "m", 1.0, TokenUsage(input=1, output=1))
    metrics.record_request("b", "m", 3.0, TokenUsage(input=1, output=1))
    metrics.record_error("b", ValueError("boom"))

    app = metrics.get_app_metrics()
    assert app.total_requests == 3
    assert app.total_errors == 1
    assert app.average_latency_seconds == pytest.approx(2.0)
    assert app.total_tokens_processed == 4


def test_unknown_provider_has_empty_metrics(metrics: MetricsAggregator) -> None:
    provider = metrics.get_provider_metrics("nobody")
    assert provider.request_count == 0
    assert provider.error_rate == 0.0


def test_history_buffers_are_bounded() -> None:
    metrics = MetricsAggregator(max_request_history=3, max_error_history=2)
    for n in range(5):
        metrics.record_request("p", f"m{n}", 1.0, TokenUsage(input=1, output=1))
    for n in range(4):
        metrics.record_error("p", RuntimeError(f"e{n}"))

    assert [r.model_id for r in metrics.get_recent_requests()] == ["", "", ""]
    assert [e.error_message for e in metrics.get_recent_errors()] == ["e2", "e3"]
    # Eviction never changes the running counters
    assert metrics.get_provider_metrics("p").request_count == 9


def test_recent_requests_limit(metrics: MetricsAggregator) -> None:
    for n in range(4):
        metrics.record_request("p", f"m{n}", 1.0, TokenUsage(input=1, output=1))
    assert [r.model_id for r in metrics.get_recent_requests(limit=2)] == ["m2", "m3"]


def test_error_context_and_stack_trace(metrics: MetricsAggregator) -> None:
    try:
        raise ProviderUnavailableError("offline")
    except ProviderUnavailableError as e:
        metrics.record_error("p", e, model_id="m", context={'attempt': "1"})

    error = metrics.get_recent_errors()[0]
    assert error.error_type == "ProviderUnavailableError"
    assert error.context == {'provider_id': "p", 'model_id': "m", 'attempt': "1"}
    assert "offline" in error.stack_trace


def test_health_healthy_when_nothing_recorded(metrics: MetricsAggregator) -> None:
    assert metrics.get_health_status().level is HealthLevel.HEALTHY


def test_health_critical_with_unhealthy_provider(metrics: MetricsAggregator) -> None:
    metrics.record_health_check("a", True)
    metrics.record_health_check("b", False)

    status = metrics.get_health_status()
    assert status.level is HealthLevel.CRITICAL
    assert status.details['providers_healthy'] == "1/2"


def test_health_warning_on_error_rate(metrics: MetricsAggregator) -> None:
    metrics.record_request("a", "m", 1.0, TokenUsage(input=1, output=1))
    metrics.record_error("a", RuntimeError("x"))

    assert metrics.get_health_status().level is HealthLevel.WARNING


def test_health_warning_on_latency(metrics: MetricsAggregator) -> None:
    metrics.record_request("a", "m", 12.0, TokenUsage(input=1, output=1))
    assert metrics.get_health_status().level is HealthLevel.WARNING


def test_session_count_follows_events(metrics: MetricsAggregator) -> None:
    metrics.record_event(DiagnosticEvent(DiagnosticEventType.SESSION_CREATED))
    metrics.record_event(DiagnosticEvent(DiagnosticEventType.SESSION_CREATED))
    metrics.record_event(DiagnosticEvent.custom("opened_settings", source="menu"))
    metrics.record_message(3)

    app = metrics.get_app_metrics()
    assert app.session_count == 2
    assert app.message_count == 3
    assert metrics.get_recent_events()[-1].name == "opened_settings"


def test_clear_keeps_aggregates(metrics: MetricsAggregator) -> None:
    metrics.record_request("a", "m", 1.0, TokenUsage(input=1, output=1))
    metrics.record_error("a", RuntimeError("x"))

    metrics.clear_metrics()

    assert metrics.get_recent_requests() == []
    assert metrics.get_recent_errors() == []
    assert metrics.get_app_metrics().total_requests == 2


def test_reset_zeroes_everything_but_known_providers(metrics: MetricsAggregator) -> None:
    metrics.record_request("a", "m", 1.0, TokenUsage(input=1, output=1))
    metrics.record_event(DiagnosticEvent(DiagnosticEventType.SESSION_CREATED))

    metrics.reset_metrics()

    app = metrics.get_app_metrics()
    assert app.total_requests == 0
    assert app.session_count == 0
    assert "a" in metrics.get_all_provider_metrics()
    assert metrics.get_provider_metrics("a").request_count == 0


def test_export_json(metrics: MetricsAggregator) -> None:
    metrics.record_request("a", "m", 1.5, TokenUsage(input=3, output=6))

    document = json.loads(metrics.export_metrics(MetricsExportFormat.JSON))

    assert document['app_metrics']['total_requests'] == 1
    assert document['providers']['a']['total_tokens_processed'] == 9
    assert document['health']['level'] == "healthy"
    assert document['recent_requests'][0]['model_id'] == "m"


def test_export_csv(metrics: MetricsAggregator) -> None:
    metrics.record_request("a", "m", 2.0, TokenUsage(input=3, output=6))
    metrics.record_error("a", RuntimeError("bad, very bad"), model_id="m")

    rows = list(csv.reader(io.StringIO(metrics.export_metrics(MetricsExportFormat.CSV).decode())))

    assert rows[0] == MetricsAggregator.CSV_COLUMNS
    assert rows[1][1:9] == ["a", "m", "3", "6", "9", "2.000", "3.00", "true"]
    assert rows[2][8:] == ["false", "bad, very bad"]


def test_export_text(metrics: MetricsAggregator) -> None:
    metrics.record_request("a", "m", 1.0, TokenUsage(input=1, output=1))
    metrics.record_error("a", RuntimeError("kaput"))

    report = metrics.export_metrics(MetricsExportFormat.TXT).decode()

    assert report.startswith("OneShot Metrics Report")
    assert "Total requests: 2" in report
    assert "a: 2 requests, 1 errors" in report
    assert "RuntimeError: kaput" in report
