"""
Tests for signaldesk.observability — lifecycle spans and Prometheus output.
"""

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from signaldesk import observability
from signaldesk.observability import (
    CONFIRMATIONS,
    get_metrics,
    setup_tracing,
    trace_operation,
)


@pytest.fixture
def exporter(monkeypatch):
    memory = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(memory))
    monkeypatch.setattr(observability, "_tracer", provider.get_tracer("test"))
    return memory


def test_trace_operation_success(exporter):
    with trace_operation("confirm", signal_id="sig-1"):
        pass

    (span,) = exporter.get_finished_spans()
    assert span.name == "trade.confirm"
    assert span.attributes["trade.operation"] == "confirm"
    assert span.attributes["signal_id"] == "sig-1"
    assert span.attributes["trade.status"] == "success"
    assert "trade.latency_ms" in span.attributes


def test_trace_operation_error(exporter):
    with pytest.raises(RuntimeError):
        with trace_operation("poll", usage_id="usage-1"):
            raise RuntimeError("boom")

    (span,) = exporter.get_finished_spans()
    assert span.attributes["trade.status"] == "error"
    assert span.attributes["trade.error"] == "boom"


def test_metrics_exposition():
    CONFIRMATIONS.labels(status="confirmed").inc()
    body = get_metrics().decode()
    assert "signaldesk_confirmations_total" in body
    assert 'status="confirmed"' in body


def test_setup_tracing_installs_tracer(monkeypatch):
    monkeypatch.setattr(observability.trace, "set_tracer_provider", lambda provider: None)
    monkeypatch.setattr(observability, "_tracer", None)

    tracer = setup_tracing(service_name="signaldesk-test")

    assert observability.get_tracer() is tracer
