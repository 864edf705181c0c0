"""
Client-level observability — OpenTelemetry tracing + Prometheus counters.

Provides:
- Tracing with one span per lifecycle operation (confirm, poll, reconcile)
- Counters for confirmations, poll attempts and settlements
- Prometheus scraping utilities

Tracing defaults to a console exporter; pass ``otlp_endpoint`` to ship
spans to a collector instead.
"""

import time
import structlog
from contextlib import contextmanager
from typing import Generator

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.resources import Resource

from prometheus_client import Counter, Histogram, generate_latest

logger = structlog.get_logger(__name__)

# ── OpenTelemetry Setup ──────────────────────────────────────────────

_tracer: trace.Tracer | None = None


def setup_tracing(
    service_name: str | None = None,
    otlp_endpoint: str | None = None,
) -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing.

    Args:
        service_name: Name of the service (appears in traces).
                      Defaults to APP_NAME.
        otlp_endpoint: OTLP collector endpoint. The OTLP exporter package
                       is optional; without it spans go to the console.
    """
    global _tracer

    from signaldesk.version import APP_NAME, VERSION

    if service_name is None:
        service_name = APP_NAME.lower()

    resource = Resource.create(
        {"service.name": service_name, "service.version": VERSION}
    )
    provider = TracerProvider(resource=resource)

    if otlp_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter,
            )

            exporter = OTLPSpanExporter(endpoint=otlp_endpoint)
            provider.add_span_processor(BatchSpanProcessor(exporter))
            logger.info("otel_otlp_configured", endpoint=otlp_endpoint)
        except ImportError:
            logger.warning("otel_otlp_unavailable_fallback_console")
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    else:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(__name__)
    logger.info("otel_tracing_initialized", service=service_name)
    return _tracer


def get_tracer() -> trace.Tracer:
    """Return the configured tracer, or the global (no-op until configured) one."""
    if _tracer is not None:
        return _tracer
    return trace.get_tracer(__name__)


@contextmanager
def trace_operation(operation: str, **attributes) -> Generator:
    """
    Context manager to trace one lifecycle operation.

    Usage:
        with trace_operation("confirm", signal_id=signal.id):
            receipt = await client.confirm_signal(signal.id)
    """
    tracer = get_tracer()
    with tracer.start_as_current_span(
        f"trade.{operation}",
        attributes={
            "trade.operation": operation,
            **{k: str(v) for k, v in attributes.items()},
        },
    ) as span:
        start = time.monotonic()
        try:
            yield span
            span.set_attribute("trade.status", "success")
        except Exception as e:
            span.set_attribute("trade.status", "error")
            span.set_attribute("trade.error", str(e))
            span.record_exception(e)
            raise
        finally:
            latency = (time.monotonic() - start) * 1000
            span.set_attribute("trade.latency_ms", round(latency))


# ── Trade Metrics ────────────────────────────────────────────────────

CONFIRMATIONS = Counter(
    "confirmations_total",
    "Commitment confirmations by result",
    ["status"],
    namespace="signaldesk",
)

POLL_ATTEMPTS = Counter(
    "poll_attempts_total",
    "Settlement poll attempts by result",
    ["result"],
    namespace="signaldesk",
)

SETTLEMENTS = Counter(
    "settlements_total",
    "Commitments reconciled by outcome",
    ["outcome"],
    namespace="signaldesk",
)

API_LATENCY = Histogram(
    "api_latency_seconds",
    "Remote API request latency",
    ["method"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5],
    namespace="signaldesk",
)


# ── Prometheus Scraping ──────────────────────────────────────────────


def get_metrics() -> bytes:
    """Generate Prometheus metrics for scraping."""
    return generate_latest()
