"""Observability setup: OpenTelemetry tracing and Prometheus metrics.

Both are opt-in through settings:
- ENABLE_OTEL=true exports traces over OTLP (OTEL_EXPORTER_OTLP_ENDPOINT)
- ENABLE_METRICS=true exposes /metrics via prometheus-fastapi-instrumentator
"""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI

from .config import Settings

logger = logging.getLogger(__name__)


def setup_observability(app: FastAPI, *, settings: Settings, service_name: str) -> None:
    """Attach tracing and metrics when enabled.

    Args:
        app: FastAPI instance.
        settings: Service settings.
        service_name: ``service.name`` resource attribute.
    """

    if settings.enable_otel:
        try:
            _enable_tracing(app, service_name)
        except ImportError as exc:
            logger.warning("Tracing requested but OpenTelemetry is not installed: %s", exc)

    if settings.enable_metrics:
        try:
            _enable_metrics(app)
        except ImportError as exc:
            logger.warning("Metrics requested but prometheus-fastapi-instrumentator is not installed: %s", exc)


def _enable_tracing(app: FastAPI, service_name: str) -> None:
    from opentelemetry import trace
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT") or "http://localhost:4318"
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=f"{endpoint}/v1/traces")))
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor.instrument_app(app)


def _enable_metrics(app: FastAPI) -> None:
    from prometheus_fastapi_instrumentator import Instrumentator

    Instrumentator().instrument(app).expose(app)
