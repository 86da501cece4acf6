"""Distributed tracing configuration for platform services.

Wraps OpenTelemetry setup for an OTLP/HTTP collector with optional
auto-instrumentation for FastAPI, Redis, HTTPX and asyncpg. Also provides a
scoped context manager used around job processing in the workers.
"""

import os
from typing import Any, Optional

import structlog
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.asyncpg import AsyncPGInstrumentor
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

logger = structlog.get_logger("tracing")


def configure_tracing(
    service_name: str,
    otlp_endpoint: str = "http://localhost:4318/v1/traces",
    enable_instrumentation: bool = True
) -> Optional[trace.Tracer]:
    """Configure distributed tracing for a service.

    Parameters
    - service_name: Logical service identifier used in trace resources
    - otlp_endpoint: Collector endpoint for exporting spans
    - enable_instrumentation: Toggle built-in instrumentation hooks

    Returns
    - A tracer instance for ad-hoc span creation, or ``None`` on failure
    """
    try:
        tracer_provider = TracerProvider(
            resource=Resource.create({
                "service.name": service_name,
                "service.version": "0.1.0",
                "deployment.environment": os.getenv("ML_ENV", "local")
            })
        )
        tracer_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint))
        )
        trace.set_tracer_provider(tracer_provider)
        tracer = trace.get_tracer(service_name)

        if enable_instrumentation:
            try:
                FastAPIInstrumentor().instrument()
                RedisInstrumentor().instrument()
                HTTPXClientInstrumentor().instrument()
                AsyncPGInstrumentor().instrument()
                logger.info("Automatic instrumentation enabled")
            except Exception as e:
                # Partial failure is acceptable; log but continue.
                logger.warning("Failed to enable some instrumentation", error=str(e))

        logger.info(
            "Distributed tracing configured",
            service_name=service_name,
            otlp_endpoint=otlp_endpoint
        )
        return tracer

    except Exception as e:
        logger.error("Failed to configure tracing", error=str(e))
        return None


class TracingContext:
    """Context manager for tracing operations.

    Starts a span on entry and ensures it ends, recording success or error.
    A ``None`` tracer makes the context a no-op so callers need no branches.
    """

    def __init__(self, tracer: Optional[trace.Tracer], operation_name: str, **attributes: Any):
        self.tracer = tracer
        self.operation_name = operation_name
        self.attributes = attributes
        self.span: Optional[trace.Span] = None

    def __enter__(self) -> Optional[trace.Span]:
        if self.tracer is None:
            return None
        self.span = self.tracer.start_span(self.operation_name)
        for key, value in self.attributes.items():
            self.span.set_attribute(key, str(value))
        return self.span

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.span is None:
            return
        if exc_type is not None:
            self.span.set_status(Status(StatusCode.ERROR, f"{exc_type.__name__}: {exc_val}"))
        else:
            self.span.set_status(Status(StatusCode.OK))
        self.span.end()


def configure_tracing_from_config(service_name: str, config) -> Optional[trace.Tracer]:
    """Configure tracing when ``ml_tracing_enabled`` is set."""
    if not config.ml_tracing_enabled:
        logger.info("OpenTelemetry tracing disabled via configuration")
        return None
    tracer = configure_tracing(service_name, config.ml_otel_exporter)
    if tracer:
        logger.info("OpenTelemetry tracing enabled", exporter=config.ml_otel_exporter)
    else:
        logger.warning("Tracing initialization failed")
    return tracer
