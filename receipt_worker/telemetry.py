"""OpenTelemetry setup for the receipt worker."""

from __future__ import annotations

import logging
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.propagate import set_global_textmap
from opentelemetry.propagators.composite import CompositePropagator
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator

from receipt_worker.config import config

logger = logging.getLogger(__name__)

SERVICE_NAME = "receipt-worker"

_tracer: trace.Tracer | None = None


def init_telemetry() -> trace.Tracer:
    """Install the tracer provider once and return the worker tracer."""
    global _tracer
    if _tracer is not None:
        return _tracer

    resource = Resource.create({"service.name": SERVICE_NAME})
    provider = TracerProvider(resource=resource)

    if config.otel_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter,
            )

            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otel_endpoint)))
            logger.info("OTLP exporter configured: %s", config.otel_endpoint)
        except ImportError:
            logger.warning("OTLP exporter unavailable, falling back to console")
            provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
    elif config.log_level.upper() == "DEBUG":
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    set_global_textmap(CompositePropagator([TraceContextTextMapPropagator()]))

    _tracer = trace.get_tracer(SERVICE_NAME)
    return _tracer


def get_tracer() -> trace.Tracer:
    """Return the configured tracer (initializes on first call)."""
    if _tracer is None:
        return init_telemetry()
    return _tracer
