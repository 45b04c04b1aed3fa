from __future__ import annotations

import os

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.semconv.resource import ResourceAttributes

TRACER_NAME = "heist_api"

_provider: TracerProvider | None = None


def get_tracer() -> trace.Tracer:
    """Tracer for heist spans; a no-op until ``configure_tracing`` runs."""

    return trace.get_tracer(TRACER_NAME)


def _span_processor(console_fallback: bool) -> BatchSpanProcessor | None:
    # OTLPSpanExporter picks up OTEL_EXPORTER_OTLP_ENDPOINT and _HEADERS itself.
    if os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"):
        return BatchSpanProcessor(OTLPSpanExporter())
    if console_fallback:
        return BatchSpanProcessor(ConsoleSpanExporter())
    return None


def configure_tracing(
    app: FastAPI,
    *,
    service_name: str,
    service_version: str,
    environment: str,
    console_fallback: bool = False,
) -> None:
    """Install the process tracer provider once and instrument ``app`` with it."""

    global _provider

    if _provider is None:
        _provider = TracerProvider(
            resource=Resource.create(
                {
                    ResourceAttributes.SERVICE_NAME: service_name,
                    ResourceAttributes.SERVICE_VERSION: service_version,
                    ResourceAttributes.DEPLOYMENT_ENVIRONMENT: environment,
                }
            )
        )
        processor = _span_processor(console_fallback)
        if processor is not None:
            _provider.add_span_processor(processor)
        trace.set_tracer_provider(_provider)
        LoggingInstrumentor().instrument(set_logging_format=False)

    FastAPIInstrumentor.instrument_app(app, tracer_provider=_provider, excluded_urls="healthz,readyz")


__all__ = ["TRACER_NAME", "configure_tracing", "get_tracer"]
