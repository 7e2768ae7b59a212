"""Optional OpenTelemetry tracing, installed with the ``otel`` extra."""

import logging
import os

logger = logging.getLogger(__name__)

# probes would otherwise dominate the trace volume
EXCLUDED_URLS = "health,health/ready,metrics"


def otel_enabled() -> bool:
    return os.getenv("OTEL_ENABLED", "false").lower() in {"1", "true", "yes", "on"}


def setup_otel(app) -> None:
    if not otel_enabled():
        return
    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        from tierpay.db import get_engine
    except ImportError:
        logger.exception("OTEL_ENABLED is set but the otel extra is not installed")
        return

    resource = Resource.create(
        {
            "service.name": os.getenv("OTEL_SERVICE_NAME", "tierpay"),
            "deployment.environment": os.getenv("ENVIRONMENT", "dev"),
        }
    )
    provider = TracerProvider(resource=resource)
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    exporter = OTLPSpanExporter(endpoint=endpoint) if endpoint else OTLPSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)

    FastAPIInstrumentor.instrument_app(app, excluded_urls=EXCLUDED_URLS)
    # same engine as SessionLocal, so checkout and webhook queries are traced
    SQLAlchemyInstrumentor().instrument(engine=get_engine())
    logger.info("OpenTelemetry tracing enabled")
