"""OpenTelemetry wiring for the API process and the Celery workers.

Spans are always created through the OpenTelemetry API; without
``OTEL_ENABLED`` no SDK provider is installed and they cost nothing.
"""
import logging
import os

from opentelemetry import trace

logger = logging.getLogger(__name__)

tracer = trace.get_tracer("subsflow")

_configured = False


def otel_enabled() -> bool:
    return os.getenv("OTEL_ENABLED", "false").lower() in {"1", "true", "yes", "on"}


def _install_provider(role: str) -> bool:
    global _configured
    if _configured:
        return True
    try:
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        from app.db import get_engine
    except Exception:
        logger.exception("OpenTelemetry SDK not available, install the otel extra")
        return False

    resource = Resource.create(
        {
            "service.name": os.getenv("OTEL_SERVICE_NAME", "subsflow"),
            "service.namespace": "billing",
            "subsflow.process_role": role,
            "deployment.environment": os.getenv("ENVIRONMENT", "dev"),
        }
    )
    provider = TracerProvider(resource=resource)
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    exporter = OTLPSpanExporter(endpoint=endpoint) if endpoint else OTLPSpanExporter()
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    SQLAlchemyInstrumentor().instrument(engine=get_engine())
    _configured = True
    return True


def setup_otel(app) -> None:
    """Trace the webhook API: HTTP requests, SQL and our billing spans."""
    if not otel_enabled() or not _install_provider("api"):
        return
    from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

    FastAPIInstrumentor.instrument_app(app, excluded_urls="health,metrics")
    logger.info("OpenTelemetry enabled for the API")


def setup_worker_otel() -> None:
    """Trace a Celery worker process: task runs, SQL and job spans."""
    if not otel_enabled() or not _install_provider("worker"):
        return
    from opentelemetry.instrumentation.celery import CeleryInstrumentor

    CeleryInstrumentor().instrument()
    logger.info("OpenTelemetry enabled for the worker")
