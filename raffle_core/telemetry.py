import os
import logging
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION, DEPLOYMENT_ENVIRONMENT
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)


def setup_telemetry(service_name: str, service_version: str = "1.0.0", engine=None):
    """
    Export traces over OTLP and instrument httpx, Redis, logging and,
    when an async engine is passed, the ledger's SQL.

    OTEL_ENABLED=false turns tracing off entirely. The collector address comes
    from OTEL_EXPORTER_OTLP_ENDPOINT and the resource picks up
    OTEL_SERVICE_NAME and DEPLOYMENT_ENV when set.
    """
    if os.getenv("OTEL_ENABLED", "true").lower() == "false":
        logger.info("OpenTelemetry disabled via OTEL_ENABLED=false")
        return None

    resource = Resource.create({
        SERVICE_NAME: os.getenv("OTEL_SERVICE_NAME", service_name),
        SERVICE_VERSION: service_version,
        DEPLOYMENT_ENVIRONMENT: os.getenv("DEPLOYMENT_ENV", "production"),
        "service.namespace": "raffle-system",
    })
    endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT", "http://otel-collector:4317")

    try:
        provider = TracerProvider(resource=resource)
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True)))
        trace.set_tracer_provider(provider)

        HTTPXClientInstrumentor().instrument()
        RedisInstrumentor().instrument()
        LoggingInstrumentor().instrument(set_logging_format=False)
        if engine is not None:
            SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)
    except Exception as e:
        logger.warning(f"Failed to initialize OpenTelemetry: {e}")
        return None

    logger.info(f"OpenTelemetry initialized for {service_name}, exporting to {endpoint}")
    return provider


def instrument_fastapi(app):
    try:
        FastAPIInstrumentor.instrument_app(app)
    except Exception as e:
        logger.warning(f"Failed to instrument FastAPI: {e}")


def get_tracer(name: str):
    return trace.get_tracer(name)


def mark_span_failed(span, exc: BaseException, outcome: str):
    """Tag a manual span with the domain outcome of a failed operation."""
    span.set_attribute("raffle.outcome", outcome)
    span.record_exception(exc)
    span.set_status(Status(StatusCode.ERROR, outcome))
