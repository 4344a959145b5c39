"""
Tracer initialization and configuration for OpenTelemetry.
"""

import logging
import os

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import SERVICE_NAME, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "sqlbulk"

_tracer: trace.Tracer | None = None
_is_initialized = False


def initialize_tracing(
    service_name: str = "sqlbulk",
    otlp_endpoint: str | None = None,
    console_export: bool = False,
    sampling_rate: float = 1.0
) -> trace.Tracer:
    """
    Initialize distributed tracing with OpenTelemetry.

    Args:
        service_name: Name of the service for identification
        otlp_endpoint: OTLP collector endpoint (defaults to SQLBULK_OTLP_ENDPOINT;
            tracing is exported over OTLP only when one is set)
        console_export: If True, also export traces to console (debug)
        sampling_rate: Sampling rate 0.0-1.0 (1.0 = trace everything)

    Returns:
        Configured tracer instance

    Example:
        >>> tracer = initialize_tracing(
        ...     service_name="orders-loader",
        ...     otlp_endpoint="localhost:4317"
        ... )
    """
    global _tracer, _is_initialized

    if _is_initialized:
        logger.warning("Tracing already initialized, returning existing tracer")
        return _tracer

    resource = Resource(attributes={
        SERVICE_NAME: service_name
    })
    provider = TracerProvider(
        resource=resource,
        sampler=TraceIdRatioBased(sampling_rate),
    )

    exporters = []

    if otlp_endpoint is None:
        otlp_endpoint = os.getenv("SQLBULK_OTLP_ENDPOINT")

    if otlp_endpoint:
        otlp_exporter = OTLPSpanExporter(
            endpoint=otlp_endpoint,
            insecure=True
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        exporters.append("OTLP")
        logger.info(f"OTLP exporter configured: {otlp_endpoint}")

    if console_export or os.getenv("SQLBULK_TRACE_CONSOLE", "").lower() == "true":
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))
        exporters.append("Console")
        logger.info("Console exporter configured")

    if not exporters:
        logger.warning("No trace exporters configured, spans will not be exported")

    trace.set_tracer_provider(provider)

    _tracer = trace.get_tracer(INSTRUMENTATION_NAME)
    _is_initialized = True

    logger.info(
        f"Tracing initialized: {service_name} "
        f"(exporters: {', '.join(exporters) or 'none'}, sampling: {sampling_rate})"
    )

    return _tracer


def get_tracer() -> trace.Tracer:
    """
    Get the tracer used for bulk operation spans.

    Before initialize_tracing() is called this is a tracer from whatever
    global provider the host application installed (a no-op by default).
    """
    if _tracer is not None:
        return _tracer
    return trace.get_tracer(INSTRUMENTATION_NAME)


def shutdown_tracing() -> None:
    """
    Shutdown tracing and flush pending spans.

    Should be called before application exit.
    """
    global _tracer, _is_initialized

    if _is_initialized:
        provider = trace.get_tracer_provider()
        try:
            if hasattr(provider, "shutdown"):
                provider.shutdown()
            logger.info("Tracing shutdown complete")
        finally:
            _tracer = None
            _is_initialized = False
