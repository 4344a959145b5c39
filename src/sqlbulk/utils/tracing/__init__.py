"""
Distributed tracing using OpenTelemetry.

Each bulk commit is an INTERNAL span; each statement or transfer it issues
is a CLIENT span beneath it.
"""

from .context import add_span_attributes, add_span_event, trace_function, trace_operation
from .database import trace_database_query
from .tracer import get_tracer, initialize_tracing, shutdown_tracing

__all__ = [
    "initialize_tracing",
    "get_tracer",
    "shutdown_tracing",
    "trace_operation",
    "trace_function",
    "add_span_attributes",
    "add_span_event",
    "trace_database_query",
]
