"""
Context managers and decorators for span management.
"""

import functools
from collections.abc import Callable, Mapping
from contextlib import contextmanager
from typing import Any

from opentelemetry import trace

from .tracer import get_tracer


@contextmanager
def trace_operation(
    operation_name: str,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
    **attributes
):
    """
    Context manager for tracing operations.

    Creates a span, records the given attributes, and marks the span as
    failed (recording the exception) when the block raises.

    Args:
        operation_name: Name of the operation being traced
        kind: Span kind (INTERNAL, CLIENT, ...)
        **attributes: Custom attributes to add to the span

    Yields:
        Span instance for adding custom events/attributes

    Example:
        >>> with trace_operation("bulk_commit", table="dbo.Books") as span:
        ...     affected = executor.commit(config, rows, connection)
        ...     span.set_attribute("rows_affected", affected)
    """
    tracer = get_tracer()

    with tracer.start_as_current_span(
        operation_name,
        kind=kind,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        for key, value in attributes.items():
            span.set_attribute(key, str(value))

        try:
            yield span
        except BaseException as e:
            span.set_attribute("error", True)
            span.set_attribute("error.type", type(e).__name__)
            span.set_attribute("error.message", str(e))
            span.record_exception(e)
            span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
            raise


def add_span_attributes(**attributes):
    """
    Add attributes to the current span.

    Example:
        >>> with trace_operation("bulk_commit"):
        ...     add_span_attributes(strategy="streamed_transfer")
    """
    current_span = trace.get_current_span()
    if current_span.is_recording():
        for key, value in attributes.items():
            current_span.set_attribute(key, str(value))


def add_span_event(name: str, **attributes):
    """
    Add an event to the current span.

    Example:
        >>> add_span_event("state_changed", state="staged")
    """
    current_span = trace.get_current_span()
    if current_span.is_recording():
        attrs = {k: str(v) for k, v in attributes.items()}
        current_span.add_event(name, attributes=attrs)


def trace_function(
    operation_name: str | None = None,
    result_attributes: Callable[[Any], Mapping[str, Any]] | None = None,
    **default_attributes,
):
    """
    Decorator running each call inside :func:`trace_operation`.

    Args:
        operation_name: Span name (defaults to module.qualname)
        result_attributes: Maps the return value to span attributes, so a
            span can describe what the call produced
        **default_attributes: Attributes set on every span

    Example:
        >>> @trace_function("sqlbulk.prepare", lambda plan: {"rows": len(plan.rows)})
        ... def prepare(config, rows):
        ...     ...
    """
    def decorator(func):
        name = operation_name or f"{func.__module__}.{func.__qualname__}"

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            with trace_operation(name, function=func.__name__, **default_attributes) as span:
                result = func(*args, **kwargs)
                if result_attributes is not None and span.is_recording():
                    for key, value in result_attributes(result).items():
                        span.set_attribute(key, str(value))
                return result

        return wrapper
    return decorator
