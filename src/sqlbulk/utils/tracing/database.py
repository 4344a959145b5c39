"""
Database statement tracing.
"""

from typing import Any

from opentelemetry import trace

from .context import trace_operation


def trace_database_query(
    query_type: str,
    table: str,
    database: str = "mssql"
) -> Any:
    """
    Context manager for tracing one database round trip.

    Args:
        query_type: Step label (fetch_schema, reconcile, transfer_rows, ...)
        table: Destination table name
        database: Database system name

    Example:
        >>> with trace_database_query("fetch_schema", "dbo.Books"):
        ...     cursor.execute(sql, params)
    """
    return trace_operation(
        f"db.{query_type.lower()}",
        kind=trace.SpanKind.CLIENT,
        **{
            "db.operation": query_type,
            "db.table": table,
            "db.system": database,
            "component": "database"
        }
    )
