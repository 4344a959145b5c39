"""
Prometheus metrics for bulk operations.

Usage:
    from sqlbulk.utils.metrics import BulkOperationMetrics

    metrics = BulkOperationMetrics()
    metrics.record_operation("upsert", "dbo.Books", success=True, duration=0.42, rows=1000)
"""

import logging
from typing import Callable, Optional, TypeVar

from prometheus_client import (
    Counter,
    Histogram,
    CollectorRegistry,
    REGISTRY,
)

logger = logging.getLogger(__name__)

# Type variable for metric types
T = TypeVar("T")


def get_or_create_metric(
    metric_factory: Callable[[], T],
    metric_name: str,
    registry: CollectorRegistry = REGISTRY,
) -> T:
    """
    Create a metric or return the one already registered under its name.

    Args:
        metric_factory: Callable that creates the metric (e.g., lambda: Counter(...))
        metric_name: Name of the metric for lookup if already registered
        registry: Prometheus registry to use (default: global REGISTRY)

    Returns:
        The metric instance (either newly created or existing)

    Example:
        ROWS_TOTAL = get_or_create_metric(
            lambda: Counter("rows_total", "Total rows", ["operation"]),
            "rows_total"
        )
    """
    try:
        return metric_factory()
    except ValueError:
        # Metric already registered, get existing one
        existing = registry._names_to_collectors.get(metric_name)
        if existing is not None:
            return existing
        # If still not found, re-raise the original error
        raise


class BulkOperationMetrics:
    """
    Metrics for bulk operation executions

    Tracks executions by kind and outcome, staged rows, transfer strategy
    choices and execution duration.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize bulk operation metrics

        Args:
            registry: Custom Prometheus registry (default: global REGISTRY)
        """
        self.registry = registry or REGISTRY

        self.operations_total = get_or_create_metric(
            lambda: Counter(
                "sqlbulk_operations_total",
                "Total number of bulk operation executions",
                ["operation", "table_name", "status"],
                registry=self.registry,
            ),
            "sqlbulk_operations",
            self.registry,
        )

        self.rows_affected_total = get_or_create_metric(
            lambda: Counter(
                "sqlbulk_rows_affected_total",
                "Total number of destination rows affected",
                ["operation", "table_name"],
                registry=self.registry,
            ),
            "sqlbulk_rows_affected",
            self.registry,
        )

        self.strategy_total = get_or_create_metric(
            lambda: Counter(
                "sqlbulk_transfer_strategy_total",
                "Transfer strategy selections",
                ["strategy"],
                registry=self.registry,
            ),
            "sqlbulk_transfer_strategy",
            self.registry,
        )

        self.duration_seconds = get_or_create_metric(
            lambda: Histogram(
                "sqlbulk_operation_duration_seconds",
                "Duration of bulk operation executions in seconds",
                ["operation"],
                buckets=(0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30, 60, 300),
                registry=self.registry,
            ),
            "sqlbulk_operation_duration_seconds",
            self.registry,
        )

    def record_operation(
        self,
        operation: str,
        table_name: str,
        success: bool,
        duration: float,
        rows: int = 0,
        strategy: Optional[str] = None,
        status: Optional[str] = None,
    ) -> None:
        """
        Record one execution

        Args:
            operation: Operation kind (insert, update, ...)
            table_name: Destination table
            success: Whether the execution completed
            duration: Duration in seconds
            rows: Rows affected
            strategy: Transfer strategy used, if any rows were staged
            status: Explicit status label overriding success/failed
        """
        status = status or ("success" if success else "failed")

        self.operations_total.labels(
            operation=operation,
            table_name=table_name,
            status=status,
        ).inc()

        self.duration_seconds.labels(operation=operation).observe(duration)

        if success and rows:
            self.rows_affected_total.labels(
                operation=operation,
                table_name=table_name,
            ).inc(rows)

        if strategy:
            self.strategy_total.labels(strategy=strategy).inc()

        logger.debug(
            f"Recorded {operation} on {table_name}: status={status}, "
            f"duration={duration:.3f}s, rows={rows}"
        )
