"""
Unit tests for sqlbulk.utils.metrics
"""

from prometheus_client import CollectorRegistry, Counter

from sqlbulk.utils.metrics import BulkOperationMetrics, get_or_create_metric


class TestGetOrCreateMetric:
    """Test get_or_create_metric"""

    def test_returns_existing_metric(self):
        registry = CollectorRegistry()

        def factory():
            return Counter("demo_total", "Demo", registry=registry)

        first = get_or_create_metric(factory, "demo", registry)
        second = get_or_create_metric(factory, "demo", registry)

        assert first is second

    def test_metrics_can_be_constructed_twice_on_one_registry(self):
        registry = CollectorRegistry()

        first = BulkOperationMetrics(registry=registry)
        second = BulkOperationMetrics(registry=registry)

        assert first.operations_total is second.operations_total
        assert first.duration_seconds is second.duration_seconds


class TestBulkOperationMetrics:
    """Test BulkOperationMetrics"""

    def test_record_success(self):
        registry = CollectorRegistry()
        metrics = BulkOperationMetrics(registry=registry)

        metrics.record_operation(
            "upsert", "dbo.Books", success=True, duration=0.25, rows=40,
            strategy="streamed_transfer",
        )

        assert registry.get_sample_value(
            "sqlbulk_operations_total",
            {"operation": "upsert", "table_name": "dbo.Books", "status": "success"},
        ) == 1
        assert registry.get_sample_value(
            "sqlbulk_rows_affected_total", {"operation": "upsert", "table_name": "dbo.Books"}
        ) == 40
        assert registry.get_sample_value(
            "sqlbulk_transfer_strategy_total", {"strategy": "streamed_transfer"}
        ) == 1
        assert registry.get_sample_value(
            "sqlbulk_operation_duration_seconds_count", {"operation": "upsert"}
        ) == 1
        assert registry.get_sample_value(
            "sqlbulk_operation_duration_seconds_sum", {"operation": "upsert"}
        ) == 0.25

    def test_record_failure_counts_no_rows(self):
        registry = CollectorRegistry()
        metrics = BulkOperationMetrics(registry=registry)

        metrics.record_operation("insert", "dbo.Books", success=False, duration=1.0, rows=10)

        assert registry.get_sample_value(
            "sqlbulk_operations_total",
            {"operation": "insert", "table_name": "dbo.Books", "status": "failed"},
        ) == 1
        assert registry.get_sample_value(
            "sqlbulk_rows_affected_total", {"operation": "insert", "table_name": "dbo.Books"}
        ) is None

    def test_explicit_status(self):
        registry = CollectorRegistry()
        metrics = BulkOperationMetrics(registry=registry)

        metrics.record_operation("delete", "dbo.Books", success=False, duration=0.1, status="cancelled")

        assert registry.get_sample_value(
            "sqlbulk_operations_total",
            {"operation": "delete", "table_name": "dbo.Books", "status": "cancelled"},
        ) == 1
