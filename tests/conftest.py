"""
Pytest configuration and shared fixtures for sqlbulk tests.
"""

import os
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import pyodbc
import pytest
from prometheus_client import CollectorRegistry

from sqlbulk import BulkOperationExecutor, BulkSettings
from sqlbulk.types import PARAMETER_TYPES, SqlTypeTag, TypeMapper
from sqlbulk.utils.metrics import BulkOperationMetrics


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: requires a live SQL Server (SQLBULK_TEST_CONNECTION_STRING)"
    )


@pytest.fixture(autouse=True)
def set_test_env_vars(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep environment-driven settings deterministic."""
    for key in ("SQLBULK_BATCH_SIZE", "SQLBULK_TIMEOUT", "SQLBULK_MULTI_ROW_THRESHOLD"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.delenv("SQLBULK_OTLP_ENDPOINT", raising=False)
    monkeypatch.delenv("SQLBULK_TRACE_CONSOLE", raising=False)


def books_schema(identity: bool = True) -> list[tuple]:
    """INFORMATION_SCHEMA rows for the Books test table."""
    return [
        ("Id", "int", "NO", None, 10, 0, None, None, 1 if identity else 0),
        ("ISBN", "varchar", "YES", 13, None, None, None, None, 0),
        ("Title", "nvarchar", "YES", 256, None, None, None, None, 0),
        ("Description", "nvarchar", "YES", -1, None, None, None, None, 0),
        ("Price", "decimal", "YES", None, 18, 2, None, None, 0),
        ("WarehouseId", "int", "YES", None, 10, 0, None, None, 0),
        ("PublishDate", "datetime2", "YES", None, None, None, 7, None, 0),
    ]


@dataclass(frozen=True)
class Money:
    amount: Decimal


class MoneyTypeMapper(TypeMapper):
    """Type mapper that also stages and binds Money values as decimals."""

    def __init__(self):
        super().__init__(parameter_types={**PARAMETER_TYPES, Money: SqlTypeTag.DECIMAL})

    def to_parameters(self, tag, value):
        if isinstance(value, Money):
            return (value.amount,)
        return super().to_parameters(tag, value)


@dataclass
class FakeConnection:
    """
    Stand-in for a pyodbc connection.

    Routes statements by their text: the catalog query returns
    ``schema_rows``, row-count batches return ``affected`` (a value or a
    callable receiving the SQL), identity output reads return
    ``identity_rows``. ``fail_on`` maps a SQL fragment to the error raised
    when a statement containing it runs.
    """

    schema_rows: list[tuple] = field(default_factory=books_schema)
    affected: Any = 0
    identity_rows: list[tuple] = field(default_factory=list)
    fail_on: dict[str, Exception] = field(default_factory=dict)
    timeout: int = 0
    statements: list[tuple[str, Any]] = field(default_factory=list)
    transfers: list[tuple[str, list]] = field(default_factory=list)
    on_statement: Callable[[str], None] | None = None

    def cursor(self) -> "FakeCursor":
        return FakeCursor(self)

    def sql(self) -> list[str]:
        return [sql for sql, _ in self.statements]

    def find(self, fragment: str) -> list[tuple[str, Any]]:
        return [(sql, params) for sql, params in self.statements if fragment in sql]


class FakeCursor:
    def __init__(self, connection: FakeConnection):
        self.connection = connection
        self.description = None
        self.rowcount = -1
        self.fast_executemany = False
        self._rows: list[tuple] = []
        self.closed = False

    def _check_failure(self, sql: str) -> None:
        for fragment, error in self.connection.fail_on.items():
            if fragment in sql:
                raise error

    def execute(self, sql: str, params: Any = None):
        self.connection.statements.append((sql, params))
        if self.connection.on_statement is not None:
            self.connection.on_statement(sql)
        self._check_failure(sql)

        if "INFORMATION_SCHEMA.COLUMNS" in sql:
            self._result(self.connection.schema_rows)
        elif "SELECT @affected" in sql:
            affected = self.connection.affected
            if callable(affected):
                affected = affected(sql)
            self._result([(affected,)])
        elif re.search(r"FROM \[#sqlbulk_output_\w+\]", sql):
            self._result(self.connection.identity_rows)
        else:
            self.description = None
            self.rowcount = 0
        return self

    def _result(self, rows: list[tuple]) -> None:
        self.description = [("column",)]
        self._rows = list(rows)
        self.rowcount = -1

    def executemany(self, sql: str, rows: list) -> None:
        self.connection.transfers.append((sql, list(rows)))
        self._check_failure(sql)

    def nextset(self) -> bool:
        return False

    def fetchall(self) -> list[tuple]:
        return self._rows

    def close(self) -> None:
        self.closed = True


def odbc_error(code: int, message: str = "statement failed") -> pyodbc.Error:
    """A pyodbc error as the SQL Server ODBC driver formats it."""
    return pyodbc.Error(
        "42000",
        f"[42000] [Microsoft][ODBC Driver 18 for SQL Server][SQL Server]{message} "
        f"({code}) (SQLExecDirectW)",
    )


@pytest.fixture
def connection() -> FakeConnection:
    return FakeConnection()


@pytest.fixture
def metrics() -> BulkOperationMetrics:
    return BulkOperationMetrics(registry=CollectorRegistry())


@pytest.fixture
def executor(metrics: BulkOperationMetrics) -> BulkOperationExecutor:
    return BulkOperationExecutor(
        settings=BulkSettings(batch_size=100, timeout=30, multi_row_threshold=10),
        metrics=metrics,
    )


@pytest.fixture(scope="session")
def sqlserver_connection_string() -> str:
    """Connection string for integration tests; skips when unset."""
    value = os.getenv("SQLBULK_TEST_CONNECTION_STRING")
    if not value:
        pytest.skip("SQLBULK_TEST_CONNECTION_STRING is not set")
    return value
