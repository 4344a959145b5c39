"""
sqlbulk: set-based bulk insert, update, upsert and delete for SQL Server.

Usage:
    import pyodbc
    from sqlbulk import BulkOperation, BulkOperationExecutor, ColumnDirection, col

    config = (
        BulkOperation("dbo.Books")
        .columns("isbn", "title", "price")
        .match_on("isbn")
        .identity("id", ColumnDirection.INPUT_OUTPUT)
        .update_when(col("price") > 10)
        .upsert()
    )

    with pyodbc.connect(connection_string) as connection:
        affected = BulkOperationExecutor().commit(config, books, connection)
"""

from .config import (
    BulkCopySettings,
    BulkOperation,
    BulkSettings,
    Column,
    ColumnDirection,
    IdentityColumn,
    OperationConfig,
    OperationKind,
)
from .exceptions import (
    BulkOperationsError,
    ConfigurationError,
    DatabaseError,
    ExecutionError,
    IdentityConfigurationError,
    OperationCancelledError,
    TransferError,
    TypeMappingError,
    WritebackError,
)
from .executor import BulkOperationExecutor, CancellationToken
from .predicates import col
from .staging import ExecutionState
from .strategy import TransferStrategy
from .tables import TableName, parse_table_name
from .types import Geography, Geometry, HierarchyId, TypeMapper, Xml

__version__ = "1.0.0"

__all__ = [
    "BulkCopySettings",
    "BulkOperation",
    "BulkOperationExecutor",
    "BulkOperationsError",
    "BulkSettings",
    "CancellationToken",
    "Column",
    "ColumnDirection",
    "ConfigurationError",
    "DatabaseError",
    "ExecutionError",
    "ExecutionState",
    "Geography",
    "Geometry",
    "HierarchyId",
    "IdentityColumn",
    "IdentityConfigurationError",
    "OperationCancelledError",
    "OperationConfig",
    "OperationKind",
    "TableName",
    "TransferError",
    "TransferStrategy",
    "TypeMapper",
    "TypeMappingError",
    "WritebackError",
    "Xml",
    "col",
    "parse_table_name",
]
