"""
Exception hierarchy for bulk operations.

Every error raised by the engine derives from BulkOperationsError so callers
can catch the whole family at once. Driver errors (pyodbc.Error) are wrapped
into DatabaseError subclasses with the original exception chained as
``__cause__``.
"""

from collections.abc import Sequence


class BulkOperationsError(Exception):
    """Base class for all bulk operation errors."""

    def __init__(self, message: str, *, table: str | None = None):
        super().__init__(message)
        self.message = message
        self.table = table


class ConfigurationError(BulkOperationsError):
    """Invalid operation configuration, detected before any I/O."""


class IdentityConfigurationError(ConfigurationError):
    """
    Identity column misconfiguration.

    Raised proactively when the catalog reports an undeclared identity column
    in the column set, and by reclassifying server errors 544, 8101 and 8102.
    """

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        column: str | None = None,
        native_codes: Sequence[int] = (),
    ):
        super().__init__(message, table=table)
        self.column = column
        self.native_codes = tuple(native_codes)


class TypeMappingError(BulkOperationsError):
    """A configured column holds a value type with no SQL Server mapping."""

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        column: str | None = None,
        python_type: type | None = None,
    ):
        super().__init__(message, table=table)
        self.column = column
        self.python_type = python_type


class WritebackError(BulkOperationsError):
    """
    Generated identity values could not be written back into the rows.

    The database mutation has already executed when this is raised;
    ``rows_affected`` reports how many rows it touched.
    """

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        column: str | None = None,
        rows_affected: int = 0,
    ):
        super().__init__(message, table=table)
        self.column = column
        self.rows_affected = rows_affected


class OperationCancelledError(BulkOperationsError):
    """The operation was cancelled between steps; staging was cleaned up."""


class DatabaseError(BulkOperationsError):
    """An error reported by the database driver."""

    def __init__(
        self,
        message: str,
        *,
        table: str | None = None,
        native_codes: Sequence[int] = (),
        sql: str | None = None,
    ):
        super().__init__(message, table=table)
        self.native_codes = tuple(native_codes)
        self.sql = sql


class TransferError(DatabaseError):
    """The bulk transfer channel failed."""


class ExecutionError(DatabaseError):
    """Statement execution failed."""
