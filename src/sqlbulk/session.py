"""
pyodbc session running plan steps on a caller-owned connection.

The caller owns the connection and its transaction; the session only
borrows cursors and applies the statement timeout for the duration of one
commit. Driver errors propagate as ``pyodbc.Error``; the executor
translates them.
"""

import logging
from typing import Any

import pyodbc

from .steps import Execute, Query, Step, Transfer

logger = logging.getLogger(__name__)


class SqlServerSession:
    """
    Run Execute, Query and Transfer steps on one pyodbc connection.

    Args:
        connection: Open pyodbc connection (autocommit or in a transaction)
        timeout: Statement timeout in seconds for this session, restored
            on close (None keeps the connection's setting)

    Usage:
        with SqlServerSession(connection, timeout=600) as session:
            session.run(Execute("DELETE FROM [dbo].[Books];"))
    """

    def __init__(self, connection: pyodbc.Connection, timeout: int | None = None):
        self.connection = connection
        self._previous_timeout = None
        if timeout is not None:
            self._previous_timeout = connection.timeout
            connection.timeout = timeout

    def __enter__(self) -> "SqlServerSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def close(self) -> None:
        if self._previous_timeout is not None:
            self.connection.timeout = self._previous_timeout
            self._previous_timeout = None

    def run(self, step: Step) -> Any:
        if isinstance(step, Execute):
            return self.execute(step.sql, step.params)
        if isinstance(step, Query):
            return self.query(step.sql, step.params)
        if isinstance(step, Transfer):
            return self.transfer(step)
        raise TypeError(f"Unknown step type: {type(step).__name__}")

    def execute(self, sql: str, params: tuple = ()) -> int:
        """Execute a statement and return the driver row count."""
        cursor = self.connection.cursor()
        try:
            if params:
                cursor.execute(sql, params)
            else:
                cursor.execute(sql)
            return cursor.rowcount
        finally:
            cursor.close()

    def query(self, sql: str, params: tuple = ()) -> list[tuple]:
        """Execute a batch and fetch its first result set."""
        cursor = self.connection.cursor()
        try:
            if params:
                cursor.execute(sql, params)
            else:
                cursor.execute(sql)

            # Skip row-count results that precede the first result set
            while cursor.description is None:
                if not cursor.nextset():
                    return []

            return [tuple(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def transfer(self, step: Transfer) -> int:
        """
        Send rows through pyodbc's fast_executemany channel.

        Rows go in ``batch_size`` chunks on one cursor; a failure in any
        chunk raises and the caller's transaction decides what survives.

        Returns:
            Number of rows sent
        """
        if not step.rows:
            return 0

        cursor = self.connection.cursor()
        try:
            cursor.fast_executemany = True
            total = len(step.rows)
            for start in range(0, total, step.batch_size):
                batch = step.rows[start:start + step.batch_size]
                cursor.executemany(step.sql, batch)
                logger.debug(f"Transferred rows {start + 1}-{start + len(batch)} of {total}")
            return total
        finally:
            cursor.close()
