"""
Identity round-trip.

The reconciliation statement records ``(correlation token, identity value)``
pairs in an output temp table. Tokens are row positions in the caller's
sequence, so each generated key lands on the row that produced it no matter
how the server ordered the work.

Write-back happens after the destination has been mutated. A row type
without a writable identity field therefore raises WritebackError with the
mutation already applied.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .accessors import FieldAccessor, accessor_table
from .config import CORRELATION_COLUMN, IdentityColumn
from .exceptions import WritebackError
from .utils.sql_safety import quote_identifier, quote_temp_table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityCorrelation:
    token: int
    value: Any


def read_back_sql(output_table: str, identity_column: str) -> str:
    """Ordered read of the identity output table."""
    token = quote_identifier(CORRELATION_COLUMN)
    return (
        f"SELECT {token}, {quote_identifier(identity_column)} "
        f"FROM {quote_temp_table(output_table)} "
        f"WHERE {token} IS NOT NULL "
        f"ORDER BY {token};"
    )


def correlations_from_rows(result: Sequence[Sequence[Any]]) -> list[IdentityCorrelation]:
    return [IdentityCorrelation(token=int(row[0]), value=row[1]) for row in result]


def write_back(
    rows: Sequence[Any],
    correlations: Sequence[IdentityCorrelation],
    identity: IdentityColumn,
    table: str | None = None,
    rows_affected: int = 0,
) -> int:
    """
    Write generated identity values into the caller's rows.

    Writable accessors are resolved for every row type involved before any
    row is touched, so a failure leaves all rows unchanged.

    Args:
        rows: The caller's row sequence, in the order it was staged
        correlations: Pairs read from the output table
        identity: Identity column configuration
        table: Destination name for error context
        rows_affected: Rows the mutation affected, reported on failure

    Returns:
        Number of rows written back

    Raises:
        WritebackError: If a row type has no writable identity field, or a
            token does not belong to the row sequence
    """
    setters: dict[type, FieldAccessor] = {}
    for correlation in correlations:
        if not 0 <= correlation.token < len(rows):
            raise WritebackError(
                f"Correlation token {correlation.token} is outside the "
                f"{len(rows)} staged rows",
                table=table,
                column=identity.name,
                rows_affected=rows_affected,
            )
        row_type = type(rows[correlation.token])
        if row_type in setters:
            continue
        accessor = accessor_table(row_type, (identity.source,))[identity.source]
        if not accessor.writable:
            raise WritebackError(
                f"No setter available for field {identity.source!r} on "
                f"{row_type.__name__}. Could not write output back to the row.",
                table=table,
                column=identity.name,
                rows_affected=rows_affected,
            )
        setters[row_type] = accessor

    for correlation in correlations:
        row = rows[correlation.token]
        setters[type(row)].setter(row, correlation.value)

    logger.debug(f"Wrote {len(correlations)} identity values back to {identity.source!r}")
    return len(correlations)
