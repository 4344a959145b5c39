"""
Transfer strategy selection and the generated multi-row INSERT.

Small row sets are cheaper as one parameterized ``INSERT ... VALUES``
statement than as a round trip through the streamed transfer channel.
Both strategies leave the destination in the same state.
"""

import logging
from collections.abc import Sequence
from enum import Enum

from .types import DEFAULT_TYPE_MAPPER, SqlTypeTag, TypeMapper
from .utils.sql_safety import quote_identifier

logger = logging.getLogger(__name__)

# SQL Server accepts at most 2100 parameters per request
MAX_PARAMETERS = 2100
# Row limit of a single table value constructor
MAX_VALUES_ROWS = 1000


class TransferStrategy(str, Enum):
    STREAMED_TRANSFER = "streamed_transfer"
    GENERATED_MULTI_ROW_INSERT = "generated_multi_row_insert"


def parameters_per_row(
    tags: Sequence[SqlTypeTag | None],
    type_mapper: TypeMapper = DEFAULT_TYPE_MAPPER,
) -> int:
    """Number of bound parameters one staged row consumes."""
    return sum(type_mapper.placeholder(tag).count("?") for tag in tags)


def select_strategy(
    row_count: int,
    params_per_row: int,
    threshold: int,
) -> TransferStrategy:
    """
    Pick the transfer strategy for a buffer.

    The generated multi-row insert is used only when the row count is at or
    under ``threshold`` and the statement stays within SQL Server's
    parameter and VALUES row limits.
    """
    if (
        0 < row_count <= threshold
        and row_count <= MAX_VALUES_ROWS
        and row_count * params_per_row < MAX_PARAMETERS
    ):
        return TransferStrategy.GENERATED_MULTI_ROW_INSERT
    return TransferStrategy.STREAMED_TRANSFER


def value_row_sql(
    tags: Sequence[SqlTypeTag | None],
    type_mapper: TypeMapper = DEFAULT_TYPE_MAPPER,
) -> str:
    """``(?, ?, ...)`` for one row, with type-specific placeholders."""
    return "(" + ", ".join(type_mapper.placeholder(tag) for tag in tags) + ")"


def bind_row(
    row: Sequence,
    tags: Sequence[SqlTypeTag | None],
    type_mapper: TypeMapper = DEFAULT_TYPE_MAPPER,
) -> tuple:
    """Flatten one row into bound parameters matching :func:`value_row_sql`."""
    params: list = []
    for tag, value in zip(tags, row):
        params.extend(type_mapper.to_parameters(tag, value))
    return tuple(params)


def build_multi_row_insert(
    target: str,
    columns: Sequence[str],
    rows: Sequence[Sequence],
    tags: Sequence[SqlTypeTag | None],
    table_lock: bool = False,
    type_mapper: TypeMapper = DEFAULT_TYPE_MAPPER,
) -> tuple[str, tuple]:
    """
    Build one parameterized multi-row INSERT.

    Args:
        target: Already quoted target table
        columns: Destination column names, in row value order
        rows: Row tuples
        tags: Type tag per column
        table_lock: Add a TABLOCK hint
        type_mapper: Supplies placeholders and parameter conversion

    Returns:
        (sql, params)
    """
    hint = " WITH (TABLOCK)" if table_lock else ""
    column_list = ", ".join(quote_identifier(name) for name in columns)
    row_sql = value_row_sql(tags, type_mapper)

    params: list = []
    for row in rows:
        params.extend(bind_row(row, tags, type_mapper))

    sql = (
        f"INSERT INTO {target}{hint} ({column_list})\nVALUES\n    "
        + ",\n    ".join([row_sql] * len(rows))
        + ";"
    )
    return sql, tuple(params)


def build_transfer_insert(
    target: str,
    columns: Sequence[str],
    tags: Sequence[SqlTypeTag | None],
    table_lock: bool = False,
    type_mapper: TypeMapper = DEFAULT_TYPE_MAPPER,
) -> str:
    """Single-row INSERT executed once per row by the transfer channel."""
    hint = " WITH (TABLOCK)" if table_lock else ""
    column_list = ", ".join(quote_identifier(name) for name in columns)
    return f"INSERT INTO {target}{hint} ({column_list}) VALUES {value_row_sql(tags, type_mapper)};"
