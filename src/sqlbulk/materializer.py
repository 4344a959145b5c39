"""
Row materialization into a staging buffer.

Reads only the configured fields of each caller row, assigns a type tag to
every column and validates every non-null value against the type mapper.
A column typed by its values rather than by a type hint widens as needed
(bigint to decimal or float, date to datetime2), whatever the row order.
All of this happens before any I/O, so type errors never leave a partially
written destination.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from .accessors import accessor_table, field_type_hints
from .config import CORRELATION_COLUMN, Column
from .exceptions import ConfigurationError, TypeMappingError
from .types import DEFAULT_TYPE_MAPPER, SqlTypeTag, TypeMapper

if TYPE_CHECKING:
    from .schema import SchemaMetadata

logger = logging.getLogger(__name__)

_FIXED_LENGTH_TYPES = {"char", "nchar"}


@dataclass
class StagingBuffer:
    """
    Tabular, ordered copy of the configured row fields.

    ``rows`` keeps caller order. When ``correlated`` is set, the last value
    of every row is its correlation token: the row's position in the caller
    sequence.
    """

    columns: tuple[str, ...]
    tags: tuple[SqlTypeTag | None, ...]
    rows: list[tuple]
    correlated: bool = False
    ordinals: Mapping[str, int] = field(init=False)

    def __post_init__(self):
        self.ordinals = MappingProxyType(
            {name: position for position, name in enumerate(self.columns)}
        )

    def __len__(self) -> int:
        return len(self.rows)

    @property
    def data_columns(self) -> tuple[str, ...]:
        """Columns excluding the correlation token."""
        return self.columns[:-1] if self.correlated else self.columns

    def tag(self, column: str) -> SqlTypeTag | None:
        return self.tags[self.ordinals[column]]

    def project(self, columns: Sequence[str]) -> list[tuple]:
        """Rows restricted to ``columns``, in that order."""
        positions = [self.ordinals[name] for name in columns]
        return [tuple(row[p] for p in positions) for row in self.rows]

    def coerce(self, metadata: "SchemaMetadata") -> None:
        """Apply schema-driven coercion: pad fixed-length strings."""
        padding = []
        for position, name in enumerate(self.data_columns):
            column = metadata.get(name)
            if (
                column is not None
                and column.data_type in _FIXED_LENGTH_TYPES
                and column.max_length
                and column.max_length > 0
                and self.tags[position] is SqlTypeTag.NVARCHAR
            ):
                padding.append((position, column.max_length))

        if not padding:
            return

        coerced = []
        for row in self.rows:
            values = list(row)
            for position, length in padding:
                value = values[position]
                if value is not None and len(value) < length:
                    values[position] = value.ljust(length)
            coerced.append(tuple(values))
        self.rows = coerced
        logger.debug(f"Padded {len(padding)} fixed-length column(s)")


def _hint_tags(
    row_type: type,
    columns: Sequence[Column],
    type_mapper: TypeMapper,
) -> list[SqlTypeTag | None]:
    hints = field_type_hints(row_type)
    tags: list[SqlTypeTag | None] = []
    for column in columns:
        hint = hints.get(column.source)
        if hint is None or hint is Any:
            tags.append(None)
        else:
            tags.append(type_mapper.tag_for_annotation(hint, column.name))
    return tags


def _coerce_columns(
    staged: list[tuple],
    tags: Sequence[SqlTypeTag | None],
    positions: set[int],
    type_mapper: TypeMapper,
) -> list[tuple]:
    coerced = []
    for row in staged:
        values = list(row)
        for position in positions:
            values[position] = type_mapper.coerce(tags[position], values[position])
        coerced.append(tuple(values))
    return coerced


def materialize(
    rows: Sequence[Any],
    columns: Sequence[Column],
    type_mapper: TypeMapper = DEFAULT_TYPE_MAPPER,
    correlated: bool = False,
    table: str | None = None,
) -> StagingBuffer:
    """
    Materialize rows into a StagingBuffer.

    Args:
        rows: Caller rows, all exposing the configured fields
        columns: The fixed ColumnSet
        type_mapper: Type mapper used to tag and validate values
        correlated: Append a correlation token column
        table: Destination name for error context

    Returns:
        StagingBuffer in caller row order

    Raises:
        TypeMappingError: On a value with no SQL Server mapping
        ConfigurationError: When a row lacks a configured field
    """
    sources = tuple(column.source for column in columns)
    names = tuple(column.name for column in columns)
    tags = _hint_tags(type(rows[0]), columns, type_mapper) if rows else []
    hinted = [tag is not None for tag in tags]
    mixed: set[int] = set()
    tables = {}
    staged = []

    for index, row in enumerate(rows):
        row_type = type(row)
        accessors = tables.get(row_type)
        if accessors is None:
            accessors = [accessor_table(row_type, sources)[source] for source in sources]
            tables[row_type] = accessors

        values = []
        for position, accessor in enumerate(accessors):
            try:
                value = accessor.getter(row)
            except (AttributeError, KeyError, IndexError) as e:
                raise ConfigurationError(
                    f"Row {index} has no field {accessor.source!r}",
                    table=table,
                ) from e

            if value is not None:
                tag = tags[position]
                try:
                    if tag is None:
                        tag = type_mapper.tag_for(type(value), names[position])
                    elif not hinted[position]:
                        tag = type_mapper.widen(tag, value, names[position])
                        if tag is not tags[position]:
                            mixed.add(position)
                    if type_mapper.check_value(tag, value, names[position]) is not tag:
                        mixed.add(position)
                except TypeMappingError as e:
                    e.table = table
                    raise
                tags[position] = tag
            values.append(value)

        if correlated:
            values.append(index)
        staged.append(tuple(values))

    if mixed:
        staged = _coerce_columns(staged, tags, mixed, type_mapper)
        logger.debug(f"Widened {len(mixed)} column(s) to a common type")

    if correlated:
        names = names + (CORRELATION_COLUMN,)
        tags.append(SqlTypeTag.BIGINT)

    logger.debug(f"Materialized {len(staged)} rows x {len(columns)} columns")
    return StagingBuffer(columns=names, tags=tuple(tags), rows=staged, correlated=correlated)
