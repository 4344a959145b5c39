"""
Destination schema introspection and staging table DDL.

Column metadata is read from INFORMATION_SCHEMA.COLUMNS once per execution
and never cached across calls, so staging tables always mirror the
destination as it is now.
"""

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from .config import CORRELATION_COLUMN
from .exceptions import ExecutionError
from .tables import TableName
from .types import DEFAULT_TYPE_MAPPER, SqlTypeTag, TypeMapper
from .utils.sql_safety import quote_identifier, quote_temp_table

logger = logging.getLogger(__name__)

SCHEMA_QUERY = """
SELECT
    c.COLUMN_NAME,
    c.DATA_TYPE,
    c.IS_NULLABLE,
    c.CHARACTER_MAXIMUM_LENGTH,
    c.NUMERIC_PRECISION,
    c.NUMERIC_SCALE,
    c.DATETIME_PRECISION,
    c.COLUMN_DEFAULT,
    COLUMNPROPERTY(
        OBJECT_ID(QUOTENAME(c.TABLE_SCHEMA) + '.' + QUOTENAME(c.TABLE_NAME)),
        c.COLUMN_NAME,
        'IsIdentity'
    ) AS IS_IDENTITY
FROM INFORMATION_SCHEMA.COLUMNS c
WHERE c.TABLE_SCHEMA = ? AND c.TABLE_NAME = ?
ORDER BY c.ORDINAL_POSITION
""".strip()

_LENGTH_TYPES = {"char", "varchar", "nchar", "nvarchar", "binary", "varbinary"}
_STRING_TYPES = {"char", "varchar", "nchar", "nvarchar", "text", "ntext"}
_PRECISION_SCALE_TYPES = {"decimal", "numeric"}
_FRACTIONAL_SECONDS_TYPES = {"datetime2", "time", "datetimeoffset"}


@dataclass(frozen=True)
class ColumnMetadata:
    """Catalog facts about one destination column."""

    name: str
    data_type: str
    is_nullable: bool
    max_length: int | None = None
    numeric_precision: int | None = None
    numeric_scale: int | None = None
    datetime_precision: int | None = None
    default: str | None = None
    is_identity: bool = False

    @property
    def declared_type(self) -> str:
        """Column type as it would appear in CREATE TABLE."""
        data_type = self.data_type
        if data_type in _LENGTH_TYPES:
            if self.max_length is None or self.max_length < 0:
                return f"{data_type}(max)"
            return f"{data_type}({self.max_length})"
        if data_type in _PRECISION_SCALE_TYPES:
            return f"{data_type}({self.numeric_precision}, {self.numeric_scale or 0})"
        if data_type in _FRACTIONAL_SECONDS_TYPES and self.datetime_precision is not None:
            return f"{data_type}({self.datetime_precision})"
        if data_type in ("timestamp", "rowversion"):
            return "binary(8)"
        return data_type

    @property
    def is_string(self) -> bool:
        return self.data_type in _STRING_TYPES


class SchemaMetadata:
    """Column metadata for one destination table, looked up case-insensitively."""

    def __init__(self, table: TableName, columns: Iterable[ColumnMetadata]):
        self.table = table
        self.columns = tuple(columns)
        self._by_name: Mapping[str, ColumnMetadata] = MappingProxyType(
            {column.name.casefold(): column for column in self.columns}
        )

    def __len__(self) -> int:
        return len(self.columns)

    def __contains__(self, name: str) -> bool:
        return name.casefold() in self._by_name

    def get(self, name: str) -> ColumnMetadata | None:
        return self._by_name.get(name.casefold())

    def require(self, name: str) -> ColumnMetadata:
        column = self.get(name)
        if column is None:
            raise ExecutionError(
                f"Column {name!r} does not exist in destination table {self.table}",
                table=str(self.table),
            )
        return column

    @property
    def identity_column(self) -> ColumnMetadata | None:
        for column in self.columns:
            if column.is_identity:
                return column
        return None

    @classmethod
    def from_rows(cls, table: TableName, rows: Sequence[Sequence[Any]]) -> "SchemaMetadata":
        """
        Build metadata from SCHEMA_QUERY result rows.

        Raises:
            ExecutionError: If the table has no columns (does not exist or
                is not visible to the connection)
        """
        if not rows:
            raise ExecutionError(
                f"Destination table {table} was not found or has no visible columns",
                table=str(table),
            )

        columns = []
        for row in rows:
            (name, data_type, is_nullable, max_length, precision, scale,
             datetime_precision, default, is_identity) = row
            columns.append(ColumnMetadata(
                name=name,
                data_type=str(data_type).lower(),
                is_nullable=str(is_nullable).upper() == "YES",
                max_length=max_length,
                numeric_precision=precision,
                numeric_scale=scale,
                datetime_precision=datetime_precision,
                default=default,
                is_identity=bool(is_identity),
            ))

        logger.debug(f"Fetched metadata for {len(columns)} columns of {table}")
        return cls(table, columns)


def build_schema_query(table: TableName) -> tuple[str, tuple]:
    """The catalog query and its parameters for ``table``."""
    return SCHEMA_QUERY, (table.schema, table.name)


def build_staging_ddl(
    staging_table: str,
    columns: Sequence[str],
    metadata: SchemaMetadata,
    correlated: bool = False,
    nullable: Iterable[str] = (),
    type_mapper: TypeMapper = DEFAULT_TYPE_MAPPER,
) -> str:
    """
    CREATE TABLE statement for a staging table shaped like the destination.

    Args:
        staging_table: Temp table name (``#...``)
        columns: Destination columns to stage, in staging order
        metadata: Destination metadata supplying type and nullability
        correlated: Append the correlation token column
        nullable: Columns staged as NULL regardless of the destination
        type_mapper: Supplies the correlation column type

    Raises:
        ExecutionError: If a column does not exist in the destination
    """
    forced_nullable = {name.casefold() for name in nullable}
    definitions = []
    for name in columns:
        column = metadata.require(name)
        definition = f"{quote_identifier(name)} {column.declared_type}"
        if column.is_string:
            definition += " COLLATE DATABASE_DEFAULT"
        if column.is_nullable or name.casefold() in forced_nullable:
            definition += " NULL"
        else:
            definition += " NOT NULL"
        definitions.append(definition)

    if correlated:
        token_type = type_mapper.declared_type(SqlTypeTag.BIGINT)
        definitions.append(f"{quote_identifier(CORRELATION_COLUMN)} {token_type} NOT NULL")

    return (
        f"CREATE TABLE {quote_temp_table(staging_table)} (\n    "
        + ",\n    ".join(definitions)
        + "\n);"
    )


def build_output_ddl(
    output_table: str,
    identity: ColumnMetadata,
    type_mapper: TypeMapper = DEFAULT_TYPE_MAPPER,
) -> str:
    """CREATE TABLE statement for the identity output table."""
    token_type = type_mapper.declared_type(SqlTypeTag.BIGINT)
    return (
        f"CREATE TABLE {quote_temp_table(output_table)} (\n"
        f"    {quote_identifier(CORRELATION_COLUMN)} {token_type} NULL,\n"
        f"    {quote_identifier(identity.name)} {identity.declared_type} NULL\n"
        ");"
    )
