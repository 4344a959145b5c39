"""
Destination table name parsing.

Accepts ``table``, ``schema.table`` and bracket-quoted forms such as
``[dbo].[Books]``. Without an explicit schema the table is resolved in
``dbo``.
"""

from dataclasses import dataclass

from .exceptions import ConfigurationError
from .utils.sql_safety import quote_schema_table, validate_identifier

DEFAULT_SCHEMA = "dbo"


@dataclass(frozen=True)
class TableName:
    """A validated, schema-qualified destination table."""

    schema: str
    name: str

    @property
    def quoted(self) -> str:
        """Bracket-quoted ``[schema].[name]`` for statement text."""
        return quote_schema_table(self.schema, self.name)

    def __str__(self) -> str:
        return f"{self.schema}.{self.name}"


def _split_parts(raw: str) -> list[str]:
    """Split on '.' separators that are outside bracket quotes."""
    parts: list[str] = []
    current: list[str] = []
    in_brackets = False
    i = 0
    while i < len(raw):
        char = raw[i]
        if in_brackets:
            if char == "]":
                if raw[i + 1:i + 2] == "]":
                    current.append("]")
                    i += 2
                    continue
                in_brackets = False
            else:
                current.append(char)
        elif char == "[":
            in_brackets = True
        elif char == ".":
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
        i += 1

    if in_brackets:
        raise ConfigurationError(f"Unbalanced brackets in table name {raw!r}")

    parts.append("".join(current))
    return [part.strip() for part in parts]


def parse_table_name(table: str, schema: str | None = None) -> TableName:
    """
    Parse and validate a destination table name.

    Args:
        table: ``table``, ``schema.table`` or a bracket-quoted variant
        schema: Optional explicit schema

    Returns:
        TableName with schema resolved

    Raises:
        ConfigurationError: On an empty name, more than one separator,
            an explicit schema alongside an embedded one, or an
            invalid identifier
    """
    if not table or not table.strip():
        raise ConfigurationError("Table name cannot be empty")

    parts = _split_parts(table.strip())

    if len(parts) > 2:
        raise ConfigurationError(
            f"Table name {table!r} can't contain more than one period '.' character",
            table=table,
        )

    if len(parts) == 2:
        if schema is not None:
            raise ConfigurationError(
                f"Schema has already been defined in table name {table!r}; "
                f"remove it or drop the explicit schema {schema!r}",
                table=table,
            )
        resolved_schema, name = parts
    else:
        name = parts[0]
        resolved_schema = schema.strip("[] ") if schema else DEFAULT_SCHEMA

    try:
        validate_identifier(resolved_schema)
        validate_identifier(name)
    except ValueError as e:
        raise ConfigurationError(str(e), table=table) from e

    return TableName(schema=resolved_schema, name=name)
