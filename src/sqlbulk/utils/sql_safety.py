"""
SQL safety utilities for preventing SQL injection.

Provides identifier validation and bracket quoting for SQL Server statement
construction. Values never go through these helpers; they are always bound
as ``?`` parameters.
"""

import re


# ASCII-only identifiers; '@', '$' and '#' are legal after the first character
VALID_IDENTIFIER = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_@$#]*$")
# Session (#) and global (##) temp tables
VALID_TEMP_TABLE = re.compile(r"^#{1,2}[a-zA-Z_][a-zA-Z0-9_]*$")

MAX_IDENTIFIER_LENGTH = 128


def validate_identifier(identifier: str) -> None:
    """
    Validate a SQL identifier (schema, table or column name).

    Args:
        identifier: The identifier to validate

    Raises:
        ValueError: If the identifier is empty, too long or contains
            invalid characters
    """
    if not identifier:
        raise ValueError("SQL identifier cannot be empty")

    if len(identifier) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"Invalid SQL identifier: {identifier!r}. "
            f"Identifiers are limited to {MAX_IDENTIFIER_LENGTH} characters."
        )

    if not VALID_IDENTIFIER.fullmatch(identifier):
        raise ValueError(
            f"Invalid SQL identifier: {identifier!r}. "
            "Only ASCII letters, digits, underscores, '@', '$' and '#' are allowed, "
            "and must start with a letter or underscore."
        )


def validate_temp_table(name: str) -> None:
    """
    Validate a temp table name such as ``#sqlbulk_stage_1f2e``.

    Raises:
        ValueError: If the name is not a session or global temp table name
    """
    if not name or not VALID_TEMP_TABLE.fullmatch(name):
        raise ValueError(
            f"Invalid temp table name: {name!r}. "
            "Temp table names must start with '#' or '##'."
        )


def quote_identifier(identifier: str) -> str:
    """
    Safely bracket-quote a SQL Server identifier after validation.

    Args:
        identifier: The identifier to quote

    Returns:
        Quoted identifier, e.g. ``[Description]``

    Raises:
        ValueError: If the identifier is invalid
    """
    validate_identifier(identifier)
    return f"[{identifier}]"


def quote_temp_table(name: str) -> str:
    """Bracket-quote a validated temp table name."""
    validate_temp_table(name)
    return f"[{name}]"


def quote_schema_table(schema: str, table: str) -> str:
    """
    Safely quote a schema-qualified table name.

    Args:
        schema: Schema name (e.g. "dbo")
        table: Table name

    Returns:
        Quoted name, e.g. ``[dbo].[Books]``

    Raises:
        ValueError: If either part is invalid
    """
    return f"{quote_identifier(schema)}.{quote_identifier(table)}"


def validate_integer_param(value: int, param_name: str, min_value: int = 0) -> None:
    """
    Validate an integer parameter for SQL queries.

    Args:
        value: The value to validate
        param_name: Name of the parameter (for error messages)
        min_value: Minimum allowed value (default 0)

    Raises:
        ValueError: If the value is not a valid integer or below minimum
    """
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(
            f"Invalid {param_name}: {value!r}. Must be an integer."
        )

    if value < min_value:
        raise ValueError(
            f"Invalid {param_name}: {value}. Must be >= {min_value}."
        )
