"""
SQL statement builders for staging and reconciliation.

Every builder returns plain statement text plus bound parameters; nothing
here touches a connection. Identifiers are validated and bracket quoted,
values are always ``?`` parameters.
"""

from collections.abc import Sequence
from dataclasses import dataclass

from .config import CORRELATION_COLUMN, OperationKind
from .predicates import PredicateFragment
from .tables import TableName
from .utils.sql_safety import quote_identifier, quote_temp_table, validate_temp_table

TARGET_ALIAS = "[Target]"
SOURCE_ALIAS = "[Source]"

_INDEX_STATEMENT = """
DECLARE @sql NVARCHAR(MAX) = N'';
SELECT @sql = @sql + N'ALTER INDEX ' + QUOTENAME(i.name) + N' ON '
    + QUOTENAME(s.name) + N'.' + QUOTENAME(o.name) + N' {action};'
FROM sys.indexes i
JOIN sys.objects o ON i.object_id = o.object_id
JOIN sys.schemas s ON o.schema_id = s.schema_id
WHERE i.type_desc = 'NONCLUSTERED'
    AND o.type_desc = 'USER_TABLE'
    AND s.name = ?
    AND o.name = ?{disabled_filter};
EXEC sp_executesql @sql;
""".strip()


@dataclass(frozen=True)
class OutputClause:
    """Identity output captured by the reconciliation statement."""

    output_table: str
    identity_column: str
    deleted: bool = False


def match_condition(match_key: Sequence[str]) -> str:
    """Null-safe equality join over the match key."""
    conditions = []
    for name in match_key:
        column = quote_identifier(name)
        target = f"{TARGET_ALIAS}.{column}"
        source = f"{SOURCE_ALIAS}.{column}"
        conditions.append(
            f"({target} = {source} OR ({target} IS NULL AND {source} IS NULL))"
        )
    return " AND ".join(conditions)


def identity_insert(table: TableName, enabled: bool) -> str:
    return f"SET IDENTITY_INSERT {table.quoted} {'ON' if enabled else 'OFF'};"


def drop_temp_table(name: str) -> str:
    """Drop a temp table if it still exists."""
    validate_temp_table(name)
    return f"IF OBJECT_ID('tempdb..{name}') IS NOT NULL DROP TABLE {quote_temp_table(name)};"


def disable_indexes(table: TableName) -> tuple[str, tuple]:
    """Disable every non-clustered index on ``table``."""
    sql = _INDEX_STATEMENT.format(action="DISABLE", disabled_filter="")
    return sql, (table.schema, table.name)


def rebuild_indexes(table: TableName) -> tuple[str, tuple]:
    """Rebuild the disabled non-clustered indexes on ``table``."""
    sql = _INDEX_STATEMENT.format(
        action="REBUILD",
        disabled_filter="\n    AND i.is_disabled = 1",
    )
    return sql, (table.schema, table.name)


def build_merge(
    kind: OperationKind,
    table: TableName,
    staging_table: str,
    insert_columns: Sequence[str],
    update_columns: Sequence[str],
    match_key: Sequence[str],
    update_predicate: PredicateFragment | None = None,
    delete_predicate: PredicateFragment | None = None,
    delete_when_not_matched: bool = False,
    output: OutputClause | None = None,
) -> tuple[str, tuple]:
    """
    Build the reconciliation MERGE for one operation kind.

    Clause presence:

    - insert: not-matched-by-target insert; the join is ``1 = 0`` so every
      staged row inserts
    - update: matched update, gated by the update-when predicate
    - upsert: matched update plus not-matched insert; with delete-when
      predicates or ``delete_when_not_matched`` also a not-matched-by-source
      delete
    - delete: matched delete, gated by the delete-when predicate

    Returns:
        (sql, params) with parameters in statement text order
    """
    params: list = []
    lines = [
        f"MERGE INTO {table.quoted} WITH (HOLDLOCK) AS {TARGET_ALIAS}",
        f"USING {quote_temp_table(staging_table)} AS {SOURCE_ALIAS}",
    ]

    if kind is OperationKind.INSERT:
        lines.append("ON 1 = 0")
    else:
        lines.append(f"ON {match_condition(match_key)}")

    if kind in (OperationKind.UPDATE, OperationKind.UPSERT) and update_columns:
        condition = ""
        if update_predicate is not None:
            condition = f" AND ({update_predicate.sql})"
            params.extend(update_predicate.params)
        assignments = ", ".join(
            f"{TARGET_ALIAS}.{quote_identifier(name)} = {SOURCE_ALIAS}.{quote_identifier(name)}"
            for name in update_columns
        )
        lines.append(f"WHEN MATCHED{condition} THEN")
        lines.append(f"    UPDATE SET {assignments}")

    if kind is OperationKind.DELETE:
        condition = ""
        if delete_predicate is not None:
            condition = f" AND ({delete_predicate.sql})"
            params.extend(delete_predicate.params)
        lines.append(f"WHEN MATCHED{condition} THEN")
        lines.append("    DELETE")

    if kind in (OperationKind.INSERT, OperationKind.UPSERT):
        column_list = ", ".join(quote_identifier(name) for name in insert_columns)
        value_list = ", ".join(
            f"{SOURCE_ALIAS}.{quote_identifier(name)}" for name in insert_columns
        )
        lines.append("WHEN NOT MATCHED BY TARGET THEN")
        lines.append(f"    INSERT ({column_list}) VALUES ({value_list})")

    if kind is OperationKind.UPSERT and (delete_predicate is not None or delete_when_not_matched):
        condition = ""
        if delete_predicate is not None:
            condition = f" AND ({delete_predicate.sql})"
            params.extend(delete_predicate.params)
        lines.append(f"WHEN NOT MATCHED BY SOURCE{condition} THEN")
        lines.append("    DELETE")

    if output is not None:
        identity = quote_identifier(output.identity_column)
        source = "DELETED" if output.deleted else "INSERTED"
        token = quote_identifier(CORRELATION_COLUMN)
        lines.append(
            f"OUTPUT {SOURCE_ALIAS}.{token}, {source}.{identity} "
            f"INTO {quote_temp_table(output.output_table)} ({token}, {identity})"
        )

    return "\n".join(lines) + ";", tuple(params)


def with_row_count(
    statement: str,
    table: TableName | None = None,
    identity_insert_on: bool = False,
    drop_after: Sequence[str] = (),
) -> str:
    """
    Wrap a mutating statement so the batch returns its affected row count.

    The batch runs with NOCOUNT on, optionally brackets the statement with
    IDENTITY_INSERT and drops the given temp tables, then selects the
    captured count as its only result set.
    """
    lines = ["SET NOCOUNT ON;", "DECLARE @affected INT;"]
    if identity_insert_on:
        lines.append(identity_insert(table, True))
    lines.append(statement)
    lines.append("SET @affected = @@ROWCOUNT;")
    if identity_insert_on:
        lines.append(identity_insert(table, False))
    for name in drop_after:
        lines.append(drop_temp_table(name))
    lines.append("SELECT @affected AS affected_rows;")
    return "\n".join(lines)


def build_delete_query(
    table: TableName,
    predicate: PredicateFragment | None = None,
    batch_size: int | None = None,
) -> tuple[str, tuple]:
    """
    DELETE against the destination, optionally filtered and batched.

    With ``batch_size`` the statement removes at most that many rows; the
    caller repeats it until fewer rows are affected.
    """
    params: list = []
    top = ""
    if batch_size is not None:
        top = " TOP (?)"
        params.append(batch_size)

    sql = f"DELETE{top} {TARGET_ALIAS} FROM {table.quoted} AS {TARGET_ALIAS}"
    if predicate is not None:
        sql += f"\nWHERE {predicate.sql}"
        params.extend(predicate.params)

    return sql + ";", tuple(params)

