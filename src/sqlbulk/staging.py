"""
Staging and reconciliation plan.

:class:`StagingPlan` holds the whole algorithm for one execution as a
generator of I/O steps (see :mod:`sqlbulk.steps`). Executors drive the
generator, sending back each step's result, so the blocking and async
modes share a single implementation.

Flow:

1. Optionally disable non-clustered indexes.
2. Fetch destination metadata, check identity configuration and coerce
   staged values.
3. Identity output requested: stage rows with correlation tokens, MERGE
   with an OUTPUT clause into an output table and read the pairs back.
4. Pure insert: one generated multi-row INSERT or a streamed transfer
   straight into the destination.
5. Otherwise: stage rows, MERGE, drop the staging table.
6. Rebuild disabled indexes, then write identity values back.
"""

import logging
import uuid
from collections.abc import Generator, Sequence
from enum import Enum
from typing import Any

from .config import BulkSettings, Column, OperationConfig, OperationKind
from .exceptions import IdentityConfigurationError
from .identity import correlations_from_rows, read_back_sql, write_back
from .materializer import StagingBuffer
from .schema import SchemaMetadata, build_output_ddl, build_schema_query, build_staging_ddl
from .statements import (
    OutputClause,
    build_delete_query,
    build_merge,
    disable_indexes,
    drop_temp_table,
    identity_insert,
    rebuild_indexes,
    with_row_count,
)
from .steps import Execute, Query, Step, Transfer
from .strategy import (
    TransferStrategy,
    bind_row,
    build_multi_row_insert,
    build_transfer_insert,
    parameters_per_row,
    select_strategy,
)
from .types import DEFAULT_TYPE_MAPPER, TypeMapper
from .utils.sql_safety import quote_temp_table

logger = logging.getLogger(__name__)


class ExecutionState(str, Enum):
    VALIDATED = "validated"
    SCHEMA_FETCHED = "schema_fetched"
    STAGED = "staged"
    RECONCILED = "reconciled"
    IDENTITY_WRITTEN_BACK = "identity_written_back"
    DONE = "done"
    FAILED = "failed"


def _affected(result: Sequence[Sequence[Any]]) -> int:
    if not result or result[0][0] is None:
        return 0
    return int(result[0][0])


class StagingPlan:
    """
    Step-yielding plan for one bulk operation execution.

    Args:
        config: Validated operation configuration
        rows: Caller rows (identity values are written back into them)
        columns: The fixed ColumnSet for this execution
        buffer: Materialized rows; None for delete queries
        settings: Process-wide defaults
        type_mapper: Type mapper used for placeholders and bindings
    """

    def __init__(
        self,
        config: OperationConfig,
        rows: Sequence[Any],
        columns: Sequence[Column],
        buffer: StagingBuffer | None,
        settings: BulkSettings | None = None,
        type_mapper: TypeMapper = DEFAULT_TYPE_MAPPER,
    ):
        self.config = config
        self.rows = rows
        self.columns = tuple(columns)
        self.buffer = buffer
        self.settings = settings or BulkSettings()
        self.type_mapper = type_mapper

        suffix = uuid.uuid4().hex[:12]
        self.staging_table = f"#sqlbulk_stage_{suffix}"
        self.output_table = f"#sqlbulk_output_{suffix}"

        self.state = ExecutionState.VALIDATED
        self.strategy: TransferStrategy | None = None
        self.metadata: SchemaMetadata | None = None
        self.created_tables: list[str] = []
        self.indexes_disabled = False
        self.identity_insert_enabled = False
        self.rows_affected = 0

    @property
    def batch_size(self) -> int:
        return self.config.copy_settings.batch_size or self.settings.batch_size

    @property
    def timeout(self) -> int:
        timeout = self.config.copy_settings.timeout
        return self.settings.timeout if timeout is None else timeout

    def steps(self) -> Generator[Step, Any, int]:
        """Run the plan; returns the affected-row count."""
        config = self.config
        correlations = None

        if config.disable_indexes:
            sql, params = disable_indexes(config.table)
            self.indexes_disabled = True
            yield Execute(sql, params, label="disable_indexes")

        if config.kind is OperationKind.DELETE_QUERY:
            self.rows_affected = yield from self._delete_query()
        else:
            yield from self._fetch_schema()
            if config.wants_identity_output:
                correlations = yield from self._reconcile_with_output()
            elif config.kind is OperationKind.INSERT:
                yield from self._insert_directly()
            else:
                yield from self._reconcile()

        if self.indexes_disabled:
            sql, params = rebuild_indexes(config.table)
            yield Execute(sql, params, label="rebuild_indexes")
            self.indexes_disabled = False

        if correlations is not None:
            write_back(
                self.rows,
                correlations,
                config.identity,
                table=str(config.table),
                rows_affected=self.rows_affected,
            )
            self.state = ExecutionState.IDENTITY_WRITTEN_BACK

        return self.rows_affected

    def cleanup_steps(self) -> list[Step]:
        """Best-effort statements undoing what a failed plan left behind."""
        steps: list[Step] = []
        if self.identity_insert_enabled:
            steps.append(Execute(identity_insert(self.config.table, False), label="cleanup"))
        for name in reversed(self.created_tables):
            steps.append(Execute(drop_temp_table(name), label="cleanup"))
        if self.indexes_disabled:
            sql, params = rebuild_indexes(self.config.table)
            steps.append(Execute(sql, params, label="cleanup"))
        return steps

    def _fetch_schema(self) -> Generator[Step, Any, None]:
        sql, params = build_schema_query(self.config.table)
        result = yield Query(sql, params, label="fetch_schema")
        self.metadata = SchemaMetadata.from_rows(self.config.table, result)
        self._check_identity()
        self.buffer.coerce(self.metadata)
        self.state = ExecutionState.SCHEMA_FETCHED

    def _catalog_identity(self) -> str | None:
        """Name of the staged column the catalog reports as identity."""
        identity = self.metadata.identity_column
        if identity is None:
            return None
        for name in self.buffer.data_columns:
            if name.casefold() == identity.name.casefold():
                return name
        return None

    def _check_identity(self) -> None:
        config = self.config
        staged_identity = self._catalog_identity()
        declared = config.identity

        if declared is not None and self.metadata.identity_column is None:
            logger.warning(
                f"Column {declared.name!r} is declared as identity but {config.table} "
                "has no identity column"
            )

        if staged_identity is None:
            return
        if declared is not None and declared.name.casefold() == staged_identity.casefold():
            return

        keep_identity = config.copy_settings.keep_identity
        updated = staged_identity in config.update_columns(self.columns)
        inserted = config.kind in (OperationKind.INSERT, OperationKind.UPSERT) and not keep_identity

        if (config.kind in (OperationKind.UPDATE, OperationKind.UPSERT) and updated) or inserted:
            raise IdentityConfigurationError(
                f"Column {staged_identity!r} is an identity column on {config.table}. "
                "Declare it with identity() so it is excluded from inserts and updates, "
                "or set keep_identity to insert explicit values.",
                table=str(config.table),
                column=staged_identity,
            )

    def _identity_name(self) -> str | None:
        if self.config.identity is not None:
            return self.config.identity.name
        return self._catalog_identity()

    def _insert_columns(self) -> tuple[list[str], bool]:
        """Columns the insert assigns, and whether IDENTITY_INSERT is needed."""
        identity = self._identity_name()
        columns = list(self.buffer.data_columns)
        if identity is None or identity not in columns:
            return columns, False
        if self.config.copy_settings.keep_identity:
            return columns, True
        columns.remove(identity)
        return columns, False

    def _update_columns(self) -> tuple[str, ...]:
        return self.config.update_columns(self.columns)

    def _choose_strategy(self, columns: Sequence[str]) -> TransferStrategy:
        tags = [self.buffer.tag(name) for name in columns]
        self.strategy = select_strategy(
            len(self.buffer),
            parameters_per_row(tags, self.type_mapper),
            self.settings.multi_row_threshold,
        )
        logger.debug(
            f"Selected {self.strategy.value} for {len(self.buffer)} rows into {self.config.table}"
        )
        return self.strategy

    def _insert_directly(self) -> Generator[Step, Any, None]:
        config = self.config
        columns, bracket = self._insert_columns()
        tags = [self.buffer.tag(name) for name in columns]
        rows = self.buffer.project(columns)
        table_lock = config.copy_settings.table_lock

        if self._choose_strategy(columns) is TransferStrategy.GENERATED_MULTI_ROW_INSERT:
            sql, params = build_multi_row_insert(
                config.table.quoted, columns, rows, tags, table_lock, self.type_mapper
            )
            batch = with_row_count(sql, config.table, identity_insert_on=bracket)
            result = yield Query(batch, params, label="multi_row_insert")
            self.rows_affected = _affected(result)
        else:
            if bracket:
                self.identity_insert_enabled = True
                yield Execute(identity_insert(config.table, True), label="identity_insert_on")
            sql = build_transfer_insert(config.table.quoted, columns, tags, table_lock, self.type_mapper)
            bound = [bind_row(row, tags, self.type_mapper) for row in rows]
            self.rows_affected = yield Transfer(sql, bound, self.batch_size, label="transfer_rows")
            if bracket:
                yield Execute(identity_insert(config.table, False), label="identity_insert_off")
                self.identity_insert_enabled = False

        self.state = ExecutionState.RECONCILED

    def _stage(self, correlated: bool) -> Generator[Step, Any, None]:
        columns = list(self.buffer.columns if correlated else self.buffer.data_columns)
        identity = self._identity_name()
        ddl = build_staging_ddl(
            self.staging_table,
            [name for name in columns if name in self.buffer.data_columns],
            self.metadata,
            correlated=correlated,
            nullable=[identity] if identity else (),
            type_mapper=self.type_mapper,
        )
        self.created_tables.append(self.staging_table)
        yield Execute(ddl, label="create_staging")

        tags = [self.buffer.tag(name) for name in columns]
        rows = self.buffer.project(columns)
        target = quote_temp_table(self.staging_table)

        if self._choose_strategy(columns) is TransferStrategy.GENERATED_MULTI_ROW_INSERT:
            sql, params = build_multi_row_insert(target, columns, rows, tags, type_mapper=self.type_mapper)
            yield Execute(sql, params, label="stage_rows")
        else:
            sql = build_transfer_insert(target, columns, tags, type_mapper=self.type_mapper)
            bound = [bind_row(row, tags, self.type_mapper) for row in rows]
            yield Transfer(sql, bound, self.batch_size, label="stage_rows")

        self.state = ExecutionState.STAGED

    def _merge(self, output: OutputClause | None) -> Generator[Step, Any, None]:
        config = self.config
        insert_columns, bracket = self._insert_columns()
        sql, params = build_merge(
            config.kind,
            config.table,
            self.staging_table,
            insert_columns=insert_columns,
            update_columns=self._update_columns(),
            match_key=config.match_key,
            update_predicate=config.update_predicate,
            delete_predicate=config.delete_predicate,
            delete_when_not_matched=config.delete_when_not_matched,
            output=output,
        )
        bracket = bracket and config.kind in (OperationKind.INSERT, OperationKind.UPSERT)
        batch = with_row_count(
            sql,
            config.table,
            identity_insert_on=bracket,
            drop_after=[self.staging_table],
        )
        result = yield Query(batch, params, label="reconcile")
        self.created_tables.remove(self.staging_table)
        self.rows_affected = _affected(result)
        self.state = ExecutionState.RECONCILED

    def _reconcile(self) -> Generator[Step, Any, None]:
        yield from self._stage(correlated=False)
        yield from self._merge(output=None)

    def _reconcile_with_output(self) -> Generator[Step, Any, list]:
        identity = self.config.identity
        identity_metadata = self.metadata.require(identity.name)

        yield from self._stage(correlated=True)
        self.created_tables.append(self.output_table)
        yield Execute(
            build_output_ddl(self.output_table, identity_metadata, self.type_mapper),
            label="create_output",
        )

        output = OutputClause(
            output_table=self.output_table,
            identity_column=identity.name,
            deleted=self.config.kind is OperationKind.DELETE,
        )
        yield from self._merge(output)

        result = yield Query(read_back_sql(self.output_table, identity.name), label="read_identity")
        yield Execute(drop_temp_table(self.output_table), label="drop_output")
        self.created_tables.remove(self.output_table)
        return correlations_from_rows(result)

    def _delete_query(self) -> Generator[Step, Any, int]:
        config = self.config
        batch_size = config.delete_batch_size
        total = 0
        while True:
            sql, params = build_delete_query(config.table, config.delete_predicate, batch_size)
            result = yield Query(with_row_count(sql), params, label="delete_query")
            deleted = _affected(result)
            total += deleted
            if batch_size is None or deleted < batch_size:
                break
        self.state = ExecutionState.RECONCILED
        return total

