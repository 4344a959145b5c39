"""
Operation configuration.

An :class:`OperationConfig` is an immutable value describing one bulk
operation. It is validated exactly once, when it is constructed, usually
through the :class:`BulkOperation` builder::

    config = (
        BulkOperation("dbo.Books")
        .columns("isbn", "title", "price")
        .match_on("isbn")
        .identity("id", ColumnDirection.INPUT_OUTPUT)
        .update_when(col("price") > 10)
        .upsert()
    )
"""

import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any

from .accessors import discover_fields
from .exceptions import ConfigurationError
from .predicates import PredicateFragment, PredicateTag, combine, compile_predicate
from .tables import TableName, parse_table_name
from .types import DEFAULT_TYPE_MAPPER, TypeMapper
from .utils.sql_safety import validate_identifier, validate_integer_param

logger = logging.getLogger(__name__)

# Correlation column appended to staging tables for identity round-trip
CORRELATION_COLUMN = "__bulk_row_id"


class OperationKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    UPSERT = "upsert"
    DELETE = "delete"
    DELETE_QUERY = "delete_query"


class ColumnDirection(str, Enum):
    """Identity column direction: supplied only, or also written back."""

    INPUT = "input"
    INPUT_OUTPUT = "input_output"


@dataclass(frozen=True)
class Column:
    """A destination column and the row field it is read from."""

    name: str
    source: str


@dataclass(frozen=True)
class IdentityColumn:
    name: str
    source: str
    direction: ColumnDirection = ColumnDirection.INPUT

    @property
    def output(self) -> bool:
        return self.direction is ColumnDirection.INPUT_OUTPUT


@dataclass(frozen=True)
class BulkCopySettings:
    """
    Per-operation transfer options.

    Attributes:
        batch_size: Rows per transfer round trip (None uses BulkSettings)
        timeout: Statement timeout in seconds (None uses BulkSettings)
        keep_identity: Insert caller-supplied identity values
        table_lock: Take a table lock (TABLOCK) while inserting
    """

    batch_size: int | None = None
    timeout: int | None = None
    keep_identity: bool = False
    table_lock: bool = False

    def __post_init__(self):
        try:
            if self.batch_size is not None:
                validate_integer_param(self.batch_size, "batch_size", min_value=1)
            if self.timeout is not None:
                validate_integer_param(self.timeout, "timeout", min_value=0)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e


@dataclass(frozen=True)
class BulkSettings:
    """
    Process-wide defaults, usually read from the environment.

    Attributes:
        batch_size: Rows per transfer round trip
        timeout: Statement timeout in seconds (0 waits indefinitely)
        multi_row_threshold: Largest row count sent as one generated
            multi-row INSERT instead of the streamed transfer channel
    """

    batch_size: int = 5000
    timeout: int = 600
    multi_row_threshold: int = 10

    def __post_init__(self):
        try:
            validate_integer_param(self.batch_size, "batch_size", min_value=1)
            validate_integer_param(self.timeout, "timeout", min_value=0)
            validate_integer_param(self.multi_row_threshold, "multi_row_threshold", min_value=0)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    @classmethod
    def from_env(cls) -> "BulkSettings":
        """
        Load settings from environment variables

        Environment variables:
            SQLBULK_BATCH_SIZE: Rows per transfer round trip (default: 5000)
            SQLBULK_TIMEOUT: Statement timeout in seconds (default: 600)
            SQLBULK_MULTI_ROW_THRESHOLD: Multi-row INSERT cut-over (default: 10)
        """
        try:
            return cls(
                batch_size=int(os.getenv("SQLBULK_BATCH_SIZE", "5000")),
                timeout=int(os.getenv("SQLBULK_TIMEOUT", "600")),
                multi_row_threshold=int(os.getenv("SQLBULK_MULTI_ROW_THRESHOLD", "10")),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid bulk settings in environment: {e}") from e


_MATCHED_KINDS = {OperationKind.UPDATE, OperationKind.UPSERT, OperationKind.DELETE}
_UPDATE_KINDS = {OperationKind.UPDATE, OperationKind.UPSERT}
_DELETE_KINDS = {OperationKind.UPSERT, OperationKind.DELETE, OperationKind.DELETE_QUERY}


def _default_column_name(source: str) -> str:
    return source.replace(".", "_")


@dataclass(frozen=True)
class OperationConfig:
    """
    Immutable, validated description of one bulk operation.

    Construct through :class:`BulkOperation`; validation runs once in
    ``__post_init__`` and raises ConfigurationError before any I/O.
    """

    kind: OperationKind
    table: TableName
    columns: tuple[Column, ...] = ()
    all_columns: bool = False
    column_mappings: Mapping[str, str] = field(default_factory=dict)
    match_key: tuple[str, ...] = ()
    identity: IdentityColumn | None = None
    excluded_from_update: frozenset[str] = frozenset()
    exclude_all_from_update: bool = False
    update_when: tuple[Any, ...] = ()
    delete_when: tuple[Any, ...] = ()
    delete_when_not_matched: bool = False
    copy_settings: BulkCopySettings = field(default_factory=BulkCopySettings)
    disable_indexes: bool = False
    delete_batch_size: int | None = None
    type_mapper: TypeMapper = field(default=DEFAULT_TYPE_MAPPER, repr=False, compare=False)
    update_predicate: PredicateFragment | None = field(init=False, default=None)
    delete_predicate: PredicateFragment | None = field(init=False, default=None)

    def __post_init__(self):
        object.__setattr__(self, "column_mappings", MappingProxyType(dict(self.column_mappings)))
        self._validate()

        column_map = self.field_map()
        object.__setattr__(self, "update_predicate", combine([
            compile_predicate(expr, PredicateTag.UPDATE_WHEN,
                              column_map=column_map, type_mapper=self.type_mapper)
            for expr in self.update_when
        ]))
        object.__setattr__(self, "delete_predicate", combine([
            compile_predicate(expr, PredicateTag.DELETE_WHEN,
                              column_map=column_map, type_mapper=self.type_mapper)
            for expr in self.delete_when
        ]))

    def _error(self, message: str) -> ConfigurationError:
        return ConfigurationError(message, table=str(self.table))

    def _validate(self) -> None:
        kind = self.kind

        if kind is OperationKind.DELETE_QUERY:
            if self.columns or self.all_columns or self.match_key or self.identity:
                raise self._error("A delete query takes no columns, match key or identity column")
        elif not self.columns and not self.all_columns:
            raise self._error("At least one column must be configured")

        names = [column.name for column in self.columns]
        for name in names + list(self.match_key) + list(self.excluded_from_update):
            try:
                validate_identifier(name)
            except ValueError as e:
                raise self._error(str(e)) from e
        if CORRELATION_COLUMN in names:
            raise self._error(f"Column name {CORRELATION_COLUMN!r} is reserved")

        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise self._error(f"Duplicate destination column(s): {', '.join(duplicates)}")

        if kind in _MATCHED_KINDS and not self.match_key:
            raise self._error(
                f"{kind.value} requires at least one match column (match_on)"
            )
        if kind in (OperationKind.INSERT, OperationKind.DELETE_QUERY) and self.match_key:
            raise self._error(f"{kind.value} does not use a match key")

        if self.update_when and kind not in _UPDATE_KINDS:
            raise self._error("update_when is only valid for update and upsert")
        if self.delete_when and kind not in _DELETE_KINDS:
            raise self._error("delete_when is only valid for upsert, delete and delete queries")
        if self.delete_when_not_matched and kind is not OperationKind.UPSERT:
            raise self._error("delete_when_not_matched is only valid for upsert")
        if (self.excluded_from_update or self.exclude_all_from_update) and kind not in _UPDATE_KINDS:
            raise self._error("Columns can only be excluded from update for update and upsert")
        if kind is OperationKind.UPDATE and self.exclude_all_from_update:
            raise self._error("An update cannot exclude every column from the update")

        if self.delete_batch_size is not None:
            if kind is not OperationKind.DELETE_QUERY:
                raise self._error("A batch quantity is only valid for delete queries")
            try:
                validate_integer_param(self.delete_batch_size, "batch quantity", min_value=1)
            except ValueError as e:
                raise self._error(str(e)) from e

        if self.identity is not None:
            try:
                validate_identifier(self.identity.name)
            except ValueError as e:
                raise self._error(str(e)) from e

        if not self.all_columns:
            self._validate_column_set(self.columns)

    def _validate_column_set(self, columns: Sequence[Column]) -> None:
        names = {column.name for column in columns}

        missing = [name for name in self.match_key if name not in names]
        if missing:
            raise self._error(f"Match column(s) not in the column set: {', '.join(missing)}")

        missing = sorted(name for name in self.excluded_from_update if name not in names)
        if missing:
            raise self._error(
                f"Column(s) excluded from update are not in the column set: {', '.join(missing)}"
            )

        if self.kind is OperationKind.UPDATE and not self.update_columns(columns):
            raise self._error("No columns left to update after exclusions")

    def field_map(self) -> Mapping[str, str]:
        """Row field name to destination column name."""
        mapping = {column.source: column.name for column in self.columns}
        mapping.update(self.column_mappings)
        if self.identity is not None:
            mapping.setdefault(self.identity.source, self.identity.name)
        return mapping

    def resolve_columns(self, rows: Sequence[Any]) -> tuple[Column, ...]:
        """
        The fixed ColumnSet for this execution.

        In all-columns mode the fields of the first row are used, renamed
        through the custom column mappings.
        """
        if not self.all_columns:
            return self.columns

        mappings = self.column_mappings
        columns = [
            Column(name=mappings.get(source, _default_column_name(source)), source=source)
            for source in discover_fields(rows[0])
        ]
        if self.identity is not None and self.identity.name not in {c.name for c in columns}:
            columns.append(Column(name=self.identity.name, source=self.identity.source))

        names = [column.name for column in columns]
        for name in names:
            try:
                validate_identifier(name)
            except ValueError as e:
                raise self._error(str(e)) from e
        if CORRELATION_COLUMN in names:
            raise self._error(f"Column name {CORRELATION_COLUMN!r} is reserved")
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise self._error(f"Duplicate destination column(s): {', '.join(duplicates)}")

        self._validate_column_set(columns)
        return tuple(columns)

    def update_columns(self, columns: Sequence[Column]) -> tuple[str, ...]:
        """Columns assigned by the matched-update branch."""
        if self.exclude_all_from_update:
            return ()
        skipped = set(self.excluded_from_update) | set(self.match_key)
        if self.identity is not None:
            skipped.add(self.identity.name)
        return tuple(column.name for column in columns if column.name not in skipped)

    @property
    def wants_identity_output(self) -> bool:
        return self.identity is not None and self.identity.output

    def with_type_mapper(self, type_mapper: TypeMapper) -> "OperationConfig":
        """Copy of this configuration with predicates recompiled for ``type_mapper``."""
        if type_mapper is self.type_mapper:
            return self
        return replace(self, type_mapper=type_mapper)


class BulkOperation:
    """
    Builder for :class:`OperationConfig`.

    Methods return the builder so calls can be chained; a terminal method
    (``insert()``, ``update()``, ``upsert()``, ``delete()`` or
    ``delete_query()``) produces the validated configuration.

    Predicate literals are checked against ``type_mapper`` when the
    configuration is built; pass the same mapper the executor uses when
    predicates compare against custom value types.
    """

    def __init__(
        self,
        table: str,
        schema: str | None = None,
        type_mapper: TypeMapper = DEFAULT_TYPE_MAPPER,
    ):
        self._table = table
        self._schema = schema
        self._type_mapper = type_mapper
        self._columns: list[Column] = []
        self._all_columns = False
        self._mappings: dict[str, str] = {}
        self._match_key: list[str] = []
        self._identity: tuple[str, ColumnDirection] | None = None
        self._excluded: list[str] = []
        self._exclude_all = False
        self._update_when: list[Any] = []
        self._delete_when: list[Any] = []
        self._delete_when_not_matched = False
        self._copy_settings = BulkCopySettings()
        self._disable_indexes = False
        self._delete_batch_size: int | None = None

    def columns(self, *sources: str) -> "BulkOperation":
        """Add columns read from the named row fields."""
        for source in sources:
            self._columns.append(Column(name=_default_column_name(source), source=source))
        return self

    def column(self, source: str, name: str | None = None) -> "BulkOperation":
        """Add one column, optionally under a different destination name."""
        self._columns.append(Column(name=name or _default_column_name(source), source=source))
        return self

    def all_columns(self) -> "BulkOperation":
        """Use every field of the row type as a column."""
        self._all_columns = True
        return self

    def map_column(self, source: str, name: str) -> "BulkOperation":
        """Store the row field ``source`` in destination column ``name``."""
        self._mappings[source] = name
        return self

    def match_on(self, *names: str) -> "BulkOperation":
        self._match_key.extend(names)
        return self

    def identity(
        self,
        name: str,
        direction: ColumnDirection = ColumnDirection.INPUT,
    ) -> "BulkOperation":
        self._identity = (name, direction)
        return self

    def exclude_from_update(self, *names: str) -> "BulkOperation":
        self._excluded.extend(names)
        return self

    def exclude_all_from_update(self) -> "BulkOperation":
        self._exclude_all = True
        return self

    def update_when(self, predicate) -> "BulkOperation":
        self._update_when.append(predicate)
        return self

    def delete_when(self, predicate) -> "BulkOperation":
        self._delete_when.append(predicate)
        return self

    def delete_when_not_matched(self, enabled: bool = True) -> "BulkOperation":
        """Delete destination rows absent from the source (upsert only)."""
        self._delete_when_not_matched = enabled
        return self

    def with_settings(self, settings: BulkCopySettings) -> "BulkOperation":
        self._copy_settings = settings
        return self

    def disable_indexes(self, enabled: bool = True) -> "BulkOperation":
        """Disable non-clustered indexes for the duration of the operation."""
        self._disable_indexes = enabled
        return self

    def batch_quantity(self, quantity: int) -> "BulkOperation":
        """Delete in batches of ``quantity`` rows (delete queries only)."""
        self._delete_batch_size = quantity
        return self

    def _column_name(self, source: str) -> str:
        for column in self._columns:
            if column.source == source:
                return column.name
        return self._mappings.get(source, _default_column_name(source))

    def build(self, kind: OperationKind) -> OperationConfig:
        """
        Build the validated configuration.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        table = parse_table_name(self._table, self._schema)

        columns = [
            Column(name=self._mappings.get(c.source, c.name), source=c.source)
            for c in self._columns
        ]

        identity = None
        if self._identity is not None:
            source, direction = self._identity
            identity = IdentityColumn(
                name=self._column_name(source),
                source=source,
                direction=direction,
            )
            if not self._all_columns and identity.name not in {c.name for c in columns}:
                columns.append(Column(name=identity.name, source=source))

        config = OperationConfig(
            kind=kind,
            table=table,
            columns=tuple(columns),
            all_columns=self._all_columns,
            column_mappings=self._mappings,
            match_key=tuple(self._column_name(name) for name in self._match_key),
            identity=identity,
            excluded_from_update=frozenset(self._column_name(n) for n in self._excluded),
            exclude_all_from_update=self._exclude_all,
            update_when=tuple(self._update_when),
            delete_when=tuple(self._delete_when),
            delete_when_not_matched=self._delete_when_not_matched,
            copy_settings=self._copy_settings,
            disable_indexes=self._disable_indexes,
            delete_batch_size=self._delete_batch_size,
            type_mapper=self._type_mapper,
        )
        logger.debug(f"Built {kind.value} configuration for {table}")
        return config

    def insert(self) -> OperationConfig:
        return self.build(OperationKind.INSERT)

    def update(self) -> OperationConfig:
        return self.build(OperationKind.UPDATE)

    def upsert(self) -> OperationConfig:
        return self.build(OperationKind.UPSERT)

    def delete(self) -> OperationConfig:
        return self.build(OperationKind.DELETE)

    def delete_query(self) -> OperationConfig:
        return self.build(OperationKind.DELETE_QUERY)
