"""
Unit tests for operation configuration and settings.
"""

from dataclasses import dataclass
from typing import Optional

import pytest

from sqlbulk.config import (
    CORRELATION_COLUMN,
    BulkCopySettings,
    BulkOperation,
    BulkSettings,
    Column,
    ColumnDirection,
    OperationKind,
)
from sqlbulk.exceptions import ConfigurationError
from sqlbulk.predicates import PredicateTag, col
from sqlbulk.tables import TableName


@dataclass
class Book:
    ISBN: str
    Title: str
    Price: float
    Id: Optional[int] = None


class TestBulkSettings:
    """Test BulkSettings and BulkCopySettings"""

    def test_defaults(self):
        settings = BulkSettings()

        assert settings.batch_size == 5000
        assert settings.timeout == 600
        assert settings.multi_row_threshold == 10

    def test_from_env_defaults(self):
        assert BulkSettings.from_env() == BulkSettings()

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("SQLBULK_BATCH_SIZE", "250")
        monkeypatch.setenv("SQLBULK_TIMEOUT", "0")
        monkeypatch.setenv("SQLBULK_MULTI_ROW_THRESHOLD", "0")

        settings = BulkSettings.from_env()

        assert settings == BulkSettings(batch_size=250, timeout=0, multi_row_threshold=0)

    def test_from_env_invalid_number(self, monkeypatch):
        monkeypatch.setenv("SQLBULK_BATCH_SIZE", "lots")

        with pytest.raises(ConfigurationError, match="Invalid bulk settings"):
            BulkSettings.from_env()

    def test_invalid_values(self):
        with pytest.raises(ConfigurationError):
            BulkSettings(batch_size=0)
        with pytest.raises(ConfigurationError):
            BulkCopySettings(timeout=-1)

    def test_copy_settings_defaults(self):
        settings = BulkCopySettings()

        assert settings.batch_size is None
        assert settings.timeout is None
        assert not settings.keep_identity
        assert not settings.table_lock


class TestBuilder:
    """Test BulkOperation"""

    def test_insert(self):
        config = BulkOperation("Books").columns("ISBN", "Title").insert()

        assert config.kind is OperationKind.INSERT
        assert config.table == TableName("dbo", "Books")
        assert config.columns == (Column("ISBN", "ISBN"), Column("Title", "Title"))
        assert config.update_predicate is None

    def test_schema_argument(self):
        config = BulkOperation("Books", schema="sales").columns("ISBN").insert()

        assert config.table == TableName("sales", "Books")

    def test_column_renames_and_dotted_sources(self):
        config = (
            BulkOperation("dbo.Books")
            .column("isbn", "ISBN")
            .columns("publisher.name")
            .insert()
        )

        assert config.columns == (Column("ISBN", "isbn"), Column("publisher_name", "publisher.name"))

    def test_map_column_renames_configured_column(self):
        config = BulkOperation("Books").columns("isbn").map_column("isbn", "ISBN").insert()

        assert config.columns == (Column("ISBN", "isbn"),)

    def test_identity_is_added_to_columns(self):
        config = (
            BulkOperation("Books")
            .columns("ISBN")
            .identity("Id", ColumnDirection.INPUT_OUTPUT)
            .insert()
        )

        assert [c.name for c in config.columns] == ["ISBN", "Id"]
        assert config.identity.output
        assert config.wants_identity_output

    def test_input_identity_is_not_written_back(self):
        config = BulkOperation("Books").columns("ISBN").identity("Id").insert()

        assert not config.wants_identity_output

    def test_update_columns_skip_match_key_identity_and_exclusions(self):
        config = (
            BulkOperation("Books")
            .columns("ISBN", "Title", "Price")
            .identity("Id")
            .match_on("ISBN")
            .exclude_from_update("Price")
            .upsert()
        )

        assert config.update_columns(config.columns) == ("Title",)

    def test_exclude_all_from_update(self):
        config = (
            BulkOperation("Books")
            .columns("ISBN", "Title")
            .match_on("ISBN")
            .exclude_all_from_update()
            .upsert()
        )

        assert config.update_columns(config.columns) == ()

    def test_predicates_compile_against_destination_names(self):
        config = (
            BulkOperation("Books")
            .column("price", "Price")
            .column("isbn", "ISBN")
            .match_on("isbn")
            .update_when(col("price") > 10)
            .update_when(col("Title").is_null())
            .update()
        )

        assert config.match_key == ("ISBN",)
        assert config.update_predicate.sql == (
            "([Target].[Price] > ?) AND ([Target].[Title] IS NULL)"
        )
        assert config.update_predicate.params == (10,)
        assert config.update_predicate.tag is PredicateTag.UPDATE_WHEN

    def test_delete_query(self):
        config = (
            BulkOperation("Books")
            .delete_when(col("WarehouseId") == 1)
            .batch_quantity(500)
            .delete_query()
        )

        assert config.kind is OperationKind.DELETE_QUERY
        assert config.delete_batch_size == 500
        assert config.delete_predicate.sql == "[Target].[WarehouseId] = ?"

    def test_configuration_is_immutable(self):
        config = BulkOperation("Books").columns("ISBN").insert()

        with pytest.raises(AttributeError):
            config.kind = OperationKind.DELETE  # type: ignore[misc]
        with pytest.raises(TypeError):
            config.column_mappings["a"] = "b"  # type: ignore[index]


class TestValidation:
    """Test configuration validation"""

    @pytest.mark.parametrize("build, message", [
        (lambda: BulkOperation("Books").insert(), "At least one column"),
        (lambda: BulkOperation("Books").columns("ISBN").update(), "requires at least one match column"),
        (lambda: BulkOperation("Books").columns("ISBN").delete(), "requires at least one match column"),
        (lambda: BulkOperation("Books").columns("ISBN").match_on("ISBN").insert(), "does not use a match key"),
        (lambda: BulkOperation("Books").columns("ISBN").match_on("Title").upsert(), "Match column(s) not in the column set"),
        (lambda: BulkOperation("Books").columns("ISBN", "ISBN").insert(), "Duplicate destination column"),
        (lambda: BulkOperation("Books").columns(CORRELATION_COLUMN).insert(), "is reserved"),
        (lambda: BulkOperation("Books").columns("Bad Name").insert(), "Invalid SQL identifier"),
        (
            lambda: BulkOperation("Books").columns("ISBN").update_when(col("A") == 1).insert(),
            "update_when is only valid",
        ),
        (
            lambda: BulkOperation("Books").columns("ISBN", "A").match_on("ISBN").delete_when(col("A") == 1).update(),
            "delete_when is only valid",
        ),
        (
            lambda: BulkOperation("Books").columns("ISBN", "A").match_on("ISBN").delete_when_not_matched().update(),
            "delete_when_not_matched is only valid for upsert",
        ),
        (
            lambda: BulkOperation("Books").columns("ISBN").exclude_from_update("ISBN").insert(),
            "excluded from update",
        ),
        (
            lambda: BulkOperation("Books").columns("ISBN", "A").match_on("ISBN").exclude_all_from_update().update(),
            "cannot exclude every column",
        ),
        (
            lambda: BulkOperation("Books").columns("ISBN", "A").match_on("ISBN").exclude_from_update("B").upsert(),
            "are not in the column set",
        ),
        (
            lambda: BulkOperation("Books").columns("ISBN").match_on("ISBN").update(),
            "No columns left to update",
        ),
        (lambda: BulkOperation("Books").columns("ISBN").batch_quantity(10).insert(), "batch quantity"),
        (lambda: BulkOperation("Books").batch_quantity(0).delete_query(), "batch quantity"),
        (lambda: BulkOperation("Books").columns("ISBN").delete_query(), "takes no columns"),
        (lambda: BulkOperation("a.b.Books").columns("ISBN").insert(), "more than one period"),
    ])
    def test_invalid_configuration(self, build, message):
        with pytest.raises(ConfigurationError) as exc_info:
            build()

        assert message.lower() in str(exc_info.value).lower()

    def test_error_carries_table(self):
        with pytest.raises(ConfigurationError) as exc_info:
            BulkOperation("sales.Books").insert()

        assert exc_info.value.table == "sales.Books"


class TestAllColumns:
    """Test all-columns mode"""

    def test_fields_of_first_row(self):
        config = BulkOperation("Books").all_columns().insert()

        columns = config.resolve_columns([Book("1", "T", 1.0)])

        assert [c.name for c in columns] == ["ISBN", "Title", "Price", "Id"]

    def test_custom_mapping(self):
        config = BulkOperation("Books").all_columns().map_column("Title", "BookTitle").insert()

        columns = config.resolve_columns([Book("1", "T", 1.0)])

        assert Column("BookTitle", "Title") in columns

    def test_match_key_checked_against_resolved_columns(self):
        config = BulkOperation("Books").all_columns().match_on("Author").upsert()

        with pytest.raises(ConfigurationError, match="Match column"):
            config.resolve_columns([Book("1", "T", 1.0)])

    def test_identity_appended_when_missing(self):
        config = BulkOperation("Books").all_columns().identity("BookId").insert()

        columns = config.resolve_columns([{"ISBN": "1"}])

        assert [c.name for c in columns] == ["ISBN", "BookId"]

    def test_explicit_columns_returned_as_configured(self):
        config = BulkOperation("Books").columns("ISBN").insert()

        assert config.resolve_columns([{"ISBN": "1"}]) is config.columns
