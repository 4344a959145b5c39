"""
Unit tests for the staging plan, driven step by step without a database.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import pytest

from conftest import books_schema
from sqlbulk.config import BulkCopySettings, BulkOperation, ColumnDirection
from sqlbulk.exceptions import IdentityConfigurationError, WritebackError
from sqlbulk.predicates import col
from sqlbulk.staging import ExecutionState
from sqlbulk.steps import Execute, Query, Transfer
from sqlbulk.strategy import TransferStrategy


@dataclass
class Book:
    ISBN: str
    Title: str
    Id: Optional[int] = None


@dataclass(frozen=True)
class FrozenBook:
    ISBN: str
    Title: str
    Id: Optional[int] = None


def books(count, row_type=Book):
    return [row_type(ISBN=f"978{i:010d}", Title=f"Book {i}") for i in range(count)]


def default_answer(step):
    if step.label == "fetch_schema":
        return books_schema()
    if isinstance(step, Transfer):
        return len(step.rows)
    if isinstance(step, Query):
        return [] if step.label == "read_identity" else [(0,)]
    return 0


def run(plan, **answers):
    """Drive a plan to completion; answers map step labels to results."""
    generator = plan.steps()
    steps = []
    result = None
    try:
        while True:
            step = generator.send(result)
            steps.append(step)
            answer = answers.get(step.label, default_answer)
            result = answer(step) if callable(answer) else answer
    except StopIteration as done:
        return steps, done.value


def labels(steps):
    return [step.label for step in steps]


def advance(plan, until):
    """Drive a plan until the step labelled ``until`` has been answered."""
    generator = plan.steps()
    result = None
    while True:
        step = generator.send(result)
        result = default_answer(step)
        if step.label == until:
            generator.send(result)
            return generator


class TestInsertPlan:
    """Test insert without identity output"""

    def test_small_insert_uses_multi_row_statement(self, executor):
        config = BulkOperation("Books").columns("ISBN", "Title").insert()
        plan = executor.prepare(config, books(3))

        steps, affected = run(plan, multi_row_insert=[(3,)])

        assert labels(steps) == ["fetch_schema", "multi_row_insert"]
        insert = steps[1]
        assert isinstance(insert, Query)
        assert "INSERT INTO [dbo].[Books] ([ISBN], [Title])\nVALUES" in insert.sql
        assert insert.sql.endswith("SELECT @affected AS affected_rows;")
        assert insert.params[:2] == ("9780000000000", "Book 0")
        assert len(insert.params) == 6
        assert affected == 3
        assert plan.strategy is TransferStrategy.GENERATED_MULTI_ROW_INSERT
        assert plan.state is ExecutionState.RECONCILED

    def test_large_insert_streams_rows(self, executor):
        config = BulkOperation("Books").columns("ISBN", "Title").insert()
        plan = executor.prepare(config, books(11))

        steps, affected = run(plan)

        assert labels(steps) == ["fetch_schema", "transfer_rows"]
        transfer = steps[1]
        assert transfer.sql == "INSERT INTO [dbo].[Books] ([ISBN], [Title]) VALUES (?, ?);"
        assert len(transfer.rows) == 11
        assert transfer.batch_size == 100
        assert affected == 11
        assert plan.strategy is TransferStrategy.STREAMED_TRANSFER

    def test_copy_settings_override_batch_size_and_timeout(self, executor):
        config = (
            BulkOperation("Books")
            .columns("ISBN")
            .with_settings(BulkCopySettings(batch_size=7, timeout=0, table_lock=True))
            .insert()
        )
        plan = executor.prepare(config, books(20))

        steps, _ = run(plan)

        assert plan.timeout == 0
        assert steps[1].batch_size == 7
        assert "WITH (TABLOCK)" in steps[1].sql

    def test_declared_identity_is_left_to_the_server(self, executor):
        config = BulkOperation("Books").columns("ISBN").identity("Id").insert()
        plan = executor.prepare(config, books(2))

        steps, _ = run(plan)

        assert "[Id]" not in steps[1].sql

    def test_keep_identity_brackets_multi_row_insert(self, executor):
        config = (
            BulkOperation("Books")
            .columns("ISBN")
            .identity("Id")
            .with_settings(BulkCopySettings(keep_identity=True))
            .insert()
        )
        rows = [Book("1", "A", Id=50)]
        plan = executor.prepare(config, rows)

        steps, _ = run(plan)
        batch = steps[1].sql.splitlines()

        assert batch[2] == "SET IDENTITY_INSERT [dbo].[Books] ON;"
        assert "SET IDENTITY_INSERT [dbo].[Books] OFF;" in batch
        assert "[Id]" in steps[1].sql
        assert 50 in steps[1].params

    def test_keep_identity_brackets_streamed_transfer(self, executor):
        config = (
            BulkOperation("Books")
            .columns("ISBN")
            .identity("Id")
            .with_settings(BulkCopySettings(keep_identity=True))
            .insert()
        )
        plan = executor.prepare(config, books(20))

        steps, _ = run(plan)

        assert labels(steps) == [
            "fetch_schema", "identity_insert_on", "transfer_rows", "identity_insert_off"
        ]
        assert steps[1].sql == "SET IDENTITY_INSERT [dbo].[Books] ON;"
        assert not plan.identity_insert_enabled

    def test_undeclared_identity_column_rejected(self, executor):
        config = BulkOperation("Books").columns("Id", "ISBN").insert()
        plan = executor.prepare(config, books(2))

        with pytest.raises(IdentityConfigurationError) as exc_info:
            run(plan)

        assert exc_info.value.column == "Id"

    def test_undeclared_identity_allowed_with_keep_identity(self, executor):
        config = (
            BulkOperation("Books")
            .columns("Id", "ISBN")
            .with_settings(BulkCopySettings(keep_identity=True))
            .insert()
        )
        plan = executor.prepare(config, [Book("1", "A", Id=3)])

        steps, _ = run(plan)

        assert "SET IDENTITY_INSERT [dbo].[Books] ON;" in steps[1].sql

    def test_declared_identity_missing_from_catalog_warns(self, executor, caplog):
        config = BulkOperation("Books").columns("ISBN").identity("Id").insert()
        plan = executor.prepare(config, books(1))

        with caplog.at_level(logging.WARNING, logger="sqlbulk.staging"):
            run(plan, fetch_schema=books_schema(identity=False))

        assert "has no identity column" in caplog.text


class TestReconcilePlan:
    """Test staged update, upsert and delete"""

    def test_upsert_stages_and_merges(self, executor):
        config = BulkOperation("Books").columns("ISBN", "Title").match_on("ISBN").upsert()
        plan = executor.prepare(config, books(2))

        steps, affected = run(plan, reconcile=[(2,)])

        assert labels(steps) == ["fetch_schema", "create_staging", "stage_rows", "reconcile"]
        assert steps[1].sql.startswith(f"CREATE TABLE [{plan.staging_table}] (")
        assert isinstance(steps[2], Execute)
        assert steps[2].sql.startswith(f"INSERT INTO [{plan.staging_table}] ([ISBN], [Title])")
        merge = steps[3].sql
        assert f"MERGE INTO [dbo].[Books] WITH (HOLDLOCK) AS [Target]\nUSING [{plan.staging_table}]" in merge
        assert f"DROP TABLE [{plan.staging_table}];" in merge
        assert affected == 2
        assert plan.created_tables == []

    def test_large_upsert_streams_into_staging(self, executor):
        config = BulkOperation("Books").columns("ISBN", "Title").match_on("ISBN").upsert()
        plan = executor.prepare(config, books(50))

        steps, _ = run(plan)

        assert isinstance(steps[2], Transfer)
        assert steps[2].sql.startswith(f"INSERT INTO [{plan.staging_table}]")

    def test_update_predicate_parameters(self, executor):
        config = (
            BulkOperation("Books")
            .columns("ISBN", "Title")
            .match_on("ISBN")
            .update_when(col("Title") != "Fixed")
            .update()
        )
        plan = executor.prepare(config, books(1))

        steps, _ = run(plan)

        assert "WHEN MATCHED AND ([Target].[Title] <> ?) THEN" in steps[3].sql
        assert steps[3].params == ("Fixed",)

    def test_undeclared_identity_in_update_rejected(self, executor):
        config = BulkOperation("Books").columns("Id", "ISBN", "Title").match_on("ISBN").update()
        plan = executor.prepare(config, books(1))

        with pytest.raises(IdentityConfigurationError):
            run(plan)

    def test_identity_as_delete_match_key_is_allowed(self, executor):
        config = BulkOperation("Books").columns("Id").match_on("Id").delete()
        plan = executor.prepare(config, [Book("1", "A", Id=1)])

        steps, _ = run(plan)

        assert "WHEN MATCHED THEN\n    DELETE" in steps[-1].sql

    def test_identity_staged_nullable(self, executor):
        config = (
            BulkOperation("Books")
            .columns("ISBN", "Title")
            .match_on("ISBN")
            .identity("Id")
            .upsert()
        )
        plan = executor.prepare(config, books(1))

        steps, _ = run(plan)

        assert "[Id] int NULL" in steps[1].sql
        assert "[Target].[Id] =" not in steps[3].sql

    def test_disable_and_rebuild_indexes(self, executor):
        config = (
            BulkOperation("Books")
            .columns("ISBN", "Title")
            .match_on("ISBN")
            .disable_indexes()
            .update()
        )
        plan = executor.prepare(config, books(1))

        steps, _ = run(plan)

        assert labels(steps)[0] == "disable_indexes"
        assert labels(steps)[-1] == "rebuild_indexes"
        assert steps[0].params == ("dbo", "Books")
        assert not plan.indexes_disabled


class TestIdentityOutputPlan:
    """Test identity round-trip"""

    def config(self, kind="insert"):
        builder = BulkOperation("Books").columns("ISBN", "Title").identity(
            "Id", ColumnDirection.INPUT_OUTPUT
        )
        if kind != "insert":
            builder = builder.match_on("ISBN")
        return getattr(builder, kind)()

    def test_insert_writes_identity_back(self, executor):
        rows = books(3)
        plan = executor.prepare(self.config(), rows)

        steps, affected = run(
            plan,
            reconcile=[(3,)],
            read_identity=[(2, 12), (0, 10), (1, 11)],
        )

        assert labels(steps) == [
            "fetch_schema", "create_staging", "stage_rows", "create_output",
            "reconcile", "read_identity", "drop_output",
        ]
        assert "[__bulk_row_id] bigint NOT NULL" in steps[1].sql
        assert "OUTPUT [Source].[__bulk_row_id], INSERTED.[Id]" in steps[4].sql
        assert "[Id]" not in steps[4].sql.split("WHEN NOT MATCHED BY TARGET THEN")[1].split("OUTPUT")[0]
        assert [row.Id for row in rows] == [10, 11, 12]
        assert affected == 3
        assert plan.state is ExecutionState.IDENTITY_WRITTEN_BACK
        assert plan.created_tables == []

    def test_delete_reads_deleted_identity(self, executor):
        plan = executor.prepare(self.config("delete"), books(1))

        steps, _ = run(plan, read_identity=[(0, 5)])

        assert "DELETED.[Id]" in steps[4].sql
        assert plan.rows[0].Id == 5

    def test_write_back_happens_after_index_rebuild(self, executor):
        config = (
            BulkOperation("Books")
            .columns("ISBN")
            .identity("Id", ColumnDirection.INPUT_OUTPUT)
            .disable_indexes()
            .insert()
        )
        rows = books(1)
        plan = executor.prepare(config, rows)
        generator = plan.steps()
        result = None
        while True:
            step = generator.send(result)
            if step.label == "rebuild_indexes":
                break
            result = [(0, 99)] if step.label == "read_identity" else default_answer(step)

        assert rows[0].Id is None

    def test_read_only_rows_raise_after_mutation(self, executor):
        rows = books(2, FrozenBook)
        plan = executor.prepare(self.config(), rows)

        with pytest.raises(WritebackError) as exc_info:
            run(plan, reconcile=[(2,)], read_identity=[(0, 1), (1, 2)])

        assert exc_info.value.rows_affected == 2
        assert rows[0].Id is None


class TestCleanup:
    """Test cleanup_steps after a partial run"""

    def test_nothing_to_clean_before_staging(self, executor):
        config = BulkOperation("Books").columns("ISBN", "Title").match_on("ISBN").upsert()
        plan = executor.prepare(config, books(1))

        assert plan.cleanup_steps() == []

    def test_drops_staging_table(self, executor):
        config = BulkOperation("Books").columns("ISBN", "Title").match_on("ISBN").upsert()
        plan = executor.prepare(config, books(1))
        advance(plan, "create_staging")

        cleanup = plan.cleanup_steps()

        assert [step.sql for step in cleanup] == [
            f"IF OBJECT_ID('tempdb..{plan.staging_table}') IS NOT NULL "
            f"DROP TABLE [{plan.staging_table}];"
        ]

    def test_identity_insert_and_indexes(self, executor):
        config = (
            BulkOperation("Books")
            .columns("ISBN")
            .identity("Id")
            .with_settings(BulkCopySettings(keep_identity=True))
            .disable_indexes()
            .insert()
        )
        plan = executor.prepare(config, books(20))
        advance(plan, "identity_insert_on")

        cleanup = plan.cleanup_steps()

        assert cleanup[0].sql == "SET IDENTITY_INSERT [dbo].[Books] OFF;"
        assert "REBUILD" in cleanup[-1].sql

    def test_staging_names_are_unique_per_plan(self, executor):
        config = BulkOperation("Books").columns("ISBN").insert()

        first = executor.prepare(config, books(1))
        second = executor.prepare(config, books(1))

        assert first.staging_table != second.staging_table
        assert first.staging_table.startswith("#sqlbulk_stage_")


class TestDeleteQueryPlan:
    """Test delete queries"""

    def test_unbatched(self, executor):
        config = BulkOperation("Books").delete_when(col("WarehouseId") == 1).delete_query()
        plan = executor.prepare(config, [])

        steps, affected = run(plan, delete_query=[(42,)])

        assert labels(steps) == ["delete_query"]
        assert "DELETE [Target] FROM [dbo].[Books] AS [Target]\nWHERE [Target].[WarehouseId] = ?;" in steps[0].sql
        assert steps[0].params == (1,)
        assert affected == 42

    def test_batched_until_short_batch(self, executor):
        config = BulkOperation("Books").batch_quantity(500).delete_query()
        plan = executor.prepare(config, [])
        results = iter([[(500,)], [(500,)], [(120,)]])

        steps, affected = run(plan, delete_query=lambda step: next(results))

        assert labels(steps) == ["delete_query"] * 3
        assert steps[0].params == (500,)
        assert affected == 1120
