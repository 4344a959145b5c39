"""
Bulk operation executor.

Drives a :class:`~sqlbulk.staging.StagingPlan` against a caller-owned
pyodbc connection, either blocking (:meth:`BulkOperationExecutor.commit`)
or suspending on each I/O step (:meth:`BulkOperationExecutor.commit_async`).
Both modes run the same plan, so they issue the same statements in the
same order.

On failure the executor drops any staging table the plan created and
rebuilds indexes it disabled, then re-raises. Nothing is retried.
"""

import asyncio
import logging
import re
import threading
import time
import uuid
from collections.abc import Mapping, Sequence
from types import MappingProxyType
from typing import Any

import pyodbc
from opentelemetry import trace

from .config import BulkSettings, OperationConfig, OperationKind
from .exceptions import (
    BulkOperationsError,
    DatabaseError,
    ExecutionError,
    IdentityConfigurationError,
    OperationCancelledError,
    TransferError,
    WritebackError,
)
from .materializer import materialize
from .session import SqlServerSession
from .staging import ExecutionState, StagingPlan
from .steps import Step, Transfer
from .types import DEFAULT_TYPE_MAPPER, TypeMapper
from .utils.logging import ContextLogger
from .utils.metrics import BulkOperationMetrics
from .utils.tracing import add_span_attributes, add_span_event, trace_database_query, trace_function, trace_operation

logger = logging.getLogger(__name__)

# SQL Server native error numbers reclassified as identity misconfiguration:
#   544  explicit value for identity column while IDENTITY_INSERT is OFF
#   8101 explicit identity value without a column list / IDENTITY_INSERT ON
#   8102 cannot update identity column
ERROR_TRANSLATIONS: Mapping[int, type[BulkOperationsError]] = MappingProxyType({
    544: IdentityConfigurationError,
    8101: IdentityConfigurationError,
    8102: IdentityConfigurationError,
})

_NATIVE_CODE = re.compile(r"\((\d{2,6})\)")

_default_metrics: BulkOperationMetrics | None = None


def _metrics() -> BulkOperationMetrics:
    global _default_metrics
    if _default_metrics is None:
        _default_metrics = BulkOperationMetrics()
    return _default_metrics


def _plan_attributes(plan: StagingPlan | None) -> dict[str, Any]:
    if plan is None:
        return {"rows": 0}
    return {"rows": len(plan.rows), "columns": len(plan.columns), "operation": plan.config.kind.value}


def native_error_codes(error: pyodbc.Error) -> tuple[int, ...]:
    """
    SQL Server error numbers reported in a pyodbc error message.

    The ODBC driver appends the native number in parentheses, e.g.
    ``... IDENTITY_INSERT is set to OFF. (544) (SQLExecDirectW)``.
    """
    message = " ".join(str(arg) for arg in error.args)
    return tuple(int(code) for code in _NATIVE_CODE.findall(message))


def translate_error(error: pyodbc.Error, step: Step, table: str) -> BulkOperationsError:
    """
    Map a driver error onto the bulk operation error taxonomy.

    Codes found in ERROR_TRANSLATIONS win; otherwise transfer steps become
    TransferError and every other step ExecutionError.
    """
    codes = native_error_codes(error)
    message = str(error.args[1] if len(error.args) > 1 else error)

    for code in codes:
        error_class = ERROR_TRANSLATIONS.get(code)
        if error_class is IdentityConfigurationError:
            return IdentityConfigurationError(
                f"Identity column misconfigured on {table}: {message}. "
                "Declare the identity column with identity() or set keep_identity.",
                table=table,
                native_codes=codes,
            )
        if error_class is not None:
            return error_class(message, table=table)

    error_class = TransferError if isinstance(step, Transfer) else ExecutionError
    return error_class(
        f"{step.label} failed on {table}: {message}",
        table=table,
        native_codes=codes,
        sql=getattr(step, "sql", None),
    )


class CancellationToken:
    """
    Cooperative cancellation flag, checked by the executor between steps.

    Safe to set from any thread.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Bulk operation cancelled")


class BulkOperationExecutor:
    """
    Executes validated bulk operation configurations.

    Args:
        settings: Process-wide defaults (batch size, timeout, multi-row
            threshold); read from the environment when omitted
        type_mapper: Injected type tables
        metrics: Prometheus metrics sink
    """

    def __init__(
        self,
        settings: BulkSettings | None = None,
        type_mapper: TypeMapper = DEFAULT_TYPE_MAPPER,
        metrics: BulkOperationMetrics | None = None,
    ):
        self.settings = settings or BulkSettings.from_env()
        self.type_mapper = type_mapper
        self.metrics = metrics or _metrics()

    @trace_function("sqlbulk.prepare", result_attributes=_plan_attributes, component="sqlbulk")
    def prepare(self, config: OperationConfig, rows: Sequence[Any]) -> StagingPlan | None:
        """
        Fix the column set and materialize rows; no I/O.

        Returns:
            The plan to run, or None when there is nothing to do

        Raises:
            ConfigurationError: If rows lack configured fields or the
                resolved column set is invalid
            TypeMappingError: If a value has no SQL Server mapping
        """
        if not isinstance(rows, Sequence):
            rows = list(rows)
        config = config.with_type_mapper(self.type_mapper)

        if config.kind is OperationKind.DELETE_QUERY:
            return StagingPlan(config, rows, (), None, self.settings, self.type_mapper)

        if not rows:
            return None

        columns = config.resolve_columns(rows)
        buffer = materialize(
            rows,
            columns,
            self.type_mapper,
            correlated=config.wants_identity_output,
            table=str(config.table),
        )
        return StagingPlan(config, rows, columns, buffer, self.settings, self.type_mapper)

    def commit(
        self,
        config: OperationConfig,
        rows: Sequence[Any],
        connection: pyodbc.Connection,
        cancel: CancellationToken | None = None,
    ) -> int:
        """
        Execute the operation, blocking until it completes.

        Args:
            config: Validated operation configuration
            rows: Caller rows; identity values are written back into them
                when the identity column is INPUT_OUTPUT
            connection: Caller-owned pyodbc connection
            cancel: Optional cancellation token checked between steps

        Returns:
            Affected row count (rows transferred for inserts)

        Raises:
            ConfigurationError, TypeMappingError: Before any I/O
            IdentityConfigurationError: Identity misconfiguration
            TransferError, ExecutionError: Driver failures
            WritebackError: After the mutation executed
            OperationCancelledError: When ``cancel`` was set
        """
        plan = self.prepare(config, rows)
        if plan is None:
            logger.debug(f"No rows to {config.kind.value} for {config.table}")
            return 0

        log = self._logger(config)
        started = time.perf_counter()

        with trace_operation(
            "sqlbulk.commit",
            kind=trace.SpanKind.INTERNAL,
            table=config.table,
            operation=config.kind.value,
            rows=len(plan.rows),
        ):
            with SqlServerSession(connection, plan.timeout) as session:
                try:
                    affected = self._drive(plan, session, cancel)
                except Exception as e:
                    self._fail(plan, session, e, log, started)
                    raise

            return self._finish(plan, affected, log, started)

    async def commit_async(
        self,
        config: OperationConfig,
        rows: Sequence[Any],
        connection: pyodbc.Connection,
        cancel: CancellationToken | None = None,
    ) -> int:
        """
        Execute the operation, awaiting each step in a worker thread.

        Same contract as :meth:`commit`. Cancelling the awaiting task lets
        the in-flight step finish, cleans up staging and re-raises
        ``asyncio.CancelledError``.
        """
        plan = self.prepare(config, rows)
        if plan is None:
            logger.debug(f"No rows to {config.kind.value} for {config.table}")
            return 0

        log = self._logger(config)
        started = time.perf_counter()

        with trace_operation(
            "sqlbulk.commit",
            kind=trace.SpanKind.INTERNAL,
            table=config.table,
            operation=config.kind.value,
            rows=len(plan.rows),
            mode="async",
        ):
            with SqlServerSession(connection, plan.timeout) as session:
                try:
                    affected = await self._drive_async(plan, session, cancel)
                except (Exception, asyncio.CancelledError) as e:
                    await asyncio.to_thread(self._fail, plan, session, e, log, started)
                    raise

            return self._finish(plan, affected, log, started)

    def _logger(self, config: OperationConfig) -> ContextLogger:
        return ContextLogger(
            __name__,
            table=str(config.table),
            operation=config.kind.value,
            execution_id=uuid.uuid4().hex[:12],
        )

    def _run_step(self, plan: StagingPlan, session: SqlServerSession, step: Step) -> Any:
        table = str(plan.config.table)
        with trace_database_query(step.label, table):
            try:
                return session.run(step)
            except pyodbc.Error as e:
                raise translate_error(e, step, table) from e

    def _advance(self, plan: StagingPlan, previous: ExecutionState) -> ExecutionState:
        if plan.state is not previous:
            add_span_event("state_changed", state=plan.state.value)
        return plan.state

    def _drive(
        self,
        plan: StagingPlan,
        session: SqlServerSession,
        cancel: CancellationToken | None,
    ) -> int:
        steps = plan.steps()
        result = None
        previous = plan.state
        try:
            while True:
                step = steps.send(result)
                previous = self._advance(plan, previous)
                if cancel is not None:
                    cancel.raise_if_cancelled()
                result = self._run_step(plan, session, step)
        except StopIteration as done:
            self._advance(plan, previous)
            return done.value

    async def _drive_async(
        self,
        plan: StagingPlan,
        session: SqlServerSession,
        cancel: CancellationToken | None,
    ) -> int:
        steps = plan.steps()
        result = None
        previous = plan.state
        try:
            while True:
                step = steps.send(result)
                previous = self._advance(plan, previous)
                if cancel is not None:
                    cancel.raise_if_cancelled()
                pending = asyncio.ensure_future(
                    asyncio.to_thread(self._run_step, plan, session, step)
                )
                try:
                    result = await asyncio.shield(pending)
                except asyncio.CancelledError:
                    # The worker thread still owns the connection
                    await asyncio.wait([pending])
                    raise
        except StopIteration as done:
            self._advance(plan, previous)
            return done.value

    def _cleanup(self, plan: StagingPlan, session: SqlServerSession, log: ContextLogger) -> None:
        for step in plan.cleanup_steps():
            try:
                session.run(step)
            except pyodbc.Error as e:
                log.warning(f"Cleanup statement failed: {e}", sql=step.sql)

    def _fail(
        self,
        plan: StagingPlan,
        session: SqlServerSession,
        error: BaseException,
        log: ContextLogger,
        started: float,
    ) -> None:
        failed_in = plan.state
        plan.state = ExecutionState.FAILED
        self._cleanup(plan, session, log)

        duration = time.perf_counter() - started
        if isinstance(error, (OperationCancelledError, asyncio.CancelledError)):
            status = "cancelled"
            log.warning(f"Cancelled after {failed_in.value}", duration=round(duration, 3))
        elif isinstance(error, WritebackError):
            status = "writeback_failed"
            log.error(
                f"Mutation applied but identity write-back failed: {error}",
                rows_affected=error.rows_affected,
            )
        else:
            status = "failed"
            log.error(
                f"Failed in state {failed_in.value}: {error}",
                error_type=type(error).__name__,
                native_codes=getattr(error, "native_codes", ()),
            )

        self.metrics.record_operation(
            plan.config.kind.value,
            str(plan.config.table),
            success=False,
            duration=duration,
            strategy=plan.strategy.value if plan.strategy else None,
            status=status,
        )

    def _finish(self, plan: StagingPlan, affected: int, log: ContextLogger, started: float) -> int:
        plan.state = ExecutionState.DONE
        duration = time.perf_counter() - started
        strategy = plan.strategy.value if plan.strategy else None

        add_span_attributes(rows_affected=affected, strategy=strategy or "none")
        self.metrics.record_operation(
            plan.config.kind.value,
            str(plan.config.table),
            success=True,
            duration=duration,
            rows=affected,
            strategy=strategy,
        )
        log.info(
            f"Completed {plan.config.kind.value} on {plan.config.table}: "
            f"{affected} rows affected in {duration:.3f}s",
            rows_affected=affected,
            strategy=strategy,
        )
        return affected
