"""Query Executor: runs operator SQL against an open connection.

Each request holds the connection's execution lock for its whole run, checks
its cancellation flag before every statement and routes statements by kind:

* reads produce a lazy ``ResultSet`` for the paginator
* writes and DDL produce a ``MutationSummary``; DDL also refreshes the schema
* ``BEGIN``/``COMMIT``/``ROLLBACK`` are handed to the transaction coordinator

A multi-statement request outside an explicit transaction runs inside an
implicit savepoint, so a failure part-way leaves no earlier statement applied.
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
import weakref
from collections import OrderedDict
from collections.abc import Mapping, Sequence

from sqlview.shared.config import AppConfig
from sqlview.shared.exceptions import (
    Cancelled,
    InternalError,
    NoActiveTransaction,
    SqlViewError,
    TransactionAlreadyActive,
    ValidationError,
)
from sqlview.shared.logging import Logger, get_logger

from . import errors
from .connections import ConnectionManager, ManagedConnection, RequestToken
from .events import EventBus, SchemaChanged
from .paginator import RowSource
from .schema import SchemaInspector
from .statements import split_statements
from .transactions import TransactionCoordinator
from .types import (
    ColumnDescriptor,
    ExecutionOutcome,
    MutationSummary,
    Parameters,
    ResultSet,
    Row,
    Statement,
    StatementKind,
    StatementRequest,
)

BATCH_SAVEPOINT = "sqlview_batch"
_PRECANCELLED_LIMIT = 256

# Statements that may run inside the implicit batch savepoint.
_SAVEPOINT_SAFE = {StatementKind.READ, StatementKind.WRITE, StatementKind.DDL}

_WRITE_ROWID_KEYWORDS = {"INSERT", "REPLACE", "WITH"}

BoundStatement = tuple[Statement, Parameters]


class QueryExecutor:
    def __init__(
        self,
        manager: ConnectionManager,
        inspector: SchemaInspector,
        coordinator: TransactionCoordinator,
        events: EventBus,
        config: AppConfig,
        *,
        logger: Logger | None = None,
    ) -> None:
        self._manager = manager
        self._inspector = inspector
        self._coordinator = coordinator
        self._events = events
        self._config = config
        self._logger = logger or get_logger()
        self._lock = threading.Lock()
        # a token stays registered while its request runs or a RowSource still holds it
        self._requests: weakref.WeakValueDictionary[str, RequestToken] = weakref.WeakValueDictionary()
        self._precancelled: OrderedDict[str, None] = OrderedDict()

    # -- public API --------------------------------------------------------

    def execute(self, connection_id: str | None, request: StatementRequest | str) -> ExecutionOutcome:
        """Run every statement of ``request``.

        Returns the trailing read's ``ResultSet``, or a ``MutationSummary``
        whose ``rows_affected`` totals every statement of the request.
        """
        if isinstance(request, str):
            request = StatementRequest(sql=request)
        statements = split_statements(request.sql)
        if not statements:
            raise ValidationError("No SQL statement to execute.")
        if request.params is not None:
            _validate_params(request.params)
            if len(statements) > 1:
                raise ValidationError("Parameters can only be bound to a single statement.")
        return self._execute_bound(
            connection_id,
            [(statement, request.params) for statement in statements],
            request.request_id,
        )

    def execute_batch(
        self,
        connection_id: str | None,
        items: Sequence[tuple[str, Parameters]],
        *,
        request_id: str | None = None,
    ) -> ExecutionOutcome:
        """Run several single statements, each with its own bindings, atomically."""
        bound: list[BoundStatement] = []
        for sql, params in items:
            statements = split_statements(sql)
            if len(statements) != 1:
                raise ValidationError("Each batch item must contain exactly one statement.")
            if params is not None:
                _validate_params(params)
            bound.append((statements[0], params))
        if not bound:
            raise ValidationError("No SQL statement to execute.")
        return self._execute_bound(connection_id, bound, request_id)

    def cancel(self, request_id: str) -> bool:
        """Flag a request as cancelled.

        Returns False when no such request is running; the id is then
        remembered so a request submitted but not yet started stops before
        its first statement.
        """
        with self._lock:
            token = self._requests.get(request_id)
            if token is None:
                self._precancelled[request_id] = None
                while len(self._precancelled) > _PRECANCELLED_LIMIT:
                    self._precancelled.popitem(last=False)
                return False
        token.cancel()
        connection = self._manager.lookup(token.connection_id)
        if connection is not None:
            connection.interrupt(token)
        self._logger.debug(f"Cancellation requested for {request_id}")
        return True

    def in_flight(self) -> list[str]:
        with self._lock:
            return list(self._requests.keys())

    # -- request lifecycle -------------------------------------------------

    def _execute_bound(
        self,
        connection_id: str | None,
        bound: list[BoundStatement],
        request_id: str | None,
    ) -> ExecutionOutcome:
        connection = self._manager.resolve(connection_id)
        token = self._register(request_id or uuid.uuid4().hex, connection.id)
        with connection.guard(token) as handle:
            return self._run(connection, handle, token, bound)

    def _register(self, request_id: str, connection_id: str) -> RequestToken:
        token = RequestToken(request_id, connection_id)
        with self._lock:
            self._requests[request_id] = token
            if self._precancelled.pop(request_id, "missing") is None:
                token.cancel()
        return token

    def _run(
        self,
        connection: ManagedConnection,
        handle: sqlite3.Connection,
        token: RequestToken,
        bound: list[BoundStatement],
    ) -> ExecutionOutcome:
        trailing_read: BoundStatement | None = None
        body = bound
        if bound[-1][0].kind is StatementKind.READ:
            trailing_read = bound[-1]
            body = bound[:-1]

        in_span = self._coordinator.active(connection.id) is not None
        use_savepoint = (
            not in_span
            and len(bound) > 1
            and not handle.in_transaction
            and all(statement.kind in _SAVEPOINT_SAFE for statement, _ in bound)
        )

        summary: MutationSummary | None = None
        result: ResultSet | None = None
        executed = 0
        rows_total = 0
        schema_touched = False
        if use_savepoint:
            self._savepoint(connection, handle, f"SAVEPOINT {BATCH_SAVEPOINT}")
        try:
            for statement, params in body:
                self._check_cancelled(token)
                summary = self._execute_statement(connection, handle, statement, params, token)
                executed += 1
                rows_total += summary.rows_affected
                schema_touched = schema_touched or statement.kind is StatementKind.DDL
            if trailing_read is not None:
                statement, params = trailing_read
                self._check_cancelled(token)
                # opening steps the first row, still inside the savepoint
                result = self._open_read(connection, handle, statement, params, token)
            if use_savepoint:
                self._release(connection, handle, result)
        except (TransactionAlreadyActive, NoActiveTransaction):
            # a misplaced BEGIN or COMMIT leaves the open span untouched
            if schema_touched:
                self._schema_changed(connection, handle)
            raise
        except SqlViewError as error:
            undone = self._recover(connection, handle, error, use_savepoint=use_savepoint)
            if schema_touched and not undone:
                self._schema_changed(connection, handle)
            raise

        if schema_touched:
            self._schema_changed(connection, handle)

        if result is not None:
            return result
        if summary is None:
            raise InternalError("Request finished without executing a statement.")
        return MutationSummary(
            rows_affected=rows_total,
            last_insert_rowid=summary.last_insert_rowid,
            kind=summary.kind,
            statements_executed=executed,
            request_id=token.request_id,
        )

    # -- statement execution -----------------------------------------------

    def _execute_statement(
        self,
        connection: ManagedConnection,
        handle: sqlite3.Connection,
        statement: Statement,
        params: Parameters,
        token: RequestToken,
    ) -> MutationSummary:
        if statement.kind is StatementKind.TRANSACTION:
            return self._route_transaction(connection, handle, statement)
        cursor = handle.cursor()
        try:
            cursor.execute(statement.sql, _bindings(params))
            if cursor.description is not None and statement.kind is not StatementKind.READ:
                # RETURNING clauses and stateful pragmas only take effect once stepped through
                cursor.fetchall()
            rows_affected = max(cursor.rowcount, 0)
            last_rowid = cursor.lastrowid
        except sqlite3.Error as exc:
            raise errors.translate(exc, connection=connection, statement=statement, request=token) from exc
        finally:
            cursor.close()

        if statement.kind in (StatementKind.WRITE, StatementKind.DDL, StatementKind.OTHER):
            self._coordinator.record(connection.id, statement.sql, statement.kind)
        if statement.kind is not StatementKind.WRITE:
            rows_affected = 0
        report_rowid = (
            statement.kind is StatementKind.WRITE
            and statement.keyword in _WRITE_ROWID_KEYWORDS
            and rows_affected > 0
        )
        return MutationSummary(
            rows_affected=rows_affected,
            last_insert_rowid=last_rowid if report_rowid else None,
            kind=statement.kind,
        )

    def _route_transaction(
        self,
        connection: ManagedConnection,
        handle: sqlite3.Connection,
        statement: Statement,
    ) -> MutationSummary:
        if statement.keyword == "BEGIN":
            self._coordinator.begin_locked(connection, handle, statement.sql)
        elif statement.keyword in {"COMMIT", "END"}:
            self._coordinator.commit_locked(connection, handle)
        else:
            self._coordinator.rollback_locked(connection, handle, reason="statement")
        return MutationSummary(rows_affected=0, last_insert_rowid=None, kind=StatementKind.TRANSACTION)

    def _open_read(
        self,
        connection: ManagedConnection,
        handle: sqlite3.Connection,
        statement: Statement,
        params: Parameters,
        token: RequestToken,
    ) -> ResultSet:
        cursor = handle.cursor()
        try:
            cursor.execute(statement.sql, _bindings(params))
            first_row = cursor.fetchone() if cursor.description is not None else None
        except sqlite3.Error as exc:
            cursor.close()
            raise errors.translate(exc, connection=connection, statement=statement, request=token) from exc

        columns = describe_columns(cursor.description or (), first_row)
        source = RowSource(connection, token, cursor, tuple(first_row) if first_row is not None else None)
        return ResultSet(
            columns=columns,
            rows=source,
            connection_id=connection.id,
            request_id=token.request_id,
            sql=statement.sql,
        )

    # -- recovery and bookkeeping -------------------------------------------

    def _recover(
        self,
        connection: ManagedConnection,
        handle: sqlite3.Connection,
        error: SqlViewError,
        *,
        use_savepoint: bool,
    ) -> bool:
        """Undo the failed request's effects; returns True when they were undone."""
        connection.clear_request()
        try:
            if self._coordinator.active(connection.id) is not None:
                self._coordinator.rollback_locked(connection, handle, reason=error.code)
                return True
            if use_savepoint and handle.in_transaction:
                handle.execute(f"ROLLBACK TO {BATCH_SAVEPOINT}")
                handle.execute(f"RELEASE {BATCH_SAVEPOINT}")
                return True
        except (SqlViewError, sqlite3.Error) as exc:
            self._logger.error(f"Rollback after {error.code} failed on {connection.id}: {exc}")
        return use_savepoint

    def _savepoint(self, connection: ManagedConnection, handle: sqlite3.Connection, sql: str) -> None:
        try:
            handle.execute(sql)
        except sqlite3.Error as exc:
            raise errors.translate(exc, connection=connection) from exc

    def _release(
        self,
        connection: ManagedConnection,
        handle: sqlite3.Connection,
        result: ResultSet | None,
    ) -> None:
        try:
            self._savepoint(connection, handle, f"RELEASE {BATCH_SAVEPOINT}")
        except SqlViewError:
            if result is not None and isinstance(result.rows, RowSource):
                result.rows.close()
            raise

    def _schema_changed(self, connection: ManagedConnection, handle: sqlite3.Connection) -> None:
        try:
            snapshot = self._inspector.rebuild(connection, handle)
            version: int | None = snapshot.version
        except SqlViewError as exc:
            self._logger.warning(f"Schema rebuild after DDL failed on {connection.id}: {exc}")
            self._inspector.invalidate(connection.id)
            version = None
        self._events.publish(SchemaChanged(connection.id, version))

    @staticmethod
    def _check_cancelled(token: RequestToken) -> None:
        if token.cancelled:
            raise Cancelled(f"Request {token.request_id} was cancelled.")


# ---------------------------------------------------------------------------
# Helpers

def _validate_params(params: Parameters) -> None:
    if isinstance(params, (str, bytes)) or not isinstance(params, (Sequence, Mapping)):
        raise ValidationError("Parameters must be a list of positional values or a mapping of names.")


def _bindings(params: Parameters) -> Sequence[object] | Mapping[str, object]:
    if params is None:
        return ()
    if isinstance(params, Mapping):
        return dict(params)
    return tuple(params)


def describe_columns(description: Sequence[tuple], first_row: Row | None) -> tuple[ColumnDescriptor, ...]:
    """Column descriptors with storage classes inferred from the first row."""
    columns: list[ColumnDescriptor] = []
    for index, entry in enumerate(description):
        inferred = infer_type(first_row[index]) if first_row is not None else None
        columns.append(ColumnDescriptor(name=entry[0], inferred_type=inferred))
    return tuple(columns)


def infer_type(value: object) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool) or isinstance(value, int):
        return "INTEGER"
    if isinstance(value, float):
        return "REAL"
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "BLOB"
    return "TEXT"
