"""Command/Event boundary between the engine and the presentation layer.

Commands are JSON-compatible mappings naming a ``command`` plus camelCase
fields. Every command produces exactly one response mapping; engine events
are pushed through the same outbound sink. Blob values travel as
``{"$blob": "<base64>"}`` in both directions.
"""

from __future__ import annotations

import base64
import binascii
import json
import threading
import uuid
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from typing import IO, Any

from sqlview.shared.exceptions import InternalError, SqlViewError, ValidationError
from sqlview.shared.logging import Logger

from .edits import CellEdit, Edit, Filter, RowDelete, RowInsert
from .events import CursorClosed, Event, SchemaChanged, TransactionStateChanged
from .types import (
    ColumnDescriptor,
    ExecutionOutcome,
    MutationSummary,
    ResultSet,
    SchemaSnapshot,
    StatementRequest,
    TableSchema,
    Transaction,
)
from .workspace import Workspace

Message = dict[str, Any]
Sink = Callable[[Message], None]

BLOB_KEY = "$blob"


class Boundary:
    def __init__(self, workspace: Workspace, sink: Sink | None = None) -> None:
        self._workspace = workspace
        self._logger: Logger = workspace.logger
        self._sink = sink
        self._pool: ThreadPoolExecutor | None = None
        self._pool_lock = threading.Lock()
        self._unsubscribe = workspace.events.subscribe(self._forward_event) if sink is not None else None
        self._handlers: dict[str, Callable[[Mapping[str, Any], str | None], Any]] = {
            "OpenDatabase": self._open_database,
            "CloseDatabase": self._close_database,
            "SetActiveDatabase": self._set_active_database,
            "ListDatabases": self._list_databases,
            "GetSchema": self._get_schema,
            "ListTables": self._list_tables,
            "ExecuteStatement": self._execute_statement,
            "FetchRows": self._fetch_rows,
            "CloseCursor": self._close_cursor,
            "BeginTransaction": self._begin_transaction,
            "Commit": self._commit,
            "Rollback": self._rollback,
            "CancelRequest": self._cancel_request,
            "BrowseTable": self._browse_table,
            "InsertRow": self._insert_row,
            "UpdateCell": self._update_cell,
            "DeleteRow": self._delete_row,
            "ApplyEdits": self._apply_edits,
        }

    @property
    def commands(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    # -- dispatch ------------------------------------------------------------

    def handle(self, command: Any) -> Message:
        """Run one command synchronously and return its response."""
        request_id = command.get("requestId") if isinstance(command, Mapping) else None
        if request_id is not None and not isinstance(request_id, str):
            request_id = str(request_id)
        try:
            if not isinstance(command, Mapping):
                raise ValidationError("Command must be a JSON object.")
            name = command.get("command")
            handler = self._handlers.get(name) if isinstance(name, str) else None
            if handler is None:
                raise ValidationError(f"Unknown command: {name!r}.")
            result = handler(command, request_id)
        except SqlViewError as exc:
            self._logger.debug(f"Command failed ({exc.code}): {exc}")
            return error_response(request_id, exc)
        except Exception as exc:
            self._logger.error(f"Unexpected failure handling command: {exc!r}")
            return error_response(request_id, InternalError(str(exc)))
        return {"type": "response", "requestId": request_id, "ok": True, "result": result}

    def submit(self, command: Any) -> Future[Message]:
        """Run a command on the worker pool; the response also goes to the sink.

        ``CancelRequest`` runs inline so it is never queued behind the
        request it is meant to stop.
        """
        if isinstance(command, Mapping) and command.get("command") == "CancelRequest":
            future: Future[Message] = Future()
            response = self.handle(command)
            self._emit(response)
            future.set_result(response)
            return future

        def _run() -> Message:
            response = self.handle(command)
            self._emit(response)
            return response

        return self._executor().submit(_run)

    def close(self, *, wait: bool = True) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)

    def _executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._workspace.config.execution.workers,
                    thread_name_prefix="sqlview-worker",
                )
            return self._pool

    def _emit(self, message: Message) -> None:
        if self._sink is not None:
            self._sink(message)

    def _forward_event(self, event: Event) -> None:
        self._emit(encode_event(event))

    # -- connection commands ---------------------------------------------------

    def _open_database(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        path = _require_str(command, "path")
        read_only = _optional_bool(command, "readOnly", False)
        connection = self._workspace.open(path, read_only=read_only)
        return {
            "connectionId": connection.id,
            "path": str(connection.path),
            "readOnly": connection.read_only,
            "active": self._workspace.connections.active_id == connection.id,
        }

    def _close_database(self, command: Mapping[str, Any], request_id: str | None) -> None:
        self._workspace.close(_require_str(command, "connectionId"))

    def _set_active_database(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        connection = self._workspace.connections.set_active(_require_str(command, "connectionId"))
        return {"connectionId": connection.id}

    def _list_databases(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        active_id = self._workspace.connections.active_id
        return {
            "activeId": active_id,
            "databases": [
                {
                    "connectionId": connection.id,
                    "path": str(connection.path),
                    "readOnly": connection.read_only,
                    "state": connection.state.value,
                    "active": connection.id == active_id,
                }
                for connection in self._workspace.connections.list()
            ],
        }

    def _get_schema(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        connection_id = _optional_str(command, "connectionId")
        if _optional_bool(command, "refresh", False):
            snapshot = self._workspace.schema.refresh(connection_id)
        else:
            snapshot = self._workspace.schema.current(connection_id)
        return encode_snapshot(snapshot)

    def _list_tables(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        return {"tables": self._workspace.schema.list_tables(_optional_str(command, "connectionId"))}

    # -- statements and cursors --------------------------------------------------

    def _execute_statement(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        request = StatementRequest(
            sql=_require_str(command, "sql"),
            params=decode_params(command.get("params")),
            request_id=request_id or uuid.uuid4().hex,
            window=_optional_int(command, "window"),
        )
        outcome = self._workspace.executor.execute(_optional_str(command, "connectionId"), request)
        return self._encode_outcome(outcome, request.window)

    def _fetch_rows(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        handle = _require_str(command, "cursorHandle")
        window = _optional_int(command, "windowSize")
        paginator = self._workspace.paginator
        rows = paginator.fetch(handle, window if window is not None else self._default_window)
        return {"rows": encode_rows(rows), "exhausted": paginator.describe(handle).exhausted}

    def _close_cursor(self, command: Mapping[str, Any], request_id: str | None) -> None:
        self._workspace.paginator.close(_require_str(command, "cursorHandle"))

    def _cancel_request(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        target = command.get("targetRequestId", command.get("cancelRequestId"))
        if target is None:
            target = request_id
        if not isinstance(target, str) or not target:
            raise ValidationError("CancelRequest needs the requestId of the request to cancel.")
        return {"cancelled": self._workspace.executor.cancel(target)}

    # -- transactions ------------------------------------------------------------

    def _begin_transaction(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        return encode_transaction(self._workspace.transactions.begin(_optional_str(command, "connectionId")))

    def _commit(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        return encode_transaction(self._workspace.transactions.commit(_optional_str(command, "connectionId")))

    def _rollback(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        return encode_transaction(self._workspace.transactions.rollback(_optional_str(command, "connectionId")))

    # -- browsing and grid edits -------------------------------------------------

    def _browse_table(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        filters = [_decode_filter(item) for item in _optional_list(command, "filters")]
        result, row_count = self._workspace.editor.browse_table(
            _optional_str(command, "connectionId"),
            _require_str(command, "table"),
            filters=filters,
            order_by=_optional_str(command, "orderBy"),
            descending=_optional_bool(command, "descending", False),
            request_id=request_id,
        )
        encoded = self._encode_outcome(result, _optional_int(command, "window"))
        encoded["rowCount"] = row_count
        return encoded

    def _insert_row(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        values = decode_value(command.get("values"))
        if not isinstance(values, (list, dict)):
            raise ValidationError("InsertRow needs 'values' as a list or an object.")
        summary = self._workspace.editor.insert_row(
            _optional_str(command, "connectionId"),
            _require_str(command, "table"),
            values,
            request_id=request_id,
        )
        return encode_mutation(summary)

    def _update_cell(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        summary = self._workspace.editor.update_cell(
            _optional_str(command, "connectionId"),
            _require_str(command, "table"),
            _require_str(command, "column"),
            decode_value(_require(command, "key")),
            decode_value(command.get("value")),
            key_column=_optional_str(command, "keyColumn"),
            request_id=request_id,
        )
        return encode_mutation(summary)

    def _delete_row(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        summary = self._workspace.editor.delete_row(
            _optional_str(command, "connectionId"),
            _require_str(command, "table"),
            decode_value(_require(command, "key")),
            key_column=_optional_str(command, "keyColumn"),
            request_id=request_id,
        )
        return encode_mutation(summary)

    def _apply_edits(self, command: Mapping[str, Any], request_id: str | None) -> Message:
        edits = [_decode_edit(item) for item in _optional_list(command, "edits")]
        summary = self._workspace.editor.apply_edits(
            _optional_str(command, "connectionId"),
            edits,
            request_id=request_id,
        )
        return encode_mutation(summary)

    # -- helpers -------------------------------------------------------------------

    @property
    def _default_window(self) -> int:
        return self._workspace.config.pagination.default_window

    def _encode_outcome(self, outcome: ExecutionOutcome, window: int | None) -> Message:
        if isinstance(outcome, MutationSummary):
            return encode_mutation(outcome)
        paginator = self._workspace.paginator
        handle = paginator.open(outcome)
        try:
            rows = paginator.fetch(handle, window if window is not None else self._default_window)
        except SqlViewError:
            # the handle never reached the client
            paginator.close(handle)
            raise
        return {
            "kind": "rows",
            "cursorHandle": handle,
            "requestId": outcome.request_id,
            "columns": [encode_column(column) for column in outcome.columns],
            "rows": encode_rows(rows),
            "exhausted": paginator.describe(handle).exhausted,
        }


# ---------------------------------------------------------------------------
# Encoding


def error_response(request_id: str | None, exc: SqlViewError) -> Message:
    error: Message = {"kind": exc.code, "message": str(exc)}
    error.update(exc.details())
    return {"type": "response", "requestId": request_id, "ok": False, "error": error}


def encode_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {BLOB_KEY: base64.b64encode(bytes(value)).decode("ascii")}
    return value


def encode_rows(rows: Sequence[Sequence[Any]]) -> list[list[Any]]:
    return [[encode_value(value) for value in row] for row in rows]


def encode_column(column: ColumnDescriptor) -> Message:
    return {
        "name": column.name,
        "declaredType": column.declared_type,
        "inferredType": column.inferred_type,
    }


def encode_mutation(summary: MutationSummary) -> Message:
    return {
        "kind": "mutation",
        "statementKind": summary.kind.value,
        "rowsAffected": summary.rows_affected,
        "lastInsertRowid": summary.last_insert_rowid,
        "statementsExecuted": summary.statements_executed,
    }


def encode_transaction(transaction: Transaction) -> Message:
    return {
        "connectionId": transaction.connection_id,
        "state": transaction.state.value,
        "statements": len(transaction.statements),
    }


def encode_relation(relation: TableSchema) -> Message:
    return {
        "name": relation.name,
        "kind": relation.kind,
        "sql": relation.sql,
        "withoutRowid": relation.without_rowid,
        "error": relation.error,
        "primaryKey": list(relation.primary_key),
        "columns": [
            {
                "name": column.name,
                "declaredType": column.declared_type,
                "notNull": column.not_null,
                "default": column.default,
                "primaryKey": column.primary_key,
            }
            for column in relation.columns
        ],
        "foreignKeys": [
            {
                "column": foreign_key.column,
                "referencesTable": foreign_key.references_table,
                "referencesColumn": foreign_key.references_column,
                "onUpdate": foreign_key.on_update,
                "onDelete": foreign_key.on_delete,
            }
            for foreign_key in relation.foreign_keys
        ],
        "indexes": [
            {"name": index.name, "unique": index.unique, "origin": index.origin, "columns": list(index.columns)}
            for index in relation.indexes
        ],
    }


def encode_snapshot(snapshot: SchemaSnapshot) -> Message:
    return {
        "connectionId": snapshot.connection_id,
        "path": str(snapshot.database_path),
        "version": snapshot.version,
        "builtAt": snapshot.built_at,
        "tables": [encode_relation(table) for table in snapshot.tables],
        "views": [encode_relation(view) for view in snapshot.views],
        "triggers": [
            {"name": trigger.name, "table": trigger.table, "sql": trigger.sql} for trigger in snapshot.triggers
        ],
    }


def encode_event(event: Event) -> Message:
    if isinstance(event, SchemaChanged):
        return {
            "type": "event",
            "event": "SchemaChanged",
            "connectionId": event.connection_id,
            "version": event.version,
        }
    if isinstance(event, CursorClosed):
        return {"type": "event", "event": "CursorClosed", "cursorHandle": event.cursor_handle, "reason": event.reason}
    if isinstance(event, TransactionStateChanged):
        return {
            "type": "event",
            "event": "TransactionStateChanged",
            "connectionId": event.connection_id,
            "state": event.new_state.value,
            "reason": event.reason,
        }
    raise TypeError(f"Unsupported event: {event!r}")


# ---------------------------------------------------------------------------
# Decoding


def decode_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        if set(value) == {BLOB_KEY}:
            encoded = value[BLOB_KEY]
            if not isinstance(encoded, str):
                raise ValidationError("Blob values must be base64 strings.")
            try:
                return base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ValidationError(f"Invalid base64 blob: {exc}") from exc
        return {str(key): decode_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_value(item) for item in value]
    return value


def decode_params(value: Any) -> list[Any] | dict[str, Any] | None:
    if value is None:
        return None
    if isinstance(value, list):
        return [decode_value(item) for item in value]
    if isinstance(value, Mapping):
        if set(value) == {BLOB_KEY}:
            raise ValidationError("'params' must be a list or an object of named values.")
        return {str(key): decode_value(item) for key, item in value.items()}
    raise ValidationError("'params' must be a list or an object of named values.")


def _decode_filter(item: Any) -> Filter:
    if not isinstance(item, Mapping):
        raise ValidationError("Each filter must be an object with 'column' and 'operator'.")
    return Filter(
        column=_require_str(item, "column"),
        operator=_optional_str(item, "operator") or "=",
        value=decode_value(item.get("value")),
    )


def _decode_edit(item: Any) -> Edit:
    if not isinstance(item, Mapping):
        raise ValidationError("Each edit must be an object.")
    operation = item.get("op", "update")
    table = _require_str(item, "table")
    if operation == "update":
        return CellEdit(
            table=table,
            column=_require_str(item, "column"),
            key=decode_value(_require(item, "key")),
            value=decode_value(item.get("value")),
            key_column=_optional_str(item, "keyColumn"),
        )
    if operation == "insert":
        values = decode_value(item.get("values"))
        if not isinstance(values, (list, dict)):
            raise ValidationError("Insert edits need 'values' as a list or an object.")
        return RowInsert(table=table, values=values)
    if operation == "delete":
        return RowDelete(
            table=table,
            key=decode_value(_require(item, "key")),
            key_column=_optional_str(item, "keyColumn"),
        )
    raise ValidationError(f"Unknown edit operation: {operation!r}.")


def _require(command: Mapping[str, Any], key: str) -> Any:
    if key not in command:
        raise ValidationError(f"Missing required field '{key}'.")
    return command[key]


def _require_str(command: Mapping[str, Any], key: str) -> str:
    value = _require(command, key)
    if not isinstance(value, str) or not value:
        raise ValidationError(f"Field '{key}' must be a non-empty string.")
    return value


def _optional_str(command: Mapping[str, Any], key: str) -> str | None:
    value = command.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"Field '{key}' must be a string.")
    return value


def _optional_int(command: Mapping[str, Any], key: str) -> int | None:
    value = command.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Field '{key}' must be an integer.")
    return value


def _optional_bool(command: Mapping[str, Any], key: str, default: bool) -> bool:
    value = command.get(key, default)
    if not isinstance(value, bool):
        raise ValidationError(f"Field '{key}' must be true or false.")
    return value


def _optional_list(command: Mapping[str, Any], key: str) -> list[Any]:
    value = command.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"Field '{key}' must be a list.")
    return value


# ---------------------------------------------------------------------------
# JSON-lines transport


def serve_stream(workspace: Workspace, instream: IO[str], outstream: IO[str]) -> int:
    """Serve newline-delimited JSON commands until ``instream`` is exhausted.

    Returns the number of commands received. Responses may arrive out of
    order; clients correlate them by ``requestId``.
    """
    write_lock = threading.Lock()

    def _write(message: Message) -> None:
        line = json.dumps(message, separators=(",", ":"))
        with write_lock:
            outstream.write(line + "\n")
            outstream.flush()

    boundary = Boundary(workspace, sink=_write)
    received = 0
    try:
        for raw in instream:
            line = raw.strip()
            if not line:
                continue
            received += 1
            try:
                command = json.loads(line)
            except json.JSONDecodeError as exc:
                _write(error_response(None, ValidationError(f"Malformed JSON command: {exc.msg}")))
                continue
            boundary.submit(command)
    finally:
        boundary.close(wait=True)
    return received
