"""Transaction Coordinator: explicit begin/commit/rollback per connection.

State machine per connection::

    Idle -> Active -> Committed | RolledBack -> Idle (on the next begin)

Nested begins are rejected. The ``*_locked`` variants are for callers that
already hold the connection's execution lock (the executor routing a
``BEGIN`` statement, or the manager closing a connection).
"""

from __future__ import annotations

import sqlite3
import threading
import time

from sqlview.shared.config import AppConfig
from sqlview.shared.exceptions import NoActiveTransaction, TransactionAlreadyActive
from sqlview.shared.logging import Logger, get_logger

from . import errors
from .connections import ConnectionManager, ManagedConnection
from .events import EventBus, SchemaChanged, TransactionStateChanged
from .schema import SchemaInspector
from .types import StatementKind, Transaction, TransactionState


class TransactionCoordinator:
    def __init__(
        self,
        manager: ConnectionManager,
        inspector: SchemaInspector,
        events: EventBus,
        config: AppConfig,
        *,
        logger: Logger | None = None,
    ) -> None:
        self._manager = manager
        self._inspector = inspector
        self._events = events
        self._begin_sql = f"BEGIN {config.transactions.begin_mode.upper()}"
        self._logger = logger or get_logger()
        self._lock = threading.Lock()
        self._active: dict[str, Transaction] = {}
        self._last_outcome: dict[str, TransactionState] = {}
        manager.add_close_hook(self._on_close)

    # -- public API --------------------------------------------------------

    def begin(self, connection_id: str | None) -> Transaction:
        connection = self._manager.resolve(connection_id)
        with connection.guard() as handle:
            return self.begin_locked(connection, handle)

    def commit(self, connection_id: str | None) -> Transaction:
        connection = self._manager.resolve(connection_id)
        with connection.guard() as handle:
            return self.commit_locked(connection, handle)

    def rollback(self, connection_id: str | None) -> Transaction:
        connection = self._manager.resolve(connection_id)
        with connection.guard() as handle:
            return self.rollback_locked(connection, handle)

    def active(self, connection_id: str) -> Transaction | None:
        with self._lock:
            return self._active.get(connection_id)

    def current(self, connection_id: str | None) -> Transaction | None:
        """The active transaction of a connection (None resolves the active one)."""
        return self.active(self._manager.resolve(connection_id).id)

    def state(self, connection_id: str) -> TransactionState:
        return TransactionState.ACTIVE if self.active(connection_id) else TransactionState.IDLE

    def last_outcome(self, connection_id: str) -> TransactionState | None:
        with self._lock:
            return self._last_outcome.get(connection_id)

    def record(self, connection_id: str, sql: str, kind: StatementKind) -> None:
        """Append an applied statement to the active transaction, if any."""
        with self._lock:
            transaction = self._active.get(connection_id)
            if transaction is None:
                return
            transaction.statements.append(sql)
            if kind is StatementKind.DDL:
                transaction.touched_schema = True

    # -- lock-held variants --------------------------------------------------

    def begin_locked(
        self,
        connection: ManagedConnection,
        handle: sqlite3.Connection,
        sql: str | None = None,
    ) -> Transaction:
        if self.active(connection.id) is not None or handle.in_transaction:
            raise TransactionAlreadyActive(f"A transaction is already active on connection {connection.id}.")
        try:
            handle.execute(sql or self._begin_sql)
        except sqlite3.Error as exc:
            raise errors.translate(exc, connection=connection) from exc

        transaction = Transaction(connection_id=connection.id, started_at=time.time())
        with self._lock:
            self._active[connection.id] = transaction
        self._logger.debug(f"Transaction started on {connection.id}")
        self._events.publish(TransactionStateChanged(connection.id, TransactionState.ACTIVE))
        return transaction

    def commit_locked(self, connection: ManagedConnection, handle: sqlite3.Connection) -> Transaction:
        transaction = self._require_active(connection.id)
        try:
            handle.execute("COMMIT")
        except sqlite3.Error as exc:
            error = errors.translate(exc, connection=connection)
            # deferred foreign keys fail at COMMIT; the span must not stay half-applied
            self.rollback_locked(connection, handle, reason=f"commit failed: {error.code}")
            raise error from exc

        self._finish(transaction, TransactionState.COMMITTED)
        self._logger.debug(f"Transaction committed on {connection.id} ({len(transaction.statements)} statements)")
        self._events.publish(TransactionStateChanged(connection.id, TransactionState.COMMITTED))
        return transaction

    def rollback_locked(
        self,
        connection: ManagedConnection,
        handle: sqlite3.Connection | None,
        *,
        reason: str | None = None,
    ) -> Transaction:
        transaction = self._require_active(connection.id)
        rollback_error: Exception | None = None
        if handle is not None and handle.in_transaction:
            try:
                handle.execute("ROLLBACK")
            except sqlite3.Error as exc:
                rollback_error = exc

        self._finish(transaction, TransactionState.ROLLED_BACK)
        self._logger.debug(f"Transaction rolled back on {connection.id}{f' ({reason})' if reason else ''}")
        self._events.publish(TransactionStateChanged(connection.id, TransactionState.ROLLED_BACK, reason))
        if transaction.touched_schema:
            self._inspector.invalidate(connection.id)
            self._events.publish(SchemaChanged(connection.id))
        if rollback_error is not None:
            raise errors.translate(rollback_error, connection=connection) from rollback_error
        return transaction

    # -- internals -----------------------------------------------------------

    def _require_active(self, connection_id: str) -> Transaction:
        transaction = self.active(connection_id)
        if transaction is None:
            raise NoActiveTransaction(f"No transaction is active on connection {connection_id}.")
        return transaction

    def _finish(self, transaction: Transaction, outcome: TransactionState) -> None:
        transaction.state = outcome
        with self._lock:
            self._active.pop(transaction.connection_id, None)
            self._last_outcome[transaction.connection_id] = outcome

    def _on_close(self, connection: ManagedConnection) -> None:
        if self.active(connection.id) is not None:
            self.rollback_locked(connection, connection.handle, reason="connection_closed")
        with self._lock:
            self._last_outcome.pop(connection.id, None)
