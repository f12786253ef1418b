"""Connection Manager: lifecycle of the SQLite files open in this process.

The manager's lock protects only the registry (which files are open, which
one is active). Engine I/O, including ``sqlite3.connect`` itself, happens
outside it so one slow open or query never blocks an unrelated open or close.
Each connection additionally owns an execution lock that admits one
statement at a time.
"""

from __future__ import annotations

import sqlite3
import threading
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from sqlview.shared.config import AppConfig, ExecutionSettings
from sqlview.shared.database import inspect_database_file, open_connection
from sqlview.shared.exceptions import (
    AlreadyOpen,
    ConnectionBusy,
    ConnectionLimitReached,
    ConnectionNotOpen,
    SqlViewError,
    UnknownConnection,
)
from sqlview.shared.logging import Logger, get_logger

from .types import ConnectionState

CloseHook = Callable[["ManagedConnection"], None]


class RequestToken:
    """Cancellation flag for one request, checked cooperatively by the engine."""

    __slots__ = ("request_id", "connection_id", "_event", "__weakref__")

    def __init__(self, request_id: str, connection_id: str) -> None:
        self.request_id = request_id
        self.connection_id = connection_id
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()


@dataclass(eq=False)
class ManagedConnection:
    """One open SQLite file and its engine handle."""

    id: str
    path: Path
    read_only: bool
    execution: ExecutionSettings
    state: ConnectionState = ConnectionState.OPENING
    handle: sqlite3.Connection | None = None
    opened_at: float | None = None
    error: str | None = None
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _ready: threading.Event = field(default_factory=threading.Event, repr=False)
    _open_error: SqlViewError | None = field(default=None, repr=False)
    _closing: bool = field(default=False, repr=False)
    _current: RequestToken | None = field(default=None, repr=False)

    # -- lifecycle (driven by the manager) ---------------------------------

    def _attach(self, handle: sqlite3.Connection) -> None:
        self.handle = handle
        self.opened_at = time.time()
        self.state = ConnectionState.OPEN
        handle.set_progress_handler(self._progress_check, self.execution.progress_interval)
        self._ready.set()

    def _fail_open(self, error: SqlViewError) -> None:
        self._open_error = error
        self.state = ConnectionState.CLOSED
        self._ready.set()

    def _wait_ready(self) -> None:
        self._ready.wait()
        if self._open_error is not None:
            raise self._open_error

    def mark_error(self, message: str) -> None:
        """Move the connection to Error; it must be closed and reopened."""
        self.state = ConnectionState.ERROR
        self.error = message

    # -- execution ---------------------------------------------------------

    @property
    def current_request(self) -> RequestToken | None:
        return self._current

    @contextmanager
    def guard(self, request: RequestToken | None = None) -> Iterator[sqlite3.Connection]:
        """Hold the execution lock for one statement (or one fetch window)."""
        if not self._acquire():
            raise ConnectionBusy(f"Connection {self.id} is busy with another statement.")
        try:
            handle = self._ensure_usable()
            self._current = request
            yield handle
        finally:
            self._current = None
            self._lock.release()

    @contextmanager
    def exclusive(self) -> Iterator[sqlite3.Connection | None]:
        """Wait for the in-flight statement to finish, ignoring the busy policy.

        Used while closing: the running statement is interrupted first so the
        wait is short.
        """
        with self._lock:
            yield self.handle

    def clear_request(self) -> None:
        """Stop attributing engine work to the current request (used before cleanup)."""
        self._current = None

    def interrupt(self, request: RequestToken | None = None) -> bool:
        """Stop the running statement when it belongs to ``request`` (or any).

        A targeted stop flags the token and lets the progress handler abort
        that one statement; other cursors open on the handle keep working.
        ``sqlite3.Connection.interrupt`` aborts every active statement until
        all of them finish, so it is only used with no target (on close).
        """
        current = self._current
        if current is None or self.handle is None:
            return False
        if request is not None:
            if current is not request:
                return False
            request.cancel()
            return True
        self.handle.interrupt()
        return True

    def _acquire(self) -> bool:
        if self.execution.busy_policy == "queue":
            return self._lock.acquire(timeout=self.execution.queue_timeout)
        return self._lock.acquire(blocking=False)

    def _ensure_usable(self) -> sqlite3.Connection:
        if self._closing or self.state is ConnectionState.CLOSED or self.handle is None:
            raise ConnectionNotOpen(f"Connection {self.id} is not open.")
        if self.state is ConnectionState.ERROR:
            raise ConnectionNotOpen(
                f"Connection {self.id} is in an error state ({self.error}); close and reopen it."
            )
        if self.state is not ConnectionState.OPEN:
            raise ConnectionNotOpen(f"Connection {self.id} is still opening.")
        return self.handle

    def _progress_check(self) -> int:
        current = self._current
        if current is not None and current.cancelled:
            return 1
        return 0


class ConnectionManager:
    """Registry of open databases with one active connection."""

    def __init__(self, config: AppConfig, *, logger: Logger | None = None) -> None:
        self._config = config
        self._logger = logger or get_logger()
        self._lock = threading.Lock()
        self._by_id: dict[str, ManagedConnection] = {}
        self._by_path: dict[Path, ManagedConnection] = {}
        self._active_id: str | None = None
        self._close_hooks: list[CloseHook] = []

    def add_close_hook(self, hook: CloseHook) -> None:
        """Run ``hook`` while a connection is being closed, under its execution lock."""
        self._close_hooks.append(hook)

    def open(self, path: str | Path, *, reuse: bool = True, read_only: bool = False) -> ManagedConnection:
        """Open ``path`` or return the connection already open for it.

        Concurrent opens of one file serialise on the placeholder registered by
        the first caller; later callers receive its handle or its error.
        """
        database = inspect_database_file(path)

        with self._lock:
            existing = self._by_path.get(database.path)
            if existing is not None:
                if not reuse:
                    raise AlreadyOpen(f"Database {database.path} is already open.", existing.id)
            else:
                if len(self._by_id) >= self._config.connections.max_open:
                    raise ConnectionLimitReached(
                        f"At most {self._config.connections.max_open} databases may be open at once."
                    )
                placeholder = ManagedConnection(
                    id=uuid.uuid4().hex,
                    path=database.path,
                    read_only=read_only or not database.writable,
                    execution=self._config.execution,
                )
                self._by_id[placeholder.id] = placeholder
                self._by_path[placeholder.path] = placeholder

        if existing is not None:
            existing._wait_ready()
            self._logger.debug(f"Reusing connection {existing.id} for {existing.path}")
            return existing

        try:
            handle = open_connection(database, self._config.connections, read_only=placeholder.read_only)
        except SqlViewError as exc:
            with self._lock:
                self._by_id.pop(placeholder.id, None)
                self._by_path.pop(placeholder.path, None)
            placeholder._fail_open(exc)
            self._logger.debug(f"Opening {database.path} failed: {exc}")
            raise

        with self._lock:
            placeholder._attach(handle)
            if self._active_id is None:
                self._active_id = placeholder.id
        self._logger.debug(
            f"Opened {placeholder.path} as {placeholder.id}{' (read-only)' if placeholder.read_only else ''}"
        )
        return placeholder

    def close(self, connection_id: str) -> None:
        """Close a connection, rolling back and invalidating everything bound to it."""
        with self._lock:
            connection = self._by_id.pop(connection_id, None)
            if connection is None:
                raise UnknownConnection(f"No open connection with id {connection_id}.")
            self._by_path.pop(connection.path, None)
            if self._active_id == connection_id:
                self._active_id = next(iter(self._by_id), None)
            connection._closing = True

        current = connection.current_request
        if current is not None:
            current.cancel()
        connection.interrupt()

        hook_error: Exception | None = None
        with connection.exclusive() as handle:
            for hook in self._close_hooks:
                try:
                    hook(connection)
                except Exception as exc:
                    # the handle is closed regardless; the first failure is re-raised below
                    self._logger.error(f"Close hook failed for {connection_id}: {exc}")
                    hook_error = hook_error or exc
            if handle is not None:
                handle.close()
            connection.handle = None
            connection.state = ConnectionState.CLOSED
        self._logger.debug(f"Closed connection {connection_id} ({connection.path})")
        if hook_error is not None:
            raise hook_error

    def close_all(self) -> None:
        for connection_id in [c.id for c in self.list()]:
            try:
                self.close(connection_id)
            except UnknownConnection:
                continue

    def set_active(self, connection_id: str) -> ManagedConnection:
        with self._lock:
            connection = self._by_id.get(connection_id)
            if connection is None:
                raise UnknownConnection(f"No open connection with id {connection_id}.")
            if connection.state is not ConnectionState.OPEN:
                raise ConnectionNotOpen(f"Connection {connection_id} is {connection.state.value}.")
            self._active_id = connection_id
        return connection

    def active(self) -> ManagedConnection | None:
        with self._lock:
            if self._active_id is None:
                return None
            return self._by_id.get(self._active_id)

    def lookup(self, connection_id: str) -> ManagedConnection | None:
        with self._lock:
            return self._by_id.get(connection_id)

    def get(self, connection_id: str) -> ManagedConnection:
        with self._lock:
            connection = self._by_id.get(connection_id)
        if connection is None:
            raise UnknownConnection(f"No open connection with id {connection_id}.")
        return connection

    def resolve(self, connection_id: str | None) -> ManagedConnection:
        """Return the named connection, or the active one when ``connection_id`` is None."""
        if connection_id is None:
            connection = self.active()
            if connection is None:
                raise ConnectionNotOpen("No database is open.")
            return connection
        with self._lock:
            connection = self._by_id.get(connection_id)
        if connection is None:
            raise ConnectionNotOpen(f"Connection {connection_id} is not open.")
        return connection

    def list(self) -> list[ManagedConnection]:
        with self._lock:
            return list(self._by_id.values())

    @property
    def active_id(self) -> str | None:
        return self._active_id
