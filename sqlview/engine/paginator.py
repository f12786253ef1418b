"""Result Paginator: server-side cursors that deliver bounded row windows.

A ``RowSource`` wraps one live ``sqlite3.Cursor``. Rows are stepped out of
SQLite only when a window is requested, so memory stays bounded by the window
size no matter how large the table is.
"""

from __future__ import annotations

import sqlite3
import threading
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field

from sqlview.shared.config import AppConfig
from sqlview.shared.exceptions import (
    Cancelled,
    ConnectionBusy,
    ConnectionClosedUnderneath,
    ConnectionNotOpen,
    SqlViewError,
    UnknownCursor,
    ValidationError,
)
from sqlview.shared.logging import Logger, get_logger

from . import errors
from .connections import ConnectionManager, ManagedConnection, RequestToken
from .events import CursorClosed, EventBus
from .types import CursorInfo, ResultSet, Row

_TOMBSTONE_LIMIT = 1024
_ITER_WINDOW = 256


class RowSource:
    """Lazy rows of one read statement.

    The first row is prefetched at execution time so that runtime errors
    surface from ``execute`` and column types can be inferred; it is handed
    out by the first fetch, never twice.
    """

    def __init__(
        self,
        connection: ManagedConnection,
        token: RequestToken,
        cursor: sqlite3.Cursor,
        first_row: Row | None,
    ) -> None:
        self.connection = connection
        self.token = token
        self._cursor: sqlite3.Cursor | None = cursor
        self._pending = first_row
        self._engine_done = first_row is None
        self._closed = False
        if self._engine_done:
            self._release()

    @property
    def exhausted(self) -> bool:
        return self._closed or (self._engine_done and self._pending is None)

    def fetch(self, size: int) -> list[Row]:
        if self.exhausted:
            return []
        if self.token.cancelled:
            raise Cancelled(f"Request {self.token.request_id} was cancelled.")

        with self.connection.guard(self.token):
            rows: list[Row] = []
            if self._pending is not None:
                rows.append(tuple(self._pending))
                self._pending = None
            wanted = size - len(rows)
            if wanted > 0 and not self._engine_done and self._cursor is not None:
                try:
                    more = self._cursor.fetchmany(wanted)
                except sqlite3.Error as exc:
                    raise errors.translate(exc, connection=self.connection, request=self.token) from exc
                rows.extend(tuple(row) for row in more)
                if len(more) < wanted:
                    self._engine_done = True
                    self._release()
        return rows

    def close(self) -> None:
        self._closed = True
        self._pending = None
        self._release()

    def __iter__(self) -> Iterator[Row]:
        while True:
            window = self.fetch(_ITER_WINDOW)
            if not window:
                return
            yield from window

    def _release(self) -> None:
        if self._cursor is not None:
            cursor, self._cursor = self._cursor, None
            try:
                cursor.close()
            except sqlite3.ProgrammingError:
                # the connection was closed first; the statement is already finalised
                pass


@dataclass(eq=False)
class _Cursor:
    handle: str
    result: ResultSet
    source: RowSource
    last_used: float
    rows_delivered: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)


class ResultPaginator:
    def __init__(
        self,
        manager: ConnectionManager,
        events: EventBus,
        config: AppConfig,
        *,
        clock: Callable[[], float] = time.monotonic,
        logger: Logger | None = None,
    ) -> None:
        self._events = events
        self._max_window = config.pagination.max_window
        self._idle_timeout = config.pagination.cursor_idle_timeout
        self._clock = clock
        self._logger = logger or get_logger()
        self._lock = threading.Lock()
        self._cursors: dict[str, _Cursor] = {}
        self._tombstones: OrderedDict[str, str] = OrderedDict()
        manager.add_close_hook(self._on_connection_close)

    @property
    def max_window(self) -> int:
        return self._max_window

    def open(self, result_set: ResultSet) -> str:
        """Register ``result_set`` and return its cursor handle."""
        source = result_set.rows
        if not isinstance(source, RowSource):
            raise ValidationError("Result set is not backed by a live statement.")
        self.reap_idle()
        handle = uuid.uuid4().hex
        with self._lock:
            self._cursors[handle] = _Cursor(handle=handle, result=result_set, source=source, last_used=self._clock())
        self._logger.debug(f"Cursor {handle} opened for request {result_set.request_id}")
        return handle

    def fetch(self, handle: str, window_size: int) -> list[Row]:
        """Return the next ``window_size`` rows (clamped); empty once exhausted."""
        if isinstance(window_size, bool) or not isinstance(window_size, int) or window_size <= 0:
            raise ValidationError(f"Window size must be a positive integer; got {window_size!r}.")
        window = min(window_size, self._max_window)
        cursor = self._lookup(handle)

        with cursor.lock:
            with self._lock:
                if handle not in self._cursors:
                    self._raise_for_missing(handle)
            cursor.last_used = self._clock()
            try:
                rows = cursor.source.fetch(window)
            except ConnectionBusy:
                raise
            except Cancelled:
                self._discard(handle, "cancelled", wait=False)
                raise
            except ConnectionNotOpen as exc:
                self._discard(handle, "connection_closed", wait=False)
                raise ConnectionClosedUnderneath(f"Connection closed underneath cursor {handle}.") from exc
            except SqlViewError:
                self._discard(handle, "error", wait=False)
                raise
            cursor.rows_delivered += len(rows)
        return rows

    def close(self, handle: str) -> None:
        """Close a cursor; closing an unknown or already-closed handle is a no-op."""
        self._discard(handle, "client", wait=True)

    def describe(self, handle: str) -> CursorInfo:
        cursor = self._lookup(handle)
        return CursorInfo(
            handle=handle,
            connection_id=cursor.result.connection_id,
            request_id=cursor.result.request_id,
            columns=cursor.result.columns,
            rows_delivered=cursor.rows_delivered,
            exhausted=cursor.source.exhausted,
        )

    def open_handles(self, connection_id: str | None = None) -> list[str]:
        with self._lock:
            return [
                handle
                for handle, cursor in self._cursors.items()
                if connection_id is None or cursor.result.connection_id == connection_id
            ]

    def close_for_connection(self, connection_id: str, reason: str) -> list[str]:
        handles = self.open_handles(connection_id)
        for handle in handles:
            self._discard(handle, reason, wait=False)
        return handles

    def reap_idle(self, now: float | None = None) -> list[str]:
        """Close cursors idle for longer than the configured timeout."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                handle
                for handle, cursor in self._cursors.items()
                if now - cursor.last_used > self._idle_timeout and not cursor.lock.locked()
            ]
        for handle in expired:
            self._discard(handle, "idle_timeout", wait=False)
        return expired

    # -- internals -----------------------------------------------------------

    def _lookup(self, handle: str) -> _Cursor:
        with self._lock:
            cursor = self._cursors.get(handle)
            if cursor is None:
                self._raise_for_missing(handle)
        return cursor

    def _raise_for_missing(self, handle: str) -> None:
        reason = self._tombstones.get(handle)
        if reason == "connection_closed":
            raise ConnectionClosedUnderneath(f"Connection closed underneath cursor {handle}.")
        if reason == "cancelled":
            raise Cancelled(f"Cursor {handle} was cancelled.")
        if reason == "idle_timeout":
            raise UnknownCursor(f"Cursor {handle} expired after being idle.")
        raise UnknownCursor(f"Unknown cursor {handle}.")

    def _discard(self, handle: str, reason: str, *, wait: bool) -> None:
        with self._lock:
            cursor = self._cursors.pop(handle, None)
            if cursor is None:
                return
            self._tombstones[handle] = reason
            while len(self._tombstones) > _TOMBSTONE_LIMIT:
                self._tombstones.popitem(last=False)
        if wait:
            with cursor.lock:
                cursor.source.close()
        else:
            cursor.source.close()
        self._logger.debug(f"Cursor {handle} closed ({reason})")
        self._events.publish(CursorClosed(handle, reason))

    def _on_connection_close(self, connection: ManagedConnection) -> None:
        self.close_for_connection(connection.id, "connection_closed")
