"""Schema Inspector: immutable schema snapshots built from SQLite's catalog."""

from __future__ import annotations

import re
import sqlite3
import threading
import time
from collections.abc import Sequence

from sqlview.shared.config import AppConfig
from sqlview.shared.database import quote_identifier
from sqlview.shared.exceptions import NoSnapshotYet, ValidationError
from sqlview.shared.logging import Logger, get_logger

from . import errors
from .connections import ConnectionManager, ManagedConnection
from .types import (
    ColumnSchema,
    ForeignKeySchema,
    IndexSchema,
    SchemaSnapshot,
    TableSchema,
    TriggerSchema,
)

_WITHOUT_ROWID_RE = re.compile(r"\)\s*WITHOUT\s+ROWID\s*;?\s*$", re.IGNORECASE)


class SchemaInspector:
    """Owns the latest ``SchemaSnapshot`` of every open connection.

    Snapshots are swapped under a lock, never edited, so a reader holding the
    previous snapshot keeps a consistent view while a rebuild runs.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        config: AppConfig,
        *,
        logger: Logger | None = None,
    ) -> None:
        self._manager = manager
        self._include_internal = config.schema.include_internal
        self._logger = logger or get_logger()
        self._lock = threading.Lock()
        self._snapshots: dict[str, SchemaSnapshot] = {}
        self._stale: set[str] = set()
        self._versions: dict[str, int] = {}
        manager.add_close_hook(self._forget)

    def refresh(self, connection_id: str | None) -> SchemaSnapshot:
        """Re-read the catalog and replace the connection's snapshot."""
        connection = self._manager.resolve(connection_id)
        with connection.guard() as handle:
            return self.rebuild(connection, handle)

    def rebuild(self, connection: ManagedConnection, handle: sqlite3.Connection) -> SchemaSnapshot:
        """Rebuild while the caller already holds the connection's execution lock."""
        with self._lock:
            version = self._versions.get(connection.id, 0) + 1
        try:
            snapshot = build_snapshot(
                handle,
                connection_id=connection.id,
                database_path=connection.path,
                version=version,
                include_internal=self._include_internal,
            )
        except sqlite3.Error as exc:
            raise errors.translate(exc, connection=connection) from exc

        with self._lock:
            self._versions[connection.id] = version
            self._snapshots[connection.id] = snapshot
            self._stale.discard(connection.id)
        self._logger.debug(
            f"Schema snapshot v{version} for {connection.id}: "
            f"{len(snapshot.tables)} tables, {len(snapshot.views)} views"
        )
        return snapshot

    def current(self, connection_id: str | None) -> SchemaSnapshot:
        """Return the last snapshot, rebuilding first if DDL invalidated it."""
        connection = self._manager.resolve(connection_id)
        with self._lock:
            snapshot = self._snapshots.get(connection.id)
            stale = connection.id in self._stale
        if snapshot is None:
            raise NoSnapshotYet(f"No schema snapshot has been built for connection {connection.id}.")
        if stale:
            return self.refresh(connection.id)
        return snapshot

    def ensure(self, connection_id: str | None) -> SchemaSnapshot:
        """Return the current snapshot, building the first one on demand."""
        try:
            return self.current(connection_id)
        except NoSnapshotYet:
            return self.refresh(connection_id)

    def invalidate(self, connection_id: str) -> None:
        with self._lock:
            if connection_id in self._snapshots:
                self._stale.add(connection_id)

    def is_stale(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._stale

    def list_tables(self, connection_id: str | None) -> list[str]:
        return list(self.ensure(connection_id).table_names)

    def require_relation(self, connection_id: str | None, name: str) -> TableSchema:
        """Look up a table or view by name, raising ``ValidationError`` if absent."""
        relation = self.ensure(connection_id).find(name)
        if relation is None:
            raise ValidationError(f"Table '{name}' does not exist in the database.")
        return relation

    def count_rows(self, connection_id: str | None, table: str) -> int:
        """Exact row count of a table or view; runs on demand only."""
        relation = self.require_relation(connection_id, table)
        connection = self._manager.resolve(connection_id)
        with connection.guard() as handle:
            try:
                row = handle.execute(f"SELECT COUNT(*) FROM {quote_identifier(relation.name)}").fetchone()
            except sqlite3.Error as exc:
                raise errors.translate(exc, connection=connection) from exc
        return int(row[0])

    def _forget(self, connection: ManagedConnection) -> None:
        with self._lock:
            self._snapshots.pop(connection.id, None)
            self._stale.discard(connection.id)
            self._versions.pop(connection.id, None)


# ---------------------------------------------------------------------------
# Catalog readers


def build_snapshot(
    handle: sqlite3.Connection,
    *,
    connection_id: str,
    database_path,
    version: int,
    include_internal: bool = False,
) -> SchemaSnapshot:
    sql = "SELECT type, name, tbl_name, sql FROM sqlite_master WHERE type IN ('table', 'view', 'trigger')"
    if not include_internal:
        sql += " AND name NOT LIKE 'sqlite\\_%' ESCAPE '\\'"
    sql += " ORDER BY name"
    entries = handle.execute(sql).fetchall()

    tables: list[TableSchema] = []
    views: list[TableSchema] = []
    triggers: list[TriggerSchema] = []
    for object_type, name, table_name, object_sql in entries:
        if object_type == "trigger":
            triggers.append(TriggerSchema(name=name, table=table_name, sql=object_sql))
            continue
        relation = _read_relation(handle, name, object_type, object_sql)
        (tables if object_type == "table" else views).append(relation)

    return SchemaSnapshot(
        connection_id=connection_id,
        database_path=database_path,
        version=version,
        tables=tuple(tables),
        views=tuple(views),
        triggers=tuple(triggers),
        built_at=time.time(),
    )


def _read_relation(handle: sqlite3.Connection, name: str, kind: str, sql: str | None) -> TableSchema:
    try:
        columns = _fetch_columns(handle, name)
        foreign_keys = _fetch_foreign_keys(handle, name) if kind == "table" else ()
        indexes = _fetch_indexes(handle, name) if kind == "table" else ()
    except sqlite3.OperationalError as exc:
        # e.g. virtual tables whose module is not loaded, views over dropped tables
        return TableSchema(name=name, kind=kind, sql=sql, columns=(), error=str(exc))

    return TableSchema(
        name=name,
        kind=kind,
        sql=sql,
        columns=columns,
        foreign_keys=foreign_keys,
        indexes=indexes,
        without_rowid=bool(sql and _WITHOUT_ROWID_RE.search(sql)),
        error=None if columns else "no columns reported",
    )


def _fetch_columns(handle: sqlite3.Connection, table: str) -> tuple[ColumnSchema, ...]:
    cursor = handle.execute(f"PRAGMA table_info({quote_identifier(table)})")
    return tuple(
        ColumnSchema(
            name=row[1],
            declared_type=row[2] or "",
            not_null=bool(row[3]),
            default=None if row[4] is None else str(row[4]),
            primary_key=int(row[5]),
        )
        for row in cursor.fetchall()
    )


def _fetch_foreign_keys(handle: sqlite3.Connection, table: str) -> tuple[ForeignKeySchema, ...]:
    cursor = handle.execute(f"PRAGMA foreign_key_list({quote_identifier(table)})")
    return tuple(
        ForeignKeySchema(
            id=int(row[0]),
            column=row[3],
            references_table=row[2],
            references_column=row[4],
            on_update=row[5],
            on_delete=row[6],
        )
        for row in cursor.fetchall()
    )


def _fetch_indexes(handle: sqlite3.Connection, table: str) -> tuple[IndexSchema, ...]:
    cursor = handle.execute(f"PRAGMA index_list({quote_identifier(table)})")
    indexes: list[IndexSchema] = []
    for row in cursor.fetchall():
        index_name = row[1]
        indexes.append(
            IndexSchema(
                name=index_name,
                unique=bool(row[2]),
                origin=row[3],
                partial=bool(row[4]),
                columns=_index_columns(handle, index_name),
            )
        )
    return tuple(indexes)


def _index_columns(handle: sqlite3.Connection, index_name: str) -> tuple[str, ...]:
    cursor = handle.execute(f"PRAGMA index_info({quote_identifier(index_name)})")
    rows: Sequence[tuple] = cursor.fetchall()
    return tuple(row[2] if row[2] is not None else "<expression>" for row in rows)
