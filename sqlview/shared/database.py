"""Low-level SQLite file validation and connection helpers."""

from __future__ import annotations

import os
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from . import paths
from .config import ConnectionSettings
from .exceptions import (
    DatabaseNotFound,
    EngineError,
    NotASqliteFile,
    PermissionDenied,
    ValidationError,
)

SQLITE_HEADER = b"SQLite format 3\x00"


@dataclass(frozen=True, slots=True)
class DatabaseFile:
    """A user database that passed the pre-open checks."""

    path: Path
    writable: bool
    empty: bool


def inspect_database_file(path_str: str | Path) -> DatabaseFile:
    """Validate that ``path_str`` points at a readable SQLite database.

    The header is read directly so that non-database files fail fast with
    ``NotASqliteFile`` instead of a late "file is not a database" engine error.
    Zero-length files are accepted: SQLite treats them as empty databases.
    """
    if not str(path_str).strip():
        raise ValidationError("Database path must not be empty.")
    path = paths.resolve_database_path(path_str)
    if not path.exists():
        raise DatabaseNotFound(f"Database file does not exist: {path}")
    if not path.is_file():
        raise ValidationError(f"Path exists but is not a regular file: {path}")
    if not os.access(path, os.R_OK):
        raise PermissionDenied(f"Database file is not readable: {path}")

    try:
        with path.open("rb") as handle:
            header = handle.read(len(SQLITE_HEADER))
    except PermissionError as exc:
        raise PermissionDenied(f"Database file is not readable: {path}") from exc
    except OSError as exc:
        raise EngineError(f"Cannot read database file {path}: {exc}") from exc

    if header and header != SQLITE_HEADER:
        raise NotASqliteFile(f"File is not a SQLite database (invalid header): {path}")

    writable = os.access(path, os.W_OK) and os.access(path.parent, os.W_OK)
    return DatabaseFile(path=path, writable=writable, empty=not header)


def open_connection(
    database: DatabaseFile,
    settings: ConnectionSettings,
    *,
    read_only: bool = False,
) -> sqlite3.Connection:
    """Open an autocommit connection with the configured pragmas applied.

    ``isolation_level=None`` hands transaction control to the caller; the
    per-connection lock in the engine serialises access, so the handle may be
    used from the worker pool's threads.
    """
    mode = "ro" if read_only or not database.writable else "rw"
    uri = f"{database.path.as_uri()}?mode={mode}"
    try:
        connection = sqlite3.connect(
            uri,
            uri=True,
            timeout=settings.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
    except sqlite3.DatabaseError as exc:
        raise EngineError(f"Unable to open {database.path}: {exc}", fatal=True) from exc

    try:
        connection.execute(f"PRAGMA foreign_keys = {'ON' if settings.foreign_keys else 'OFF'};")
        # Forces SQLite to read the header pages now; corruption surfaces at open.
        connection.execute("PRAGMA schema_version;").fetchone()
    except sqlite3.DatabaseError as exc:
        connection.close()
        if "not a database" in str(exc).lower():
            raise NotASqliteFile(f"File is not a SQLite database: {database.path}") from exc
        raise EngineError(f"Unable to open {database.path}: {exc}", fatal=True) from exc
    return connection


def quote_identifier(name: str) -> str:
    """Quote a table, column or index name for safe inclusion in SQL text."""
    return '"' + name.replace('"', '""') + '"'
