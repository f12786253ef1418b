"""Translation of ``sqlite3`` exceptions into the project's error taxonomy."""

from __future__ import annotations

import re
import sqlite3

from sqlview.shared.exceptions import (
    Cancelled,
    ConnectionBusy,
    ConstraintViolation,
    EngineError,
    PermissionDenied,
    SqlViewError,
    StatementSyntaxError,
)

from .connections import ManagedConnection, RequestToken
from .statements import locate_error
from .types import Statement

_CONSTRAINT_RE = re.compile(
    r"(?P<kind>UNIQUE|NOT NULL|CHECK|FOREIGN KEY|PRIMARY KEY) constraint failed(?::\s*(?P<target>.+))?",
    re.IGNORECASE,
)

_ERRORNAME_KINDS = {
    "SQLITE_CONSTRAINT_UNIQUE": "unique",
    "SQLITE_CONSTRAINT_PRIMARYKEY": "primary_key",
    "SQLITE_CONSTRAINT_NOTNULL": "not_null",
    "SQLITE_CONSTRAINT_FOREIGNKEY": "foreign_key",
    "SQLITE_CONSTRAINT_CHECK": "check",
    "SQLITE_CONSTRAINT_ROWID": "primary_key",
}

# Faults after which the handle cannot be trusted.
_FATAL_PREFIXES = ("SQLITE_IOERR", "SQLITE_CORRUPT", "SQLITE_FULL", "SQLITE_NOTADB", "SQLITE_CANTOPEN")
_FATAL_MESSAGES = (
    "disk i/o error",
    "database disk image is malformed",
    "database or disk is full",
    "file is not a database",
    "unable to open database file",
)

_PREPARE_MESSAGES = (
    "syntax error",
    "incomplete input",
    "unrecognized token",
    "no such table",
    "no such column",
    "no such function",
    "no such index",
    "no such view",
    "no such collation sequence",
    "ambiguous column name",
    "already exists",
    "wrong number of arguments",
    "misuse of aggregate",
    "values were supplied",
    "has no column named",
    "incorrect number of bindings",
    "you did not supply a value for binding",
    "binding parameter",
    "type 'dict' is not supported",
    "you can only execute one statement at a time",
)

_BUSY_MESSAGES = ("database is locked", "database table is locked", "database schema is locked")


def translate(
    exc: Exception,
    *,
    connection: ManagedConnection | None = None,
    statement: Statement | None = None,
    request: RequestToken | None = None,
) -> SqlViewError:
    """Map an engine exception onto the error taxonomy.

    Fatal engine faults also move ``connection`` to the Error state.
    """
    if isinstance(exc, SqlViewError):
        return exc

    message = str(exc)
    lowered = message.lower()
    errorname = getattr(exc, "sqlite_errorname", "") or ""

    if "interrupted" in lowered or errorname == "SQLITE_INTERRUPT":
        reason = "cancelled" if request is None or request.cancelled else "interrupted"
        return Cancelled(f"Request was {reason}.")

    if isinstance(exc, sqlite3.IntegrityError) or errorname.startswith("SQLITE_CONSTRAINT"):
        return _constraint_violation(message, errorname)

    if errorname.startswith("SQLITE_BUSY") or errorname.startswith("SQLITE_LOCKED") or any(
        text in lowered for text in _BUSY_MESSAGES
    ):
        return ConnectionBusy(f"Database is locked: {message}")

    if errorname.startswith("SQLITE_READONLY") or "readonly database" in lowered:
        return PermissionDenied(f"Database is read-only: {message}")

    if errorname.startswith(_FATAL_PREFIXES) or any(text in lowered for text in _FATAL_MESSAGES):
        if connection is not None:
            connection.mark_error(message)
        return EngineError(message, fatal=True)

    if isinstance(exc, (sqlite3.OperationalError, sqlite3.ProgrammingError)) and any(
        text in lowered for text in _PREPARE_MESSAGES
    ):
        position = locate_error(message, statement) if statement is not None else None
        return StatementSyntaxError(message, position)

    if isinstance(exc, sqlite3.Warning) and "one statement at a time" in lowered:
        position = statement.offset if statement is not None else None
        return StatementSyntaxError(message, position)

    return EngineError(message)


def _constraint_violation(message: str, errorname: str) -> ConstraintViolation:
    kind = _ERRORNAME_KINDS.get(errorname)
    table: str | None = None
    column: str | None = None
    match = _CONSTRAINT_RE.search(message)
    if match:
        if kind is None:
            kind = match.group("kind").lower().replace(" ", "_")
        target = (match.group("target") or "").strip()
        if target and match.group("kind").upper() in {"UNIQUE", "NOT NULL", "PRIMARY KEY"}:
            # "t.a" or "t.a, t.b" for composite keys
            first = target.split(",")[0].strip()
            if "." in first:
                table, column = first.split(".", 1)
            else:
                column = first
        elif target:
            column = target
    return ConstraintViolation(message, kind=kind or "other", table=table, column=column)
