"""Project-wide custom exceptions.

Every error carries a stable ``code`` that the command boundary uses as the
``kind`` of an error response, plus optional structured ``details``.
"""

from __future__ import annotations

from typing import Any


class SqlViewError(Exception):
    """Base exception for the sqlview core."""

    code = "Error"

    def details(self) -> dict[str, Any]:
        return {}


class ConfigurationError(SqlViewError):
    """Raised when configuration loading or validation fails."""

    code = "ConfigurationError"


class DatabaseError(SqlViewError):
    """Raised for database-related issues."""

    code = "DatabaseError"


# ---------------------------------------------------------------------------
# Validation


class ValidationError(DatabaseError):
    """Raised for malformed input: bad paths, commands, identifiers or SQL."""

    code = "ValidationError"


class StatementSyntaxError(ValidationError):
    """Raised when SQLite rejects a statement while preparing it."""

    code = "SyntaxError"

    def __init__(self, message: str, position: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.position = position

    def details(self) -> dict[str, Any]:
        return {"position": self.position}


# ---------------------------------------------------------------------------
# Connection lifecycle


class DatabaseNotFound(DatabaseError):
    code = "NotFound"


class PermissionDenied(DatabaseError):
    code = "PermissionDenied"


class NotASqliteFile(DatabaseError):
    code = "NotASqliteFile"


class AlreadyOpen(DatabaseError):
    code = "AlreadyOpen"

    def __init__(self, message: str, connection_id: str) -> None:
        super().__init__(message)
        self.connection_id = connection_id

    def details(self) -> dict[str, Any]:
        return {"connectionId": self.connection_id}


class ConnectionLimitReached(DatabaseError):
    code = "ConnectionLimitReached"


class UnknownConnection(DatabaseError):
    code = "UnknownConnection"


class ConnectionNotOpen(DatabaseError):
    code = "ConnectionNotOpen"


class ConnectionBusy(DatabaseError):
    """Raised when another statement is already running on the connection."""

    code = "ConnectionBusy"


# ---------------------------------------------------------------------------
# Execution


class ConstraintViolation(DatabaseError):
    """Raised when a statement violates a table constraint."""

    code = "ConstraintViolation"

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        table: str | None = None,
        column: str | None = None,
        rows_affected: int = 0,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.table = table
        self.column = column
        self.rows_affected = rows_affected

    def details(self) -> dict[str, Any]:
        return {
            "constraint": self.kind,
            "table": self.table,
            "column": self.column,
            "rowsAffected": self.rows_affected,
        }


class EngineError(DatabaseError):
    """Raised for I/O failures, corruption, full disks and other engine faults."""

    code = "EngineError"

    def __init__(self, message: str, *, fatal: bool = False) -> None:
        super().__init__(message)
        self.fatal = fatal

    def details(self) -> dict[str, Any]:
        return {"fatal": self.fatal}


class Cancelled(DatabaseError):
    """Raised when a request is cancelled; the connection remains usable."""

    code = "Cancelled"


# ---------------------------------------------------------------------------
# Schema, cursors, transactions


class NoSnapshotYet(DatabaseError):
    code = "NoSnapshotYet"


class UnknownCursor(DatabaseError):
    code = "UnknownCursor"


class ConnectionClosedUnderneath(DatabaseError):
    code = "ConnectionClosedUnderneath"


class TransactionAlreadyActive(DatabaseError):
    code = "TransactionAlreadyActive"


class NoActiveTransaction(DatabaseError):
    code = "NoActiveTransaction"


class InternalError(SqlViewError):
    """Raised when the engine reaches a state its own bookkeeping rules out."""

    code = "InternalError"
