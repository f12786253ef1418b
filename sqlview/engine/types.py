"""Data structures shared across the sqlview engine modules."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Mapping, Sequence, Union

Scalar = Union[None, int, float, str, bytes]
Row = tuple[Scalar, ...]
Parameters = Union[Sequence[Any], Mapping[str, Any], None]


class StatementKind(str, enum.Enum):
    """How a statement is routed by the executor."""

    READ = "read"
    WRITE = "write"
    DDL = "ddl"
    TRANSACTION = "transaction"
    OTHER = "other"


class ConnectionState(str, enum.Enum):
    CLOSED = "Closed"
    OPENING = "Opening"
    OPEN = "Open"
    ERROR = "Error"


class TransactionState(str, enum.Enum):
    IDLE = "Idle"
    ACTIVE = "Active"
    COMMITTED = "Committed"
    ROLLED_BACK = "RolledBack"


# ---------------------------------------------------------------------------
# Requests and results


@dataclass(frozen=True, slots=True)
class StatementRequest:
    """SQL text plus optional bindings, created per invocation."""

    sql: str
    params: Parameters = None
    request_id: str | None = None
    window: int | None = None


@dataclass(frozen=True, slots=True)
class Statement:
    """One statement of a (possibly multi-statement) request."""

    sql: str
    kind: StatementKind
    keyword: str
    offset: int  # character offset of ``sql`` inside the request text


@dataclass(frozen=True, slots=True)
class ColumnDescriptor:
    """Result column metadata.

    ``declared_type`` is only known when the column maps directly onto a table
    column; ``inferred_type`` comes from the first row's storage class.
    """

    name: str
    declared_type: str | None = None
    inferred_type: str | None = None


@dataclass(slots=True)
class ResultSet:
    """Columns plus a lazy row source produced by a read statement.

    ``rows`` is consumed by the paginator; nothing here materialises the full
    result.
    """

    columns: tuple[ColumnDescriptor, ...]
    rows: Iterator[Row]
    connection_id: str
    request_id: str
    sql: str

    @property
    def column_names(self) -> tuple[str, ...]:
        return tuple(column.name for column in self.columns)


@dataclass(frozen=True, slots=True)
class MutationSummary:
    """Outcome record for statements that do not produce a result set."""

    rows_affected: int
    last_insert_rowid: int | None
    kind: StatementKind = StatementKind.WRITE
    statements_executed: int = 1
    request_id: str | None = None


ExecutionOutcome = Union[ResultSet, MutationSummary]


# ---------------------------------------------------------------------------
# Schema


@dataclass(frozen=True, slots=True)
class ColumnSchema:
    name: str
    declared_type: str
    not_null: bool
    default: str | None
    primary_key: int  # 1-based position inside the primary key, 0 when not part of it

    @property
    def is_primary_key(self) -> bool:
        return self.primary_key > 0


@dataclass(frozen=True, slots=True)
class ForeignKeySchema:
    id: int
    column: str
    references_table: str
    references_column: str | None
    on_update: str
    on_delete: str


@dataclass(frozen=True, slots=True)
class IndexSchema:
    name: str
    unique: bool
    origin: str  # "c" (CREATE INDEX), "u" (UNIQUE constraint) or "pk"
    partial: bool
    columns: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class TableSchema:
    """A table or view in a schema snapshot.

    Objects whose columns could not be read keep ``columns=()`` and explain
    why in ``error`` rather than disappearing from the snapshot.
    """

    name: str
    kind: str  # "table" or "view"
    sql: str | None
    columns: tuple[ColumnSchema, ...]
    foreign_keys: tuple[ForeignKeySchema, ...] = ()
    indexes: tuple[IndexSchema, ...] = ()
    without_rowid: bool = False
    error: str | None = None

    @property
    def primary_key(self) -> tuple[str, ...]:
        keyed = sorted((c for c in self.columns if c.is_primary_key), key=lambda c: c.primary_key)
        return tuple(column.name for column in keyed)

    def column(self, name: str) -> ColumnSchema | None:
        for column in self.columns:
            if column.name == name:
                return column
        lowered = name.lower()
        for column in self.columns:
            if column.name.lower() == lowered:
                return column
        return None


@dataclass(frozen=True, slots=True)
class TriggerSchema:
    name: str
    table: str
    sql: str | None


@dataclass(frozen=True, slots=True)
class SchemaSnapshot:
    """Immutable view of a database schema; replaced whole on every rebuild."""

    connection_id: str
    database_path: Path
    version: int
    tables: tuple[TableSchema, ...]
    views: tuple[TableSchema, ...]
    triggers: tuple[TriggerSchema, ...]
    built_at: float

    @property
    def relations(self) -> tuple[TableSchema, ...]:
        return self.tables + self.views

    @property
    def table_names(self) -> tuple[str, ...]:
        return tuple(table.name for table in self.tables)

    def find(self, name: str) -> TableSchema | None:
        for relation in self.relations:
            if relation.name == name:
                return relation
        lowered = name.lower()
        for relation in self.relations:
            if relation.name.lower() == lowered:
                return relation
        return None


# ---------------------------------------------------------------------------
# Cursors and transactions


@dataclass(frozen=True, slots=True)
class CursorInfo:
    handle: str
    connection_id: str
    request_id: str
    columns: tuple[ColumnDescriptor, ...]
    rows_delivered: int
    exhausted: bool


@dataclass(slots=True)
class Transaction:
    """An explicit begin…commit/rollback span on one connection."""

    connection_id: str
    started_at: float
    state: TransactionState = TransactionState.ACTIVE
    statements: list[str] = field(default_factory=list)
    touched_schema: bool = False
