"""Public exports for the sqlview engine."""

from .boundary import Boundary, serve_stream
from .connections import ConnectionManager, ManagedConnection
from .edits import CellEdit, Filter, RowDelete, RowInsert, TableEditor
from .events import CursorClosed, EventBus, SchemaChanged, TransactionStateChanged
from .executor import QueryExecutor
from .paginator import ResultPaginator
from .schema import SchemaInspector
from .transactions import TransactionCoordinator
from .types import (
    ColumnDescriptor,
    MutationSummary,
    ResultSet,
    SchemaSnapshot,
    StatementKind,
    StatementRequest,
)
from .workspace import Workspace

__all__ = [
    "Boundary",
    "CellEdit",
    "ColumnDescriptor",
    "ConnectionManager",
    "CursorClosed",
    "EventBus",
    "Filter",
    "ManagedConnection",
    "MutationSummary",
    "QueryExecutor",
    "ResultPaginator",
    "ResultSet",
    "RowDelete",
    "RowInsert",
    "SchemaChanged",
    "SchemaInspector",
    "SchemaSnapshot",
    "StatementKind",
    "StatementRequest",
    "TableEditor",
    "TransactionCoordinator",
    "TransactionStateChanged",
    "Workspace",
    "serve_stream",
]
