"""Wiring of the engine components for one process."""

from __future__ import annotations

from pathlib import Path

from sqlview.shared.config import AppConfig, default_config
from sqlview.shared.logging import Logger, get_logger

from .connections import ConnectionManager, ManagedConnection
from .edits import TableEditor
from .events import EventBus
from .executor import QueryExecutor
from .paginator import ResultPaginator
from .schema import SchemaInspector
from .transactions import TransactionCoordinator


class Workspace:
    """Owns the connection manager and every component bound to it.

    Close hooks run in registration order: schema snapshots are dropped, then
    the active transaction is rolled back, then open cursors are invalidated.
    """

    def __init__(self, config: AppConfig | None = None, *, logger: Logger | None = None) -> None:
        self.config = config or default_config()
        self.logger = logger or get_logger()
        self.events = EventBus(self.logger)
        self.connections = ConnectionManager(self.config, logger=self.logger)
        self.schema = SchemaInspector(self.connections, self.config, logger=self.logger)
        self.transactions = TransactionCoordinator(
            self.connections, self.schema, self.events, self.config, logger=self.logger
        )
        self.paginator = ResultPaginator(self.connections, self.events, self.config, logger=self.logger)
        self.executor = QueryExecutor(
            self.connections,
            self.schema,
            self.transactions,
            self.events,
            self.config,
            logger=self.logger,
        )
        self.editor = TableEditor(self.executor, self.schema)

    def open(self, path: str | Path, *, reuse: bool = True, read_only: bool = False) -> ManagedConnection:
        """Open a database and build its first schema snapshot."""
        connection = self.connections.open(path, reuse=reuse, read_only=read_only)
        self.schema.ensure(connection.id)
        return connection

    def close(self, connection_id: str) -> None:
        self.connections.close(connection_id)

    def shutdown(self) -> None:
        self.connections.close_all()

    def __enter__(self) -> Workspace:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()
