from __future__ import annotations

import sqlite3
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable

import pytest

from sqlview.engine.connections import ManagedConnection
from sqlview.engine.workspace import Workspace
from sqlview.shared.config import AppConfig, default_config

SAMPLE_SCHEMA = """
CREATE TABLE users (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL UNIQUE,
    email TEXT
);
CREATE TABLE orders (
    id INTEGER PRIMARY KEY,
    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    total REAL DEFAULT 0
);
CREATE INDEX idx_orders_user ON orders(user_id);
CREATE VIEW user_totals AS
    SELECT u.name AS name, SUM(o.total) AS spent
    FROM users u LEFT JOIN orders o ON o.user_id = u.id
    GROUP BY u.id;
CREATE TRIGGER orders_audit AFTER INSERT ON orders BEGIN SELECT 1; END;
INSERT INTO users (id, name, email) VALUES
    (1, 'ada', 'ada@example.com'),
    (2, 'grace', NULL),
    (3, 'linus', 'linus@example.com');
INSERT INTO orders (user_id, total) VALUES (1, 10.5), (1, 4.5), (2, 7.0);
"""


@pytest.fixture
def make_database(tmp_path: Path) -> Callable[..., Path]:
    def _make(name: str = "sample.db", script: str = SAMPLE_SCHEMA) -> Path:
        path = tmp_path / name
        connection = sqlite3.connect(path)
        try:
            connection.executescript(script)
            connection.commit()
        finally:
            connection.close()
        return path

    return _make


@pytest.fixture
def sample_db(make_database: Callable[..., Path]) -> Path:
    return make_database()


@pytest.fixture
def config_factory() -> Callable[..., AppConfig]:
    """Build an AppConfig with selected settings sections overridden."""

    def _build(**sections: dict[str, Any]) -> AppConfig:
        config = default_config()
        updates = {name: replace(getattr(config, name), **values) for name, values in sections.items()}
        return replace(config, **updates)

    return _build


@pytest.fixture
def app_config() -> AppConfig:
    return default_config()


@pytest.fixture
def workspace(app_config: AppConfig):
    ws = Workspace(app_config)
    yield ws
    ws.shutdown()


@pytest.fixture
def recorded_events(workspace: Workspace) -> list[Any]:
    events: list[Any] = []
    workspace.events.subscribe(events.append)
    return events


@pytest.fixture
def connection(workspace: Workspace, sample_db: Path) -> ManagedConnection:
    return workspace.open(sample_db)


@pytest.fixture
def read_back() -> Callable[[Path, str], list[tuple]]:
    """Query a database through an independent sqlite3 connection."""

    def _read(path: Path, sql: str) -> list[tuple]:
        other = sqlite3.connect(path)
        try:
            return other.execute(sql).fetchall()
        finally:
            other.close()

    return _read
