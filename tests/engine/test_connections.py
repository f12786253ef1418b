from __future__ import annotations

import threading
from pathlib import Path

import pytest

from sqlview.engine.connections import ConnectionManager, RequestToken
from sqlview.engine.types import ConnectionState
from sqlview.shared.config import AppConfig
from sqlview.shared.exceptions import (
    AlreadyOpen,
    ConnectionBusy,
    ConnectionLimitReached,
    ConnectionNotOpen,
    DatabaseNotFound,
    NotASqliteFile,
    UnknownConnection,
)


@pytest.fixture
def manager(app_config: AppConfig):
    mgr = ConnectionManager(app_config)
    yield mgr
    mgr.close_all()


def test_open_sets_first_connection_active(manager: ConnectionManager, sample_db: Path) -> None:
    connection = manager.open(sample_db)
    assert connection.state is ConnectionState.OPEN
    assert connection.path == sample_db.resolve()
    assert manager.active_id == connection.id
    assert manager.resolve(None) is connection


def test_open_same_file_returns_same_connection(manager: ConnectionManager, sample_db: Path) -> None:
    first = manager.open(sample_db)
    second = manager.open(str(sample_db.parent / "." / sample_db.name))
    assert first is second
    assert len(manager.list()) == 1


def test_open_without_reuse_reports_existing_id(manager: ConnectionManager, sample_db: Path) -> None:
    first = manager.open(sample_db)
    with pytest.raises(AlreadyOpen) as excinfo:
        manager.open(sample_db, reuse=False)
    assert excinfo.value.connection_id == first.id


def test_concurrent_opens_share_one_handle(manager: ConnectionManager, sample_db: Path) -> None:
    barrier = threading.Barrier(8)
    results: list[str] = []
    errors: list[Exception] = []

    def worker() -> None:
        barrier.wait()
        try:
            results.append(manager.open(sample_db).id)
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert errors == []
    assert len(set(results)) == 1
    assert len(manager.list()) == 1


def test_open_rejects_missing_and_foreign_files(manager: ConnectionManager, tmp_path: Path) -> None:
    with pytest.raises(DatabaseNotFound):
        manager.open(tmp_path / "missing.db")
    text_file = tmp_path / "notes.txt"
    text_file.write_text("hello there, I am not SQLite", encoding="utf-8")
    with pytest.raises(NotASqliteFile):
        manager.open(text_file)
    assert manager.list() == []


def test_open_accepts_zero_length_file(manager: ConnectionManager, tmp_path: Path) -> None:
    empty = tmp_path / "empty.db"
    empty.write_bytes(b"")
    connection = manager.open(empty)
    with connection.guard() as handle:
        assert handle.execute("SELECT count(*) FROM sqlite_master").fetchone() == (0,)


def test_open_respects_limit(config_factory, make_database) -> None:
    manager = ConnectionManager(config_factory(connections={"max_open": 1}))
    try:
        manager.open(make_database("one.db"))
        with pytest.raises(ConnectionLimitReached):
            manager.open(make_database("two.db"))
    finally:
        manager.close_all()


def test_close_moves_active_and_rejects_unknown(manager: ConnectionManager, make_database) -> None:
    first = manager.open(make_database("one.db"))
    second = manager.open(make_database("two.db"))
    assert manager.active_id == first.id

    manager.close(first.id)

    assert first.state is ConnectionState.CLOSED
    assert first.handle is None
    assert manager.active_id == second.id
    with pytest.raises(UnknownConnection):
        manager.close(first.id)
    with pytest.raises(ConnectionNotOpen):
        manager.resolve(first.id)


def test_close_runs_hooks_and_reraises_failures(manager: ConnectionManager, sample_db: Path) -> None:
    seen: list[str] = []

    def broken(connection) -> None:
        raise RuntimeError("hook exploded")

    manager.add_close_hook(broken)
    manager.add_close_hook(lambda connection: seen.append(connection.id))
    connection = manager.open(sample_db)

    with pytest.raises(RuntimeError, match="hook exploded"):
        manager.close(connection.id)

    assert seen == [connection.id]
    assert connection.state is ConnectionState.CLOSED
    assert manager.list() == []


def test_set_active(manager: ConnectionManager, make_database) -> None:
    manager.open(make_database("one.db"))
    second = manager.open(make_database("two.db"))
    assert manager.set_active(second.id) is second
    assert manager.resolve(None) is second
    with pytest.raises(UnknownConnection):
        manager.set_active("nope")


def test_resolve_without_connections(manager: ConnectionManager) -> None:
    with pytest.raises(ConnectionNotOpen):
        manager.resolve(None)


def test_guard_rejects_second_statement(manager: ConnectionManager, sample_db: Path) -> None:
    connection = manager.open(sample_db)
    with connection.guard():
        with pytest.raises(ConnectionBusy):
            with connection.guard():
                pass  # pragma: no cover
    with connection.guard() as handle:
        assert handle.execute("SELECT 1").fetchone() == (1,)


def test_guard_queues_when_configured(config_factory, sample_db: Path) -> None:
    manager = ConnectionManager(config_factory(execution={"busy_policy": "queue", "queue_timeout": 5.0}))
    connection = manager.open(sample_db)
    entered = threading.Event()
    release = threading.Event()
    order: list[str] = []

    def holder() -> None:
        with connection.guard():
            entered.set()
            release.wait(5)
            order.append("first")

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert entered.wait(5)
        release.set()
        with connection.guard():
            order.append("second")
    finally:
        thread.join(timeout=5)
        manager.close_all()
    assert order == ["first", "second"]


def test_interrupt_targets_only_the_running_request(manager: ConnectionManager, sample_db: Path) -> None:
    connection = manager.open(sample_db)
    running = RequestToken("r1", connection.id)
    other = RequestToken("r2", connection.id)
    assert connection.interrupt() is False
    with connection.guard(running):
        assert connection.current_request is running
        assert connection.interrupt(other) is False
        assert not running.cancelled
        assert connection.interrupt(running) is True
        assert running.cancelled and not other.cancelled
    assert connection.current_request is None


def test_error_state_blocks_execution(manager: ConnectionManager, sample_db: Path) -> None:
    connection = manager.open(sample_db)
    connection.mark_error("disk I/O error")
    with pytest.raises(ConnectionNotOpen, match="error state"):
        with connection.guard():
            pass  # pragma: no cover
    manager.close(connection.id)
    reopened = manager.open(sample_db)
    assert reopened.state is ConnectionState.OPEN
