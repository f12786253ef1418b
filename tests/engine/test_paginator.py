from __future__ import annotations

import time

import pytest

from sqlview.engine.events import CursorClosed
from sqlview.engine.types import ResultSet
from sqlview.engine.workspace import Workspace
from sqlview.shared.exceptions import (
    ConnectionBusy,
    ConnectionClosedUnderneath,
    UnknownCursor,
    ValidationError,
)

N_ROWS = 1000
NUMBERS = f"WITH RECURSIVE c(x) AS (SELECT 1 UNION ALL SELECT x + 1 FROM c WHERE x < {N_ROWS}) SELECT x FROM c"


def _open(workspace: Workspace, connection_id: str, sql: str = NUMBERS) -> str:
    result = workspace.executor.execute(connection_id, sql)
    assert isinstance(result, ResultSet)
    return workspace.paginator.open(result)


def _closed(events, handle: str) -> list[str]:
    return [event.reason for event in events if isinstance(event, CursorClosed) and event.cursor_handle == handle]


@pytest.mark.parametrize("window", [1, 7, 256, 999, 1000, 5000])
def test_windows_cover_every_row_once(workspace: Workspace, connection, window: int) -> None:
    handle = _open(workspace, connection.id)
    seen: list[int] = []
    while True:
        rows = workspace.paginator.fetch(handle, window)
        if not rows:
            break
        assert len(rows) <= window
        seen.extend(row[0] for row in rows)

    assert seen == list(range(1, N_ROWS + 1))
    info = workspace.paginator.describe(handle)
    assert info.exhausted is True
    assert info.rows_delivered == N_ROWS


def test_exhausted_cursor_keeps_returning_empty(workspace: Workspace, connection, recorded_events) -> None:
    handle = _open(workspace, connection.id, "SELECT name FROM users ORDER BY id")
    assert workspace.paginator.fetch(handle, 10) == [("ada",), ("grace",), ("linus",)]
    assert workspace.paginator.fetch(handle, 10) == []
    assert workspace.paginator.fetch(handle, 10) == []
    assert handle in workspace.paginator.open_handles(connection.id)
    assert _closed(recorded_events, handle) == []

    workspace.paginator.close(handle)
    assert _closed(recorded_events, handle) == ["client"]


def test_window_is_clamped(config_factory, sample_db) -> None:
    with Workspace(config_factory(pagination={"default_window": 10, "max_window": 50})) as ws:
        connection = ws.open(sample_db)
        handle = _open(ws, connection.id)
        assert len(ws.paginator.fetch(handle, 1000)) == 50
        assert ws.paginator.max_window == 50


@pytest.mark.parametrize("window", [0, -3, True, 2.5, "10"])
def test_invalid_window_is_rejected(workspace: Workspace, connection, window) -> None:
    handle = _open(workspace, connection.id)
    with pytest.raises(ValidationError):
        workspace.paginator.fetch(handle, window)
    # the cursor is untouched
    assert workspace.paginator.fetch(handle, 2) == [(1,), (2,)]


def test_close_is_idempotent(workspace: Workspace, connection, recorded_events) -> None:
    handle = _open(workspace, connection.id)
    workspace.paginator.close(handle)
    workspace.paginator.close(handle)

    assert _closed(recorded_events, handle) == ["client"]
    with pytest.raises(UnknownCursor):
        workspace.paginator.fetch(handle, 5)
    assert handle not in workspace.paginator.open_handles()


def test_unknown_handle(workspace: Workspace) -> None:
    with pytest.raises(UnknownCursor):
        workspace.paginator.fetch("nope", 5)
    with pytest.raises(UnknownCursor):
        workspace.paginator.describe("nope")
    workspace.paginator.close("nope")


def test_open_requires_live_result(workspace: Workspace) -> None:
    detached = ResultSet(columns=(), rows=iter([]), connection_id="c", request_id="r", sql="SELECT 1")
    with pytest.raises(ValidationError):
        workspace.paginator.open(detached)


def test_fetch_while_connection_busy(workspace: Workspace, connection) -> None:
    handle = _open(workspace, connection.id)
    with connection.guard():
        with pytest.raises(ConnectionBusy):
            workspace.paginator.fetch(handle, 5)
    assert workspace.paginator.fetch(handle, 3) == [(1,), (2,), (3,)]


def test_connection_close_invalidates_cursors(workspace: Workspace, connection, recorded_events) -> None:
    handle = _open(workspace, connection.id)
    workspace.paginator.fetch(handle, 5)

    workspace.close(connection.id)

    assert _closed(recorded_events, handle) == ["connection_closed"]
    with pytest.raises(ConnectionClosedUnderneath):
        workspace.paginator.fetch(handle, 5)


def test_idle_cursors_expire(workspace: Workspace, connection, recorded_events) -> None:
    handle = _open(workspace, connection.id)
    fresh = workspace.paginator.reap_idle(now=time.monotonic())
    assert fresh == []

    expired = workspace.paginator.reap_idle(now=time.monotonic() + 10_000)

    assert expired == [handle]
    assert _closed(recorded_events, handle) == ["idle_timeout"]
    with pytest.raises(UnknownCursor, match="expired"):
        workspace.paginator.fetch(handle, 5)


def test_many_cursors_per_connection(workspace: Workspace, connection) -> None:
    first = _open(workspace, connection.id)
    second = _open(workspace, connection.id, "SELECT name FROM users ORDER BY id")

    assert workspace.paginator.fetch(first, 2) == [(1,), (2,)]
    assert workspace.paginator.fetch(second, 1) == [("ada",)]
    assert workspace.paginator.fetch(first, 1) == [(3,)]
    assert sorted(workspace.paginator.close_for_connection(connection.id, "client")) == sorted([first, second])
