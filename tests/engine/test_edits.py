from __future__ import annotations

from pathlib import Path

import pytest

from sqlview.engine.edits import CellEdit, Filter, RowDelete, RowInsert
from sqlview.engine.workspace import Workspace
from sqlview.shared.exceptions import ConstraintViolation, InternalError, ValidationError


def test_insert_row_from_mapping(workspace: Workspace, connection, sample_db: Path, read_back) -> None:
    outcome = workspace.editor.insert_row(connection.id, "users", {"name": "alan", "email": "alan@example.com"})
    assert outcome.rows_affected == 1
    assert outcome.last_insert_rowid == 4
    assert read_back(sample_db, "SELECT name, email FROM users WHERE id = 4") == [("alan", "alan@example.com")]


def test_insert_row_from_sequence(workspace: Workspace, connection, sample_db: Path, read_back) -> None:
    workspace.editor.insert_row(connection.id, "users", [10, "ten"])
    assert read_back(sample_db, "SELECT id, name, email FROM users WHERE id = 10") == [(10, "ten", None)]
    with pytest.raises(ValidationError):
        workspace.editor.insert_row(connection.id, "users", [11, "eleven", "x", "too many"])


def test_insert_default_values(make_database, workspace: Workspace, read_back) -> None:
    path = make_database("defaults.db", "CREATE TABLE log (id INTEGER PRIMARY KEY, note TEXT DEFAULT 'none');")
    connection = workspace.open(path)
    workspace.editor.insert_row(connection.id, "log", {})
    assert read_back(path, "SELECT id, note FROM log") == [(1, "none")]


def test_update_cell_by_primary_key(workspace: Workspace, connection, sample_db: Path, read_back) -> None:
    outcome = workspace.editor.update_cell(connection.id, "users", "email", 2, "grace@example.com")
    assert outcome.rows_affected == 1
    assert outcome.last_insert_rowid is None
    assert read_back(sample_db, "SELECT email FROM users WHERE id = 2") == [("grace@example.com",)]


def test_update_cell_by_explicit_key(workspace: Workspace, connection, sample_db: Path, read_back) -> None:
    workspace.editor.update_cell(connection.id, "users", "email", "linus", None, key_column="name")
    assert read_back(sample_db, "SELECT email FROM users WHERE name = 'linus'") == [(None,)]


def test_update_cell_by_rowid(make_database, workspace: Workspace, read_back) -> None:
    path = make_database("plain.db", "CREATE TABLE notes (body TEXT); INSERT INTO notes VALUES ('a'), ('b');")
    connection = workspace.open(path)
    workspace.editor.update_cell(connection.id, "notes", "body", 2, "B")
    assert read_back(path, "SELECT body FROM notes ORDER BY rowid") == [("a",), ("B",)]


def test_without_rowid_needs_primary_key(make_database, workspace: Workspace) -> None:
    path = make_database(
        "kv.db",
        "CREATE TABLE kv (a TEXT, b TEXT, v TEXT, PRIMARY KEY (a, b)) WITHOUT ROWID;",
    )
    connection = workspace.open(path)
    with pytest.raises(ValidationError, match="no rowid"):
        workspace.editor.delete_row(connection.id, "kv", "x")


def test_delete_row(workspace: Workspace, connection, sample_db: Path, read_back) -> None:
    outcome = workspace.editor.delete_row(connection.id, "users", 3)
    assert outcome.rows_affected == 1
    assert read_back(sample_db, "SELECT COUNT(*) FROM users") == [(2,)]


def test_unknown_names_are_rejected(workspace: Workspace, connection) -> None:
    with pytest.raises(ValidationError, match="does not exist"):
        workspace.editor.update_cell(connection.id, "missing", "name", 1, "x")
    with pytest.raises(ValidationError, match="Column 'nickname' does not exist in table 'users'"):
        workspace.editor.update_cell(connection.id, "users", "nickname", 1, "x")
    with pytest.raises(ValidationError, match="cannot be edited"):
        workspace.editor.delete_row(connection.id, "user_totals", 1)


def test_identifiers_are_quoted(make_database, workspace: Workspace, read_back) -> None:
    path = make_database("odd.db", 'CREATE TABLE "my ""odd"" table" ("select" TEXT, id INTEGER PRIMARY KEY);')
    connection = workspace.open(path)
    workspace.editor.insert_row(connection.id, 'my "odd" table', {"select": "x", "id": 1})
    workspace.editor.update_cell(connection.id, 'my "odd" table', "select", 1, "y")
    assert read_back(path, 'SELECT "select" FROM "my ""odd"" table"') == [("y",)]


def test_apply_edits_is_all_or_nothing(workspace: Workspace, connection, sample_db: Path, read_back) -> None:
    with pytest.raises(ConstraintViolation):
        workspace.editor.apply_edits(
            connection.id,
            [
                CellEdit("users", "email", 1, "changed@example.com"),
                RowInsert("users", {"name": "alan"}),
                CellEdit("users", "name", 2, None),
            ],
        )
    assert read_back(sample_db, "SELECT email FROM users WHERE id = 1") == [("ada@example.com",)]
    assert read_back(sample_db, "SELECT COUNT(*) FROM users") == [(3,)]


def test_apply_edits_reports_total(workspace: Workspace, connection, sample_db: Path, read_back) -> None:
    outcome = workspace.editor.apply_edits(
        connection.id,
        [
            RowInsert("users", {"id": 4, "name": "alan"}),
            CellEdit("users", "email", 4, "alan@example.com"),
            RowDelete("orders", 3),
        ],
    )
    assert outcome.rows_affected == 3
    assert outcome.statements_executed == 3
    assert read_back(sample_db, "SELECT COUNT(*) FROM orders") == [(2,)]

    with pytest.raises(ValidationError):
        workspace.editor.apply_edits(connection.id, [])


def test_browse_table_with_filters(workspace: Workspace, connection) -> None:
    result, count = workspace.editor.browse_table(
        connection.id,
        "users",
        filters=[Filter("email", "IS NOT NULL")],
        order_by="name",
        descending=True,
    )
    assert count == 2
    assert list(result.rows) == [
        (3, "linus", "linus@example.com"),
        (1, "ada", "ada@example.com"),
    ]
    assert [column.declared_type for column in result.columns] == ["INTEGER", "TEXT", "TEXT"]


def test_browse_table_like_and_comparison(workspace: Workspace, connection) -> None:
    result, count = workspace.editor.browse_table(
        connection.id,
        "orders",
        filters=[Filter("total", ">", 5), Filter("user_id", "=", 1)],
    )
    assert count == 1
    assert [row[2] for row in result.rows] == [10.5]

    result, count = workspace.editor.browse_table(connection.id, "users", filters=[Filter("name", "like", "%a%")])
    assert count == 2


def test_browse_table_rejects_bad_input(workspace: Workspace, connection) -> None:
    with pytest.raises(ValidationError, match="Unsupported filter operator"):
        workspace.editor.browse_table(connection.id, "users", filters=[Filter("name", "REGEXP", "a")])
    with pytest.raises(ValidationError):
        workspace.editor.browse_table(connection.id, "users", order_by="name; DROP TABLE users")


def test_browse_view(workspace: Workspace, connection) -> None:
    result, count = workspace.editor.browse_table(connection.id, "user_totals", order_by="spent")
    assert count == 3
    assert [row[0] for row in result.rows] == ["linus", "grace", "ada"]


def test_edit_that_yields_rows_is_an_internal_error(
    workspace: Workspace, connection, monkeypatch: pytest.MonkeyPatch
) -> None:
    real_execute = workspace.executor.execute

    def reads_instead(connection_id, request):
        return real_execute(connection_id, "SELECT id FROM users")

    monkeypatch.setattr(workspace.executor, "execute", reads_instead)
    with pytest.raises(InternalError, match="produced rows"):
        workspace.editor.delete_row(connection.id, "users", 3)
