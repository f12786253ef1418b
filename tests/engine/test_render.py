from __future__ import annotations

import io
import json
import time
from pathlib import Path

from sqlview.engine import render
from sqlview.engine.types import (
    ColumnSchema,
    IndexSchema,
    MutationSummary,
    SchemaSnapshot,
    StatementKind,
    TableSchema,
)


class StubLogger:
    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []

    def info(self, message: str) -> None:
        self.messages.append(("info", message))

    def warning(self, message: str) -> None:
        self.messages.append(("warning", message))

    def debug(self, message: str) -> None:
        self.messages.append(("debug", message))

    def error(self, message: str) -> None:
        self.messages.append(("error", message))

    def success(self, message: str) -> None:
        self.messages.append(("success", message))


def _snapshot() -> SchemaSnapshot:
    users = TableSchema(
        name="users",
        kind="table",
        sql="CREATE TABLE users (id INTEGER PRIMARY KEY, name TEXT NOT NULL UNIQUE)",
        columns=(
            ColumnSchema("id", "INTEGER", False, None, 1),
            ColumnSchema("name", "TEXT", True, None, 0),
        ),
        indexes=(IndexSchema("sqlite_autoindex_users_1", True, "u", False, ("name",)),),
    )
    broken = TableSchema(name="stale_view", kind="view", sql=None, columns=(), error="no such table: main.gone")
    return SchemaSnapshot(
        connection_id="c1",
        database_path=Path("/tmp/example.db"),
        version=3,
        tables=(users,),
        views=(broken,),
        triggers=(),
        built_at=time.time(),
    )


def test_render_rows_csv_encodes_nulls_and_blobs() -> None:
    buffer = io.StringIO()
    logger = StubLogger()

    written = render.render_rows(
        ("name", "avatar"),
        [("ada", b"\x01\xff"), (None, None)],
        output_format="csv",
        logger=logger,
        stream=buffer,
    )

    assert written == 2
    assert buffer.getvalue().splitlines() == ["name,avatar", "ada,01ff", ","]


def test_render_rows_json_uses_blob_envelope() -> None:
    buffer = io.StringIO()

    render.render_rows(("id", "data"), [(1, b"\x00\x01")], output_format="json", logger=StubLogger(), stream=buffer)

    assert json.loads(buffer.getvalue()) == [{"id": 1, "data": {"$blob": "AAE="}}]


def test_render_rows_table_shows_null_and_escapes_markup() -> None:
    buffer = io.StringIO()

    render.render_rows(
        ("name", "note"),
        [("[bold]ada[/bold]", None)],
        output_format="table",
        logger=StubLogger(),
        stream=buffer,
    )

    output = buffer.getvalue()
    assert "[bold]ada[/bold]" in output
    assert "NULL" in output


def test_render_rows_warns_when_truncated() -> None:
    logger = StubLogger()
    render.render_rows(("x",), [(1,), (2,)], output_format="tsv", logger=logger, stream=io.StringIO(), total=10)
    assert ("warning", "Showing 2 of 10 rows. Re-run with a larger --limit for more.") in logger.messages


def test_render_rows_reports_empty_table() -> None:
    logger = StubLogger()
    written = render.render_rows(("x",), [], output_format="table", logger=logger, stream=io.StringIO())
    assert written == 0
    assert ("info", "Query returned zero rows.") in logger.messages


def test_render_mutation_message() -> None:
    logger = StubLogger()
    render.render_mutation(
        MutationSummary(rows_affected=3, last_insert_rowid=7, kind=StatementKind.WRITE, statements_executed=2),
        logger=logger,
    )
    assert logger.messages == [("success", "3 row(s) affected by 2 statements (last rowid 7).")]


def test_render_table_names() -> None:
    buffer = io.StringIO()
    logger = StubLogger()
    render.render_table_names(["orders", "users"], logger=logger, stream=buffer)
    render.render_table_names([], logger=logger, stream=buffer)
    assert buffer.getvalue().splitlines() == ["orders", "users"]
    assert logger.messages == [("info", "No tables found.")]


def test_render_schema_json() -> None:
    buffer = io.StringIO()

    render.render_schema(_snapshot(), output_format="json", logger=StubLogger(), stream=buffer)

    payload = json.loads(buffer.getvalue())
    assert payload["version"] == 3
    assert [relation["name"] for relation in payload["relations"]] == ["users", "stale_view"]
    assert payload["relations"][1]["error"] == "no such table: main.gone"


def test_render_schema_table_and_filter() -> None:
    buffer = io.StringIO()
    logger = StubLogger()

    render.render_schema(_snapshot(), output_format="table", logger=logger, stream=buffer)
    output = buffer.getvalue()
    assert "users" in output
    assert "sqlite_autoindex_users_1 UNIQUE (name)" in output
    assert "columns unavailable: no such table: main.gone" in output

    render.render_schema(_snapshot(), output_format="table", logger=logger, table_filter="missing", stream=buffer)
    assert logger.messages[-1][0] == "info"
    assert "missing" in logger.messages[-1][1]
