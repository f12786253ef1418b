from __future__ import annotations

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from sqlview.engine.main import _parse_condition, cli
from sqlview.shared import paths


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(paths.CONFIG_DIR_ENV, str(tmp_path / "config"))
    monkeypatch.delenv(paths.CONFIG_FILE_ENV, raising=False)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def test_cli_sql_select_table(runner: CliRunner, sample_db: Path) -> None:
    result = runner.invoke(cli, ["sql", str(sample_db), "SELECT id, name FROM users ORDER BY id"])

    assert result.exit_code == 0, result.output
    assert "ada" in result.output
    assert "linus" in result.output


def test_cli_sql_json_with_params(runner: CliRunner, sample_db: Path) -> None:
    result = runner.invoke(
        cli,
        ["sql", str(sample_db), "SELECT name FROM users WHERE id = :id", "-p", "id=2", "--format", "json"],
    )

    assert result.exit_code == 0, result.output
    start = result.output.index("[")
    assert json.loads(result.output[start:]) == [{"name": "grace"}]


def test_cli_sql_window_warns_about_more_rows(runner: CliRunner, sample_db: Path) -> None:
    result = runner.invoke(
        cli,
        ["sql", str(sample_db), "SELECT name FROM users ORDER BY id", "--window", "1", "--format", "csv"],
    )

    assert result.exit_code == 0, result.output
    assert "name\nada" in result.output
    assert "grace" not in result.output
    assert "more are available" in result.output


def test_cli_sql_mutation(runner: CliRunner, sample_db: Path, read_back) -> None:
    result = runner.invoke(cli, ["sql", str(sample_db), "INSERT INTO users (name) VALUES ('alan')"])

    assert result.exit_code == 0, result.output
    assert "1 row(s) affected (last rowid 4)." in result.output
    assert read_back(sample_db, "SELECT COUNT(*) FROM users") == [(4,)]


def test_cli_sql_read_only_rejects_writes(runner: CliRunner, sample_db: Path) -> None:
    result = runner.invoke(cli, ["--read-only", "sql", str(sample_db), "DELETE FROM users"])

    assert result.exit_code == 1
    assert "PermissionDenied" in result.output


def test_cli_sql_reports_errors(runner: CliRunner, sample_db: Path, tmp_path: Path) -> None:
    missing = runner.invoke(cli, ["sql", str(tmp_path / "missing.db"), "SELECT 1"])
    assert missing.exit_code == 1
    assert "NotFound" in missing.output

    syntax = runner.invoke(cli, ["sql", str(sample_db), "SELEC 1"])
    assert syntax.exit_code == 1
    assert "SyntaxError" in syntax.output

    bad_param = runner.invoke(cli, ["sql", str(sample_db), "SELECT :x", "-p", "novalue"])
    assert bad_param.exit_code == 1
    assert "KEY=VALUE" in bad_param.output


def test_cli_schema_json(runner: CliRunner, sample_db: Path) -> None:
    result = runner.invoke(cli, ["schema", str(sample_db), "--table", "users", "--format", "json"])

    assert result.exit_code == 0, result.output
    payload = json.loads(result.output[result.output.index("{") :])
    assert [relation["name"] for relation in payload["relations"]] == ["users"]


def test_cli_schema_table(runner: CliRunner, sample_db: Path) -> None:
    result = runner.invoke(cli, ["schema", str(sample_db)])

    assert result.exit_code == 0, result.output
    assert "orders" in result.output
    assert "user_totals (view)" in result.output


def test_cli_tables(runner: CliRunner, sample_db: Path) -> None:
    plain = runner.invoke(cli, ["tables", str(sample_db)])
    assert plain.exit_code == 0, plain.output
    assert plain.output.splitlines() == ["orders", "users"]

    counted = runner.invoke(cli, ["tables", str(sample_db), "--counts", "--format", "csv"])
    assert counted.exit_code == 2  # --format is not a tables option

    counted = runner.invoke(cli, ["tables", str(sample_db), "--counts"])
    assert counted.exit_code == 0, counted.output
    assert "users" in counted.output


def test_cli_browse(runner: CliRunner, sample_db: Path) -> None:
    result = runner.invoke(
        cli,
        ["browse", str(sample_db), "users", "--where", "email IS NULL", "--format", "csv"],
    )
    assert result.exit_code == 0, result.output
    assert "grace" in result.output
    assert "ada" not in result.output

    limited = runner.invoke(
        cli,
        ["browse", str(sample_db), "orders", "--order-by", "total", "--desc", "--limit", "1", "--format", "csv"],
    )
    assert limited.exit_code == 0, limited.output
    assert "10.5" in limited.output
    assert "Showing 1 of 3 rows" in limited.output


def test_cli_browse_rejects_bad_filter(runner: CliRunner, sample_db: Path) -> None:
    result = runner.invoke(cli, ["browse", str(sample_db), "users", "--where", "name"])
    assert result.exit_code == 1
    assert "COLUMN OP VALUE" in result.output


def test_cli_serve(runner: CliRunner, sample_db: Path) -> None:
    command = {"command": "ExecuteStatement", "requestId": "r1", "sql": "SELECT COUNT(*) FROM users"}
    result = runner.invoke(cli, ["serve", "--open", str(sample_db)], input=json.dumps(command) + "\n")

    assert result.exit_code == 0, result.output
    responses = [json.loads(line) for line in result.output.splitlines() if line.startswith("{")]
    [response] = [message for message in responses if message.get("requestId") == "r1"]
    assert response["ok"] is True
    assert response["result"]["rows"] == [[3]]


@pytest.mark.parametrize(
    ("condition", "column", "operator", "value"),
    [
        ("name = ada", "name", "=", "ada"),
        ("total>=5", "total", ">=", "5"),
        ("email is not null", "email", "IS NOT NULL", None),
        ("name like %a%", "name", "LIKE", "%a%"),
        ("alike != x", "alike", "!=", "x"),
    ],
)
def test_parse_condition(condition: str, column: str, operator: str, value: str | None) -> None:
    parsed = _parse_condition(condition)
    assert (parsed.column, parsed.operator, parsed.value) == (column, operator, value)


def test_parse_condition_rejects_value_after_null_check() -> None:
    with pytest.raises(ValueError):
        _parse_condition("email IS NULL foo")
