"""sqlview CLI entrypoint."""

from __future__ import annotations

import re
from collections.abc import Iterable

import click

from sqlview.shared.cli import CLIContext, common_cli_options, handle_cli_errors, pass_cli_context

from . import render
from .boundary import serve_stream
from .edits import FILTER_OPERATORS, Filter
from .types import MutationSummary, ResultSet, StatementRequest
from .workspace import Workspace

_WHERE_RE = re.compile(
    r"^\s*(?P<column>.+?)"
    r"(?:\s+(?P<word>IS\s+NOT\s+NULL|IS\s+NULL|LIKE)(?=\s|$)|\s*(?P<symbol>!=|<=|>=|=|<|>))"
    r"\s*(?P<value>.*)$",
    re.IGNORECASE | re.DOTALL,
)


@click.group(help="Inspect and query SQLite databases.")
@common_cli_options
@handle_cli_errors
def cli(cli_ctx: CLIContext) -> None:
    """Primary Click group for sqlview commands."""
    mode = "read-only" if cli_ctx.read_only else "read-write"
    cli_ctx.logger.debug(f"sqlview group initialised ({mode}).")


@cli.command("sql")
@click.argument("database", type=click.Path(path_type=str))
@click.argument("query", type=str)
@click.option(
    "-p",
    "--param",
    "params",
    multiple=True,
    metavar="KEY=VALUE",
    help="Bind a named parameter for the SQL query.",
)
@click.option("--window", type=click.IntRange(min=1), help="Number of rows to show from a result set.")
@click.option(
    "--format",
    "output_format",
    default="table",
    show_default=True,
    type=click.Choice(render.OUTPUT_FORMAT_CHOICES),
)
@pass_cli_context
@handle_cli_errors
def run_sql(
    cli_ctx: CLIContext,
    database: str,
    query: str,
    params: Iterable[str],
    window: int | None,
    output_format: str,
) -> None:
    """Execute SQL against DATABASE."""
    cli_ctx.logger.debug(f"sqlview sql invoked on {database}")
    if not query.strip():
        raise click.ClickException("Query text must not be empty.")
    try:
        bound_params = _parse_params(params)
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    with Workspace(cli_ctx.config, logger=cli_ctx.logger) as workspace:
        connection = workspace.open(database, read_only=cli_ctx.read_only)
        outcome = workspace.executor.execute(
            connection.id,
            StatementRequest(sql=query, params=bound_params or None),
        )
        if isinstance(outcome, MutationSummary):
            render.render_mutation(outcome, logger=cli_ctx.logger)
            return
        _render_first_window(cli_ctx, workspace, outcome, window, output_format)


@cli.command("schema")
@click.argument("database", type=click.Path(path_type=str))
@click.option("--table", "table_filter", type=str, help="Inspect a specific table only.")
@click.option(
    "--format",
    "output_format",
    default="table",
    show_default=True,
    type=click.Choice(render.SCHEMA_FORMAT_CHOICES),
)
@pass_cli_context
@handle_cli_errors
def show_schema(cli_ctx: CLIContext, database: str, table_filter: str | None, output_format: str) -> None:
    """Display schema details of DATABASE."""
    cli_ctx.logger.debug(f"sqlview schema invoked on {database}")
    with Workspace(cli_ctx.config, logger=cli_ctx.logger) as workspace:
        connection = workspace.open(database, read_only=True)
        snapshot = workspace.schema.current(connection.id)
        render.render_schema(
            snapshot,
            output_format=output_format,
            logger=cli_ctx.logger,
            table_filter=table_filter,
        )


@cli.command("tables")
@click.argument("database", type=click.Path(path_type=str))
@click.option("--counts", is_flag=True, help="Include exact row counts (scans every table).")
@pass_cli_context
@handle_cli_errors
def list_tables(cli_ctx: CLIContext, database: str, counts: bool) -> None:
    """List the tables of DATABASE."""
    with Workspace(cli_ctx.config, logger=cli_ctx.logger) as workspace:
        connection = workspace.open(database, read_only=True)
        names = workspace.schema.list_tables(connection.id)
        if not counts:
            render.render_table_names(names, logger=cli_ctx.logger)
            return
        rows = [(name, workspace.schema.count_rows(connection.id, name)) for name in names]
        render.render_rows(("table", "rows"), rows, output_format="table", logger=cli_ctx.logger)


@cli.command("browse")
@click.argument("database", type=click.Path(path_type=str))
@click.argument("table", type=str)
@click.option(
    "--where",
    "conditions",
    multiple=True,
    metavar="'COLUMN OP VALUE'",
    help=f"Filter rows; OP is one of {', '.join(FILTER_OPERATORS)}.",
)
@click.option("--order-by", "order_by", type=str, help="Column to sort by.")
@click.option("--desc", "descending", is_flag=True, help="Sort in descending order.")
@click.option("--limit", type=click.IntRange(min=1), help="Number of rows to show.")
@click.option(
    "--format",
    "output_format",
    default="table",
    show_default=True,
    type=click.Choice(render.OUTPUT_FORMAT_CHOICES),
)
@pass_cli_context
@handle_cli_errors
def browse(
    cli_ctx: CLIContext,
    database: str,
    table: str,
    conditions: Iterable[str],
    order_by: str | None,
    descending: bool,
    limit: int | None,
    output_format: str,
) -> None:
    """Page through TABLE of DATABASE."""
    try:
        filters = [_parse_condition(condition) for condition in conditions]
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc

    with Workspace(cli_ctx.config, logger=cli_ctx.logger) as workspace:
        connection = workspace.open(database, read_only=True)
        result, row_count = workspace.editor.browse_table(
            connection.id,
            table,
            filters=filters,
            order_by=order_by,
            descending=descending,
        )
        _render_first_window(cli_ctx, workspace, result, limit, output_format, total=row_count)


@cli.command("serve")
@click.option(
    "--open",
    "databases",
    multiple=True,
    type=click.Path(path_type=str),
    help="Open a database before reading commands.",
)
@pass_cli_context
@handle_cli_errors
def serve(cli_ctx: CLIContext, databases: Iterable[str]) -> None:
    """Serve JSON-lines commands on stdin, writing responses and events to stdout."""
    with Workspace(cli_ctx.config, logger=cli_ctx.logger) as workspace:
        for database in databases:
            connection = workspace.open(database, read_only=cli_ctx.read_only)
            cli_ctx.logger.info(f"Opened {connection.path} as {connection.id}")
        received = serve_stream(
            workspace,
            click.get_text_stream("stdin"),
            click.get_text_stream("stdout"),
        )
        cli_ctx.logger.debug(f"Input closed after {received} command(s).")


def _render_first_window(
    cli_ctx: CLIContext,
    workspace: Workspace,
    result: ResultSet,
    window: int | None,
    output_format: str,
    *,
    total: int | None = None,
) -> None:
    paginator = workspace.paginator
    handle = paginator.open(result)
    try:
        rows = paginator.fetch(handle, window or workspace.config.pagination.default_window)
        exhausted = paginator.describe(handle).exhausted
    finally:
        paginator.close(handle)
    render.render_rows(
        result.column_names,
        rows,
        output_format=output_format,
        logger=cli_ctx.logger,
        total=total,
    )
    if total is None and not exhausted:
        cli_ctx.logger.warning(f"Showing the first {len(rows)} rows; more are available (use --window).")


def _parse_params(pairs: Iterable[str]) -> dict[str, str]:
    """Convert KEY=VALUE CLI options into a dictionary."""
    parsed: dict[str, str] = {}
    for pair in pairs:
        if "=" not in pair:
            raise ValueError(f"Parameter '{pair}' must be in KEY=VALUE format.")
        key, value = pair.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Parameter keys cannot be empty.")
        parsed[key] = value
    return parsed


def _parse_condition(condition: str) -> Filter:
    match = _WHERE_RE.match(condition)
    if not match:
        raise ValueError(f"Filter '{condition}' must look like 'COLUMN OP VALUE'.")
    operator = " ".join((match.group("word") or match.group("symbol")).upper().split())
    value = match.group("value").strip()
    if operator in {"IS NULL", "IS NOT NULL"}:
        if value:
            raise ValueError(f"Filter '{condition}' takes no value after {operator}.")
        return Filter(column=match.group("column").strip(), operator=operator)
    return Filter(column=match.group("column").strip(), operator=operator, value=value)


def main() -> None:
    """Entry point for console_scripts."""
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
