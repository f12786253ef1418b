"""Output rendering helpers for the sqlview CLI."""

from __future__ import annotations

import csv
import json
import sys
from collections.abc import Iterable, Sequence
from typing import IO

from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text

from sqlview.shared.logging import Logger

from .boundary import encode_relation, encode_value
from .types import MutationSummary, Row, SchemaSnapshot, TableSchema

OUTPUT_FORMAT_CHOICES = ("table", "tsv", "csv", "json")
SCHEMA_FORMAT_CHOICES = ("table", "json")


def render_rows(
    columns: Sequence[str],
    rows: Iterable[Row],
    *,
    output_format: str,
    logger: Logger,
    stream: IO[str] | None = None,
    total: int | None = None,
) -> int:
    """Render rows in the requested format and return how many were written."""
    output_stream = stream or sys.stdout
    fmt = (output_format or "table").lower()

    if fmt == "table":
        written = _render_table(columns, rows, logger=logger, stream=output_stream)
    elif fmt == "csv":
        written = _render_delimited(columns, rows, stream=output_stream, delimiter=",")
    elif fmt == "tsv":
        written = _render_delimited(columns, rows, stream=output_stream, delimiter="\t")
    elif fmt == "json":
        written = _render_json(columns, rows, stream=output_stream)
    else:  # pragma: no cover - Click validation should prevent this
        raise ValueError(f"Unsupported output format '{output_format}'.")

    if total is not None and written < total:
        logger.warning(f"Showing {written} of {total} rows. Re-run with a larger --limit for more.")
    return written


def render_mutation(summary: MutationSummary, *, logger: Logger) -> None:
    message = f"{summary.rows_affected} row(s) affected"
    if summary.statements_executed > 1:
        message += f" by {summary.statements_executed} statements"
    if summary.last_insert_rowid is not None:
        message += f" (last rowid {summary.last_insert_rowid})"
    logger.success(message + ".")


def render_table_names(names: Sequence[str], *, logger: Logger, stream: IO[str] | None = None) -> None:
    output_stream = stream or sys.stdout
    if not names:
        logger.info("No tables found.")
        return
    for name in names:
        print(name, file=output_stream)


def render_schema(
    snapshot: SchemaSnapshot,
    *,
    output_format: str,
    logger: Logger,
    table_filter: str | None = None,
    stream: IO[str] | None = None,
) -> None:
    """Render schema metadata to the output stream."""
    output_stream = stream or sys.stdout
    relations: Sequence[TableSchema] = snapshot.relations
    if table_filter:
        relation = snapshot.find(table_filter)
        relations = [relation] if relation is not None else []

    if (output_format or "table").lower() == "json":
        payload = {
            "database": str(snapshot.database_path),
            "version": snapshot.version,
            "relations": [encode_relation(relation) for relation in relations],
        }
        json.dump(payload, output_stream, indent=2)
        output_stream.write("\n")
        return

    console = Console(file=output_stream, highlight=False, force_terminal=False)
    for relation in relations:
        label = relation.name if relation.kind == "table" else f"{relation.name} (view)"
        console.print(Text(label, style="bold"))
        if relation.error:
            console.print(f"  columns unavailable: {relation.error}", markup=False)
            continue

        column_table = Table(box=box.SIMPLE, show_header=True, header_style="bold")
        column_table.add_column("Column")
        column_table.add_column("Type")
        column_table.add_column("Not Null")
        column_table.add_column("Default")
        column_table.add_column("PK")
        for column in relation.columns:
            column_table.add_row(
                Text(column.name),
                column.declared_type,
                "✅" if column.not_null else "",
                column.default or "",
                str(column.primary_key) if column.primary_key else "",
            )
        console.print(column_table)

        if relation.indexes:
            idx_table = Table(box=box.MINIMAL_DOUBLE_HEAD, show_header=False)
            idx_table.add_column("Indexes")
            for index in relation.indexes:
                unique = " UNIQUE" if index.unique else ""
                idx_table.add_row(f"{index.name}{unique} ({', '.join(index.columns)})")
            console.print(idx_table)

        if relation.foreign_keys:
            fk_table = Table(box=box.SIMPLE, show_header=True, header_style="bold")
            fk_table.add_column("From")
            fk_table.add_column("References")
            for foreign_key in relation.foreign_keys:
                target = foreign_key.references_column or "<primary key>"
                fk_table.add_row(foreign_key.column, f"{foreign_key.references_table}.{target}")
            console.print(fk_table)

    if not relations:
        if table_filter:
            logger.info(f"No table named '{table_filter}' in {snapshot.database_path}.")
        else:
            logger.info(f"No tables found in database {snapshot.database_path}.")


def _render_table(columns: Sequence[str], rows: Iterable[Row], *, logger: Logger, stream: IO[str]) -> int:
    console = Console(file=stream, highlight=False, force_terminal=False)
    table = Table(box=box.SIMPLE_HEAVY, show_header=bool(columns), header_style="bold")
    for column in columns:
        table.add_column(Text(column or ""))

    written = 0
    for row in rows:
        table.add_row(*[Text(_stringify(cell)) for cell in row])
        written += 1
    if not written:
        logger.info("Query returned zero rows.")
    console.print(table)
    return written


def _render_delimited(columns: Sequence[str], rows: Iterable[Row], *, stream: IO[str], delimiter: str) -> int:
    writer = csv.writer(stream, delimiter=delimiter)
    if columns:
        writer.writerow(columns)
    written = 0
    for row in rows:
        writer.writerow(_delimited_value(cell) for cell in row)
        written += 1
    return written


def _render_json(columns: Sequence[str], rows: Iterable[Row], *, stream: IO[str]) -> int:
    records: list[dict[str, object]] = []
    for row in rows:
        records.append({column: encode_value(value) for column, value in zip(columns, row)})
    json.dump(records, stream, indent=2)
    stream.write("\n")
    return len(records)


def _stringify(value: object) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bytes):
        return f"<blob {len(value)} bytes>"
    return str(value)


def _delimited_value(value: object) -> object:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.hex()
    return value
