"""Grid edits and table browsing built from schema-checked identifiers.

Table and column names only ever reach SQL text after they have been found in
the current schema snapshot and quoted; every value is a bound parameter.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any, Union

from sqlview.shared.database import quote_identifier
from sqlview.shared.exceptions import InternalError, ValidationError

from .executor import QueryExecutor
from .paginator import RowSource
from .schema import SchemaInspector
from .types import MutationSummary, ResultSet, StatementRequest, TableSchema

FILTER_OPERATORS = ("=", "!=", "<", "<=", ">", ">=", "LIKE", "IS NULL", "IS NOT NULL")
_UNARY_OPERATORS = {"IS NULL", "IS NOT NULL"}
ROWID = "rowid"


@dataclass(frozen=True, slots=True)
class Filter:
    column: str
    operator: str = "="
    value: Any = None


@dataclass(frozen=True, slots=True)
class CellEdit:
    """Set ``column`` of the row whose ``key_column`` equals ``key``."""

    table: str
    column: str
    key: Any
    value: Any
    key_column: str | None = None


@dataclass(frozen=True, slots=True)
class RowInsert:
    table: str
    values: Sequence[Any] | Mapping[str, Any]


@dataclass(frozen=True, slots=True)
class RowDelete:
    table: str
    key: Any
    key_column: str | None = None


Edit = Union[CellEdit, RowInsert, RowDelete]


class TableEditor:
    def __init__(self, executor: QueryExecutor, inspector: SchemaInspector) -> None:
        self._executor = executor
        self._inspector = inspector

    # -- single edits --------------------------------------------------------

    def insert_row(
        self,
        connection_id: str | None,
        table: str,
        values: Sequence[Any] | Mapping[str, Any],
        *,
        request_id: str | None = None,
    ) -> MutationSummary:
        sql, params = self._insert_sql(connection_id, RowInsert(table, values))
        return self._mutate(connection_id, sql, params, request_id)

    def update_cell(
        self,
        connection_id: str | None,
        table: str,
        column: str,
        key: Any,
        value: Any,
        *,
        key_column: str | None = None,
        request_id: str | None = None,
    ) -> MutationSummary:
        sql, params = self._update_sql(connection_id, CellEdit(table, column, key, value, key_column))
        return self._mutate(connection_id, sql, params, request_id)

    def delete_row(
        self,
        connection_id: str | None,
        table: str,
        key: Any,
        *,
        key_column: str | None = None,
        request_id: str | None = None,
    ) -> MutationSummary:
        sql, params = self._delete_sql(connection_id, RowDelete(table, key, key_column))
        return self._mutate(connection_id, sql, params, request_id)

    def apply_edits(
        self,
        connection_id: str | None,
        edits: Sequence[Edit],
        *,
        request_id: str | None = None,
    ) -> MutationSummary:
        """Apply ``edits`` all-or-nothing and report the total rows affected."""
        if not edits:
            raise ValidationError("No edits to apply.")
        items = [self._edit_sql(connection_id, edit) for edit in edits]
        if len(items) == 1:
            sql, params = items[0]
            return self._mutate(connection_id, sql, params, request_id)

        # one savepoint (or the open transaction) covers the whole batch
        outcome = self._executor.execute_batch(connection_id, items, request_id=request_id)
        return _mutation(outcome)

    # -- browsing ------------------------------------------------------------

    def browse_table(
        self,
        connection_id: str | None,
        table: str,
        *,
        filters: Sequence[Filter] = (),
        order_by: str | None = None,
        descending: bool = False,
        request_id: str | None = None,
    ) -> tuple[ResultSet, int]:
        """Open a lazy result over ``table`` plus its filtered row count."""
        relation = self._inspector.require_relation(connection_id, table)
        where, params = self._where_clause(relation, filters)
        source = quote_identifier(relation.name)

        count_result = self._executor.execute(
            connection_id,
            StatementRequest(sql=f"SELECT COUNT(*) FROM {source}{where}", params=params),
        )
        row_count = _single_value(count_result)

        sql = f"SELECT * FROM {source}{where}"
        if order_by:
            sql += f" ORDER BY {quote_identifier(self._column(relation, order_by))}"
            sql += " DESC" if descending else " ASC"
        result = self._executor.execute(
            connection_id,
            StatementRequest(sql=sql, params=params, request_id=request_id),
        )
        if not isinstance(result, ResultSet):
            raise ValidationError(f"Browsing '{relation.name}' did not produce rows.")
        columns = []
        for column in result.columns:
            declared = relation.column(column.name)
            if declared is not None and declared.declared_type:
                column = replace(column, declared_type=declared.declared_type)
            columns.append(column)
        result.columns = tuple(columns)
        return result, row_count

    # -- SQL builders --------------------------------------------------------

    def _edit_sql(self, connection_id: str | None, edit: Edit) -> tuple[str, list[Any]]:
        if isinstance(edit, CellEdit):
            return self._update_sql(connection_id, edit)
        if isinstance(edit, RowInsert):
            return self._insert_sql(connection_id, edit)
        if isinstance(edit, RowDelete):
            return self._delete_sql(connection_id, edit)
        raise ValidationError(f"Unsupported edit: {edit!r}")

    def _insert_sql(self, connection_id: str | None, edit: RowInsert) -> tuple[str, list[Any]]:
        relation = self._table(connection_id, edit.table)
        if isinstance(edit.values, Mapping):
            if not edit.values:
                return f"INSERT INTO {quote_identifier(relation.name)} DEFAULT VALUES", []
            names = [self._column(relation, name) for name in edit.values]
            values = list(edit.values.values())
        else:
            values = list(edit.values)
            if len(values) > len(relation.columns):
                raise ValidationError(
                    f"Table '{relation.name}' has {len(relation.columns)} columns; got {len(values)} values."
                )
            names = [column.name for column in relation.columns[: len(values)]]
            if not names:
                return f"INSERT INTO {quote_identifier(relation.name)} DEFAULT VALUES", []
        columns = ", ".join(quote_identifier(name) for name in names)
        placeholders = ", ".join("?" for _ in names)
        return f"INSERT INTO {quote_identifier(relation.name)} ({columns}) VALUES ({placeholders})", values

    def _update_sql(self, connection_id: str | None, edit: CellEdit) -> tuple[str, list[Any]]:
        relation = self._table(connection_id, edit.table)
        column = self._column(relation, edit.column)
        key_column = self._key_column(relation, edit.key_column)
        sql = (
            f"UPDATE {quote_identifier(relation.name)} SET {quote_identifier(column)} = ? "
            f"WHERE {_key_sql(key_column)} = ?"
        )
        return sql, [edit.value, edit.key]

    def _delete_sql(self, connection_id: str | None, edit: RowDelete) -> tuple[str, list[Any]]:
        relation = self._table(connection_id, edit.table)
        key_column = self._key_column(relation, edit.key_column)
        return f"DELETE FROM {quote_identifier(relation.name)} WHERE {_key_sql(key_column)} = ?", [edit.key]

    def _where_clause(self, relation: TableSchema, filters: Sequence[Filter]) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        for item in filters:
            operator = item.operator.strip().upper()
            if operator not in FILTER_OPERATORS:
                raise ValidationError(
                    f"Unsupported filter operator '{item.operator}'. Expected one of: {', '.join(FILTER_OPERATORS)}."
                )
            column = quote_identifier(self._column(relation, item.column))
            if operator in _UNARY_OPERATORS:
                clauses.append(f"{column} {operator}")
            else:
                clauses.append(f"{column} {operator} ?")
                params.append(item.value)
        if not clauses:
            return "", []
        return " WHERE " + " AND ".join(clauses), params

    # -- schema checks -------------------------------------------------------

    def _table(self, connection_id: str | None, name: str) -> TableSchema:
        relation = self._inspector.require_relation(connection_id, name)
        if relation.kind != "table":
            raise ValidationError(f"'{relation.name}' is a {relation.kind} and cannot be edited.")
        return relation

    @staticmethod
    def _column(relation: TableSchema, name: str) -> str:
        column = relation.column(name)
        if column is None:
            raise ValidationError(f"Column '{name}' does not exist in table '{relation.name}'.")
        return column.name

    def _key_column(self, relation: TableSchema, key_column: str | None) -> str:
        if key_column is not None:
            if key_column.lower() == ROWID and relation.column(key_column) is None:
                return self._rowid(relation)
            return self._column(relation, key_column)
        primary_key = relation.primary_key
        if len(primary_key) == 1:
            return primary_key[0]
        return self._rowid(relation)

    @staticmethod
    def _rowid(relation: TableSchema) -> str:
        if relation.without_rowid:
            raise ValidationError(
                f"Table '{relation.name}' has no rowid; name the key column explicitly."
            )
        return ROWID

    def _mutate(
        self,
        connection_id: str | None,
        sql: str,
        params: list[Any],
        request_id: str | None,
    ) -> MutationSummary:
        outcome = self._executor.execute(
            connection_id,
            StatementRequest(sql=sql, params=params, request_id=request_id),
        )
        return _mutation(outcome)


def _key_sql(key_column: str) -> str:
    return ROWID if key_column == ROWID else quote_identifier(key_column)


def _mutation(outcome: ResultSet | MutationSummary) -> MutationSummary:
    if not isinstance(outcome, MutationSummary):
        if isinstance(outcome.rows, RowSource):
            outcome.rows.close()
        raise InternalError("Edit statement produced rows instead of a mutation summary.")
    return outcome


def _single_value(outcome: ResultSet | MutationSummary) -> int:
    if not isinstance(outcome, ResultSet) or not isinstance(outcome.rows, RowSource):
        raise ValidationError("Row count query did not produce a result.")
    source = outcome.rows
    try:
        rows = source.fetch(1)
    finally:
        source.close()
    return int(rows[0][0]) if rows else 0
