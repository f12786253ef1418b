"""Splitting and classification of operator-supplied SQL text.

Classification is lexical: the leading keyword (after comments) decides the
route, with a top-level scan for the two ambiguous cases, ``WITH`` (select
or DML body) and ``PRAGMA`` (query or assignment). Splitting defers to
``sqlite3.complete_statement`` so string literals, comments and trigger
bodies containing semicolons are kept intact.
"""

from __future__ import annotations

import re
import sqlite3
from collections.abc import Iterator

from sqlview.shared.exceptions import ValidationError

from .types import Statement, StatementKind

_KEYWORD_RE = re.compile(r"[A-Za-z_]+")
_NEAR_RE = re.compile(r'near "(?P<token>.*)": syntax error', re.DOTALL)
_UNRECOGNIZED_RE = re.compile(r'unrecognized token: "(?P<token>.*)"', re.DOTALL)
_NO_SUCH_RE = re.compile(r"no such (?:table|column|function|index|view|collation sequence): (?P<name>\S+)")

_READ_KEYWORDS = {"SELECT", "VALUES", "EXPLAIN"}
_WRITE_KEYWORDS = {"INSERT", "REPLACE", "UPDATE", "DELETE"}
_DDL_KEYWORDS = {"CREATE", "ALTER", "DROP"}
_TRANSACTION_KEYWORDS = {"BEGIN", "COMMIT", "END", "ROLLBACK"}

# Pragmas that change state even without an assignment.
_SIDE_EFFECT_PRAGMAS = {"optimize", "wal_checkpoint", "incremental_vacuum", "shrink_memory"}


def split_statements(sql: str) -> list[Statement]:
    """Split ``sql`` into classified statements, dropping empty ones."""
    if not isinstance(sql, str):
        raise ValidationError("SQL text must be a string.")

    statements: list[Statement] = []
    start = 0
    search_from = 0
    while True:
        semicolon = sql.find(";", search_from)
        if semicolon == -1:
            break
        candidate = sql[start : semicolon + 1]
        if sqlite3.complete_statement(candidate):
            _append(statements, candidate, start)
            start = semicolon + 1
        search_from = semicolon + 1

    _append(statements, sql[start:], start)
    return statements


def classify(sql: str) -> tuple[StatementKind, str]:
    """Return the routing kind and leading keyword of a single statement."""
    body = sql[skip_trivia(sql, 0) :]
    match = _KEYWORD_RE.match(body)
    if not match:
        return StatementKind.OTHER, ""
    keyword = match.group(0).upper()

    if keyword in _READ_KEYWORDS:
        return StatementKind.READ, keyword
    if keyword in _WRITE_KEYWORDS:
        return StatementKind.WRITE, keyword
    if keyword in _DDL_KEYWORDS:
        return StatementKind.DDL, keyword
    if keyword == "WITH":
        return _classify_with(body), keyword
    if keyword == "PRAGMA":
        return _classify_pragma(body), keyword
    if keyword == "ROLLBACK":
        # ROLLBACK TO <savepoint> unwinds a savepoint, not the transaction.
        if "TO" in _top_level_words(body):
            return StatementKind.OTHER, keyword
        return StatementKind.TRANSACTION, keyword
    if keyword in _TRANSACTION_KEYWORDS:
        return StatementKind.TRANSACTION, keyword
    return StatementKind.OTHER, keyword


def skip_trivia(text: str, index: int) -> int:
    """Return the index of the first character after whitespace and comments."""
    length = len(text)
    while index < length:
        char = text[index]
        if char.isspace():
            index += 1
        elif text.startswith("--", index):
            newline = text.find("\n", index)
            index = length if newline == -1 else newline + 1
        elif text.startswith("/*", index):
            closing = text.find("*/", index + 2)
            index = length if closing == -1 else closing + 2
        else:
            break
    return index


def locate_error(message: str, statement: Statement) -> int:
    """Best-effort character offset (into the request text) of a prepare error."""
    text = statement.sql
    lowered = text.lower()
    for pattern in (_NEAR_RE, _UNRECOGNIZED_RE):
        match = pattern.search(message)
        if match:
            token = match.group("token")
            position = lowered.find(token.lower())
            if position >= 0:
                return statement.offset + position
    match = _NO_SUCH_RE.search(message)
    if match:
        name = match.group("name").split(".")[-1]
        position = lowered.find(name.lower())
        if position >= 0:
            return statement.offset + position
    if "incomplete input" in message:
        return statement.offset + len(text)
    return statement.offset


# ---------------------------------------------------------------------------
# Internal helpers


def _append(statements: list[Statement], fragment: str, fragment_offset: int) -> None:
    leading = skip_trivia(fragment, 0)
    body = fragment[leading:].rstrip()
    if not body or body == ";":
        return
    if not _has_tokens(body):
        return
    kind, keyword = classify(body)
    statements.append(Statement(sql=body, kind=kind, keyword=keyword, offset=fragment_offset + leading))


def _has_tokens(body: str) -> bool:
    return any(word for word in _iter_words(body, top_level_only=False))


def _classify_with(body: str) -> StatementKind:
    for word in _top_level_words(body):
        if word in _WRITE_KEYWORDS:
            return StatementKind.WRITE
        if word in {"SELECT", "VALUES"}:
            return StatementKind.READ
    return StatementKind.READ


def _classify_pragma(body: str) -> StatementKind:
    words = _top_level_words(body)
    name = words[1].lower() if len(words) > 1 else ""
    # schema-qualified pragmas: PRAGMA main.user_version
    if len(words) > 2 and _dotted_pragma(body):
        name = words[2].lower()
    if _has_top_level_assignment(body) or name in _SIDE_EFFECT_PRAGMAS:
        return StatementKind.OTHER
    return StatementKind.READ


def _dotted_pragma(body: str) -> bool:
    return re.match(r"\s*PRAGMA\s+[A-Za-z_]+\s*\.", body, re.IGNORECASE) is not None


def _has_top_level_assignment(body: str) -> bool:
    return any(char == "=" for char, depth in _iter_chars(body) if depth == 0)


def _top_level_words(body: str) -> list[str]:
    return [word.upper() for word in _iter_words(body, top_level_only=True)]


def _iter_words(body: str, *, top_level_only: bool) -> Iterator[str]:
    word: list[str] = []
    for char, depth in _iter_chars(body):
        if (char.isalnum() or char == "_") and (depth == 0 or not top_level_only):
            word.append(char)
            continue
        if word:
            yield "".join(word)
            word = []
    if word:
        yield "".join(word)


def _iter_chars(body: str) -> Iterator[tuple[str, int]]:
    """Yield (char, paren depth) for characters outside literals and comments.

    Quoted literals and identifiers are reported as a single space so that
    words on either side stay separated.
    """
    depth = 0
    index = 0
    length = len(body)
    closers = {"'": "'", '"': '"', "`": "`", "[": "]"}
    while index < length:
        char = body[index]
        if char in closers:
            closing = body.find(closers[char], index + 1)
            # doubled quotes inside a literal
            while closing != -1 and closers[char] != "]" and body.startswith(closers[char] * 2, closing):
                closing = body.find(closers[char], closing + 2)
            index = length if closing == -1 else closing + 1
            yield " ", depth
            continue
        if body.startswith("--", index) or body.startswith("/*", index):
            index = skip_trivia(body, index)
            yield " ", depth
            continue
        if char == "(":
            depth += 1
            yield " ", depth
        elif char == ")":
            depth = max(depth - 1, 0)
            yield " ", depth
        else:
            yield char, depth
        index += 1
