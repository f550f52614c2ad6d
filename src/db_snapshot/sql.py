"""SQL text helpers shared by the adapter and the statement artifact format.

- ``quote_identifier`` -- double-quote a table/column name.
- ``render_literal`` -- render a Python value as a PostgreSQL literal.
- ``split_statements`` -- quote-aware split of a script into statements.
- ``parse_statement`` -- classify a statement (insert, truncate, ...) and
  extract its target table.

Usage:
    from db_snapshot.sql import quote_identifier, render_literal, split_statements

    sql = f"INSERT INTO {quote_identifier('users')} VALUES ({render_literal('O''Hara')})"
    statements = split_statements(script)
"""

import json
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

# INSERT / TRUNCATE target: optional schema qualifier, then a quoted or bare name
_NAME = r'(?:"((?:[^"]|"")+)"|([A-Za-z_][\w$]*))'
_QUALIFIER = rf"(?:{_NAME}\.)?"

INSERT_PATTERN = re.compile(
    rf"^\s*INSERT\s+INTO\s+{_QUALIFIER}{_NAME}", re.IGNORECASE
)
TRUNCATE_PATTERN = re.compile(
    rf"^\s*TRUNCATE\s+(?:TABLE\s+)?(?:ONLY\s+)?{_QUALIFIER}{_NAME}", re.IGNORECASE
)
INTEGRITY_PATTERN = re.compile(
    r"^\s*SET\s+(?:LOCAL\s+|SESSION\s+)?session_replication_role\b", re.IGNORECASE
)
ON_CONFLICT_PATTERN = re.compile(r"\bON\s+CONFLICT\b", re.IGNORECASE)

StatementKind = Literal["insert", "truncate", "integrity", "other"]


@dataclass(frozen=True)
class ParsedStatement:
    """A single statement from a statement-format artifact."""

    kind: StatementKind
    sql: str
    table: str | None = None
    schema: str | None = None


def quote_identifier(name: str) -> str:
    """Double-quote an identifier, escaping embedded quotes.

    Example:
        >>> quote_identifier('user"s')
        '"user""s"'
    """
    return '"' + name.replace('"', '""') + '"'


def _quote_text(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def _array_element(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, (list, tuple)):
        return _array_text(value)
    if isinstance(value, bool):
        text = "true" if value else "false"
    elif isinstance(value, (datetime, date, time)):
        text = value.isoformat()
    elif isinstance(value, (bytes, bytearray, memoryview)):
        text = "\\x" + bytes(value).hex()
    elif isinstance(value, dict):
        text = json.dumps(value, default=str, ensure_ascii=False)
    else:
        text = str(value)
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _array_text(values: list | tuple) -> str:
    return "{" + ",".join(_array_element(v) for v in values) + "}"


def render_literal(value: Any, data_type: str | None = None) -> str:
    """Render a value as a PostgreSQL literal.

    Args:
        value: Python value as returned by the adapter.
        data_type: Optional normalized column type.  ``"array"`` renders
            lists as an untyped array literal (``'{"a","b"}'``) so the
            server converts elements to the column's element type.
            ``"json"`` / ``"jsonb"`` render any value, scalars included,
            as JSON text.

    Returns:
        Literal text safe to embed in a statement.

    Example:
        >>> render_literal(None)
        'NULL'
        >>> render_literal("it's")
        "'it''s'"
        >>> render_literal({"a": 1})
        '\\'{"a": 1}\\'::jsonb'
    """
    if value is None:
        return "NULL"
    if data_type in ("json", "jsonb"):
        text = json.dumps(value, default=str, ensure_ascii=False)
        return _quote_text(text) + "::" + data_type
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if math.isfinite(value):
            return repr(value)
        if math.isnan(value):
            return "'NaN'"
        return "'Infinity'" if value > 0 else "'-Infinity'"
    if isinstance(value, Decimal):
        return str(value) if value.is_finite() else _quote_text(str(value))
    if isinstance(value, (datetime, date, time)):
        return _quote_text(value.isoformat())
    if isinstance(value, UUID):
        return _quote_text(str(value))
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "'\\x" + bytes(value).hex() + "'::bytea"
    if isinstance(value, (list, tuple)) and data_type == "array":
        return _quote_text(_array_text(value))
    if isinstance(value, (dict, list, tuple)):
        text = json.dumps(value, default=str, ensure_ascii=False)
        return _quote_text(text) + "::jsonb"
    return _quote_text(str(value))


def split_statements(script: str) -> list[str]:
    """Split a SQL script into statements.

    Semicolons inside single-quoted literals or double-quoted identifiers
    do not end a statement.  ``--`` comments outside quotes are dropped.

    Args:
        script: SQL text.

    Returns:
        Statements without their trailing semicolon, whitespace-stripped.
        Empty statements are omitted.

    Example:
        >>> split_statements("INSERT INTO t VALUES ('a;b');\\n-- done\\n")
        ["INSERT INTO t VALUES ('a;b')"]
    """
    statements: list[str] = []
    current: list[str] = []
    quote: str | None = None
    i = 0
    length = len(script)

    while i < length:
        ch = script[i]

        if quote is not None:
            current.append(ch)
            if ch == quote:
                # Doubled quote is an escaped quote, not a terminator
                if i + 1 < length and script[i + 1] == quote:
                    current.append(script[i + 1])
                    i += 1
                else:
                    quote = None
            i += 1
            continue

        if ch in ("'", '"'):
            quote = ch
            current.append(ch)
        elif ch == "-" and script.startswith("--", i):
            newline = script.find("\n", i)
            if newline == -1:
                break
            i = newline
            continue
        elif ch == ";":
            statement = "".join(current).strip()
            if statement:
                statements.append(statement)
            current = []
        else:
            current.append(ch)
        i += 1

    tail = "".join(current).strip()
    if tail:
        statements.append(tail)
    return statements


def _match_name(match: re.Match, group: int) -> str | None:
    quoted, bare = match.group(group), match.group(group + 1)
    if quoted is not None:
        return quoted.replace('""', '"')
    return bare


def _unquoted_text(sql: str) -> str:
    """``sql`` with the contents of quoted literals and identifiers removed."""
    parts: list[str] = []
    quote: str | None = None
    i = 0
    while i < len(sql):
        ch = sql[i]
        if quote is None:
            if ch in ("'", '"'):
                quote = ch
            parts.append(ch)
        elif ch == quote:
            if sql.startswith(quote * 2, i):
                i += 1
            else:
                quote = None
                parts.append(ch)
        i += 1
    return "".join(parts)


def parse_statement(sql: str) -> ParsedStatement:
    """Classify a statement and extract its target table.

    ``schema`` is set only when the target is schema-qualified.

    Example:
        >>> parse_statement('TRUNCATE TABLE "users" CASCADE').table
        'users'
        >>> parse_statement("INSERT INTO audit.users VALUES (1)").schema
        'audit'
    """
    for kind, pattern in (("insert", INSERT_PATTERN), ("truncate", TRUNCATE_PATTERN)):
        match = pattern.match(sql)
        if match:
            return ParsedStatement(
                kind=kind, sql=sql, table=_match_name(match, 3), schema=_match_name(match, 1)
            )
    if INTEGRITY_PATTERN.match(sql):
        return ParsedStatement(kind="integrity", sql=sql)
    return ParsedStatement(kind="other", sql=sql)


def with_conflict_skip(sql: str) -> str:
    """Append ``ON CONFLICT DO NOTHING`` to an INSERT that has no conflict clause.

    Text inside quoted literals is not mistaken for a clause.
    """
    if ON_CONFLICT_PATTERN.search(_unquoted_text(sql)):
        return sql
    return f"{sql} ON CONFLICT DO NOTHING"
