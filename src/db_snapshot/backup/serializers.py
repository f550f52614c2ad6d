"""Artifact serializers for the two backup formats.

Both formats share one skeleton: the exporter calls ``write_table()`` once
per table in dependency order, then ``finish()`` for the bytes.

- ``StructuredWriter`` (``json``): ``{"metadata": {...}, "data": {table: [rows]}}``.
- ``StatementWriter`` (``sql``): a script that suspends referential
  integrity, truncates and re-inserts every non-empty table, then restores
  enforcement.

Readers for uploaded artifacts live here too (``load_structured``,
``load_statements``).

Usage:
    writer = get_writer(ArtifactFormat.STRUCTURED)(created_by="admin")
    writer.write_table("users", columns, rows)
    data = writer.finish()
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, ClassVar

from db_snapshot.backup.models import ArtifactFormat, ArtifactMetadata
from db_snapshot.schema.models import ColumnSchema
from db_snapshot.sql import (
    ParsedStatement,
    parse_statement,
    quote_identifier,
    render_literal,
    split_statements,
)

INTEGRITY_SUSPEND = "SET session_replication_role = 'replica';"
INTEGRITY_RESTORE = "SET session_replication_role = 'origin';"


class ArtifactWriter(ABC):
    """Accumulates tables and renders one artifact."""

    format: ClassVar[ArtifactFormat]
    extension: ClassVar[str]

    def __init__(
        self,
        created_by: str,
        system_name: str = "",
        exclude_sensitive: bool = False,
        created_at: datetime | None = None,
    ) -> None:
        self.created_by = created_by
        self.system_name = system_name
        self.exclude_sensitive = exclude_sensitive
        self.created_at = (created_at or datetime.now(timezone.utc)).isoformat()
        self.tables: list[str] = []
        self.record_count = 0

    def write_table(self, table: str, columns: list[ColumnSchema], rows: list[dict]) -> None:
        """Append one table.  ``columns`` is the (filtered) column list."""
        self.tables.append(table)
        self.record_count += len(rows)
        self._write_table(table, columns, rows)

    @abstractmethod
    def _write_table(self, table: str, columns: list[ColumnSchema], rows: list[dict]) -> None:
        ...

    @abstractmethod
    def finish(self) -> bytes:
        """Render the artifact."""
        ...

    def metadata(self) -> ArtifactMetadata:
        return ArtifactMetadata(
            created_at=self.created_at,
            created_by=self.created_by,
            system_name=self.system_name,
            table_count=len(self.tables),
            record_count=self.record_count,
            tables=list(self.tables),
            exclude_sensitive=self.exclude_sensitive,
        )


class StructuredWriter(ArtifactWriter):
    format = ArtifactFormat.STRUCTURED
    extension = "json"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._data: dict[str, list[dict]] = {}

    def _write_table(self, table: str, columns: list[ColumnSchema], rows: list[dict]) -> None:
        names = [c.name for c in columns]
        self._data[table] = [{name: row.get(name) for name in names} for row in rows]

    def finish(self) -> bytes:
        document = {"metadata": self.metadata().model_dump(), "data": self._data}
        return json.dumps(document, indent=2, ensure_ascii=False, default=str).encode("utf-8")


class StatementWriter(ArtifactWriter):
    format = ArtifactFormat.STATEMENT
    extension = "sql"

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._body: list[str] = []

    def _write_table(self, table: str, columns: list[ColumnSchema], rows: list[dict]) -> None:
        if not rows:
            return

        target = quote_identifier(table)
        column_list = ", ".join(quote_identifier(c.name) for c in columns)
        label = table.replace("\n", " ")

        self._body.append(f"-- Table: {label} ({len(rows)} records)")
        self._body.append(f"TRUNCATE TABLE {target} CASCADE;")
        for row in rows:
            values = ", ".join(render_literal(row.get(c.name), c.data_type) for c in columns)
            self._body.append(f"INSERT INTO {target} ({column_list}) VALUES ({values});")
        self._body.append("")

    def finish(self) -> bytes:
        header = [
            f"-- {self.system_name or 'Database'} Backup",
            f"-- Created: {self.created_at}",
            f"-- Created by: {self.created_by}".replace("\n", " "),
            f"-- Tables: {len(self.tables)}",
            f"-- Records: {self.record_count}",
            "",
            "-- Disable foreign key checks",
            INTEGRITY_SUSPEND,
            "",
        ]
        footer = ["-- Re-enable foreign key checks", INTEGRITY_RESTORE, ""]
        return "\n".join(header + self._body + footer).encode("utf-8")


WRITERS: dict[ArtifactFormat, type[ArtifactWriter]] = {
    ArtifactFormat.STRUCTURED: StructuredWriter,
    ArtifactFormat.STATEMENT: StatementWriter,
}


def get_writer(format: ArtifactFormat) -> type[ArtifactWriter]:
    """Return the writer class for ``format``."""
    return WRITERS[ArtifactFormat(format)]


# ------------------------------------------------------------------
# Readers
# ------------------------------------------------------------------


def load_structured(data: bytes) -> Any:
    """Parse a structured artifact.

    Raises:
        ValueError: If the bytes are not UTF-8 JSON (``json.JSONDecodeError``
            and ``UnicodeDecodeError`` are both ``ValueError`` subclasses).
    """
    return json.loads(data.decode("utf-8"))


def load_statements(data: bytes) -> list[ParsedStatement]:
    """Split and classify a statement artifact.

    Raises:
        UnicodeDecodeError: If the bytes are not UTF-8.
    """
    return [parse_statement(s) for s in split_statements(data.decode("utf-8"))]
