"""Shared fixtures: an in-memory database behind the client/session protocols.

``FakeDatabase`` stores rows per table in plain dicts and mimics the parts
of PostgreSQL the engine relies on: primary-key conflicts, foreign-key
enforcement that ``set_referential_integrity(False)`` suspends, savepoints,
and transactions that roll back on error.  ``FakeIntrospector`` serves the
same schema through the ``SchemaIntrospector`` surface.
"""

import copy
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import pytest

from db_snapshot.backup.service import BackupService
from db_snapshot.backup.storage import LocalBlobSink
from db_snapshot.config.models import BackupSettings
from db_snapshot.schema.models import ColumnSchema, ForeignKeyRef

HISTORY_COLUMNS = {
    "id": "text",
    "kind": "text",
    "format": "text",
    "status": "text",
    "progress": "int",
    "current_table": "text",
    "artifact_name": "text",
    "artifact_location": "text",
    "artifact_size": "bigint",
    "table_count": "int",
    "record_count": "int",
    "result_summary": "jsonb",
    "error_message": "text",
    "created_by": "text",
    "created_at": "timestamptz",
    "completed_at": "timestamptz",
}


def _unquote(name: str) -> str:
    name = name.strip()
    if name.startswith('"') and name.endswith('"'):
        return name[1:-1].replace('""', '"')
    return name


class FakeSession:
    """``DatabaseSession`` over a ``FakeDatabase``."""

    def __init__(self, db: "FakeDatabase") -> None:
        self._db = db

    async def insert(
        self,
        table: str,
        data: dict,
        column_types: dict[str, str] | None = None,
        skip_conflicts: bool = False,
    ) -> bool:
        db = self._db
        if db.fail_row is not None and db.fail_row(table, data):
            raise RuntimeError(f"insert into {table} rejected")
        unknown = set(data) - set(db.columns[table])
        if unknown:
            raise RuntimeError(f"column {sorted(unknown)[0]} does not exist")

        pk = db.primary_keys.get(table, "id")
        if any(row.get(pk) == data.get(pk) for row in db.rows[table]):
            if skip_conflicts:
                return False
            raise RuntimeError(f'duplicate key value violates unique constraint "{table}_pkey"')

        if db.integrity_enabled:
            db.check_foreign_keys(table, data)

        db.rows[table].append(dict(data))
        db.column_types_seen[table] = dict(column_types or {})
        return True

    async def truncate(self, table: str) -> None:
        self._db.rows[table] = []
        self._db.truncated.append(table)

    async def execute(self, sql: str) -> int:
        self._db.statements.append(sql)
        return self._db.statement_rowcount(sql)

    async def set_referential_integrity(self, enabled: bool) -> None:
        self._db.integrity_enabled = enabled
        self._db.integrity_log.append(enabled)

    async def try_advisory_lock(self, key: int) -> bool:
        self._db.lock_keys.append(key)
        return not self._db.lock_held

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        snapshot = copy.deepcopy(self._db.rows)
        try:
            yield
        except BaseException:
            self._db.rows = snapshot
            raise


class FakeDatabase:
    """In-memory ``DatabaseClient``.

    Args:
        schema: Table name -> {column: data type}, in introspection order.
        foreign_keys: FK edges, enforced while integrity is enabled.
    """

    def __init__(
        self,
        schema: dict[str, dict[str, str]],
        foreign_keys: list[ForeignKeyRef] | None = None,
        history_table: str = "backup_history",
    ) -> None:
        self.columns: dict[str, dict[str, ColumnSchema]] = {
            table: {
                name: ColumnSchema(name=name, data_type=data_type)
                for name, data_type in columns.items()
            }
            for table, columns in schema.items()
        }
        self.rows: dict[str, list[dict]] = {table: [] for table in schema}
        self.primary_keys: dict[str, str] = {}
        self.foreign_keys = list(foreign_keys or [])
        self.history_table = history_table

        self.integrity_enabled = True
        self.integrity_log: list[bool] = []
        self.lock_held = False
        self.lock_keys: list[int] = []
        self.fail_row: Callable[[str, dict], bool] | None = None
        self.statement_rowcount: Callable[[str], int] = lambda sql: 1
        self.statements: list[str] = []
        self.executed: list[str] = []
        self.truncated: list[str] = []
        self.column_types_seen: dict[str, dict[str, str]] = {}
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def check_foreign_keys(self, table: str, data: dict) -> None:
        for fk in self.foreign_keys:
            if fk.table != table or data.get(fk.column) is None:
                continue
            parent_key = fk.references_column or "id"
            parents = self.rows[fk.references_table]
            if not any(r.get(parent_key) == data[fk.column] for r in parents):
                raise RuntimeError(
                    f'insert on table "{table}" violates foreign key constraint '
                    f'"{fk.constraint_name or fk.column}"'
                )

    # ------------------------------------------------------------------
    # DatabaseClient
    # ------------------------------------------------------------------

    async def select(
        self,
        table: str,
        columns: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        rows = [
            row
            for row in self.rows[_unquote(table)]
            if all(row.get(k) == v for k, v in (filters or {}).items())
        ]
        if order_by:
            key, _, direction = order_by.partition(" ")
            rows = sorted(rows, key=lambda r: r.get(key), reverse=direction.upper() == "DESC")
        if limit is not None:
            rows = rows[:limit]
        if columns.strip() == "*":
            return copy.deepcopy(rows)
        names = [_unquote(c) for c in columns.split(",")]
        return [{name: copy.deepcopy(row.get(name)) for name in names} for row in rows]

    async def insert(self, table: str, data: dict) -> dict:
        table = _unquote(table)
        pk = self.primary_keys.get(table, "id")
        if any(row.get(pk) == data.get(pk) for row in self.rows[table]):
            raise RuntimeError(f'duplicate key value violates unique constraint "{table}_pkey"')
        self.rows[table].append(copy.deepcopy(data))
        return copy.deepcopy(data)

    async def update(self, table: str, data: dict, filters: dict[str, Any]) -> dict:
        matched = [
            row
            for row in self.rows[_unquote(table)]
            if all(row.get(k) == v for k, v in filters.items())
        ]
        if not matched:
            raise ValueError(f"No rows matched filters: {filters}")
        for row in matched:
            row.update(copy.deepcopy(data))
        return copy.deepcopy(matched[0])

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        table = _unquote(table)
        self.rows[table] = [
            row
            for row in self.rows[table]
            if not all(row.get(k) == v for k, v in filters.items())
        ]

    async def execute(self, sql: str, params: dict | None = None) -> None:
        self.executed.append(sql)

    async def fetch(self, sql: str, params: dict | None = None) -> list[dict]:
        self.executed.append(sql)
        return []

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[FakeSession]:
        # Job records are written on their own connection, outside the restore
        snapshot = {
            t: copy.deepcopy(rows) for t, rows in self.rows.items() if t != self.history_table
        }
        try:
            yield FakeSession(self)
        except BaseException:
            self.rows.update(snapshot)
            self.rollbacks += 1
            raise
        else:
            self.commits += 1
        finally:
            # SET LOCAL ends with the transaction
            self.integrity_enabled = True

    async def close(self) -> None:
        self.closed = True


class FakeIntrospector:
    """``SchemaIntrospector`` surface over a ``FakeDatabase``."""

    schema_name = "public"

    def __init__(self, db: FakeDatabase) -> None:
        self._db = db

    async def list_tables(self) -> list[str]:
        return list(self._db.columns)

    async def get_columns(self, table_name: str) -> dict[str, ColumnSchema]:
        return dict(self._db.columns.get(table_name, {}))

    async def list_columns(self, table_name: str) -> list[str]:
        return list(self._db.columns.get(table_name, {}))

    async def get_column_names(self) -> dict[str, set[str]]:
        return {t: set(cols) for t, cols in self._db.columns.items()}

    async def list_foreign_keys(self) -> list[ForeignKeyRef]:
        return list(self._db.foreign_keys)


# ----------------------------------------------------------------------
# Sample schema: users <- tasks, plus bookkeeping tables
# ----------------------------------------------------------------------

TASKS_FK = ForeignKeyRef(
    table="tasks",
    column="assignee_id",
    references_table="users",
    references_column="id",
    constraint_name="tasks_assignee_id_fkey",
)


def sample_schema() -> dict[str, dict[str, str]]:
    # Deliberately not in dependency order
    return {
        "tasks": {"id": "text", "assignee_id": "text", "title": "text", "metadata": "jsonb"},
        "schema_migrations": {"version": "text"},
        "users": {
            "id": "text",
            "username": "varchar",
            "password_hash": "varchar",
            "created_at": "timestamptz",
        },
        "backup_history": dict(HISTORY_COLUMNS),
    }


def seed_users_and_tasks(db: FakeDatabase) -> None:
    """2 users and 3 tasks."""
    created = datetime(2026, 1, 15, 9, 30, tzinfo=timezone.utc).isoformat()
    db.rows["users"] = [
        {"id": "u1", "username": "alice", "password_hash": "hash-a", "created_at": created},
        {"id": "u2", "username": "bob", "password_hash": "hash-b", "created_at": created},
    ]
    db.rows["tasks"] = [
        {"id": "t1", "assignee_id": "u1", "title": "Draft KPI report", "metadata": {"tier": 1}},
        {"id": "t2", "assignee_id": "u2", "title": "Review O'Hara; notes", "metadata": None},
        {"id": "t3", "assignee_id": "u1", "title": "Close PDCA cycle", "metadata": ["a", "b"]},
    ]
    db.rows["schema_migrations"] = [{"version": "001"}]


@pytest.fixture
def db() -> FakeDatabase:
    return FakeDatabase(sample_schema(), foreign_keys=[TASKS_FK])


@pytest.fixture
def seeded_db(db: FakeDatabase) -> FakeDatabase:
    seed_users_and_tasks(db)
    return db


@pytest.fixture
def introspector(db: FakeDatabase) -> FakeIntrospector:
    return FakeIntrospector(db)


@pytest.fixture
def settings() -> BackupSettings:
    return BackupSettings()


@pytest.fixture
def sink(tmp_path) -> LocalBlobSink:
    return LocalBlobSink(tmp_path / "blobs")


@pytest.fixture
def service(db: FakeDatabase, sink: LocalBlobSink, settings: BackupSettings) -> BackupService:
    return BackupService(db, sink, settings, introspector=FakeIntrospector(db))
