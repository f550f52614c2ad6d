"""Database client protocol definitions.

Defines the ``DatabaseClient`` Protocol that all adapters must implement,
and the ``DatabaseSession`` Protocol for work that has to run inside a
single transaction (restore).  All methods are ``async def`` -- the
library is async-first.

Usage:
    from db_snapshot.adapters.base import DatabaseClient

    async def do_work(client: DatabaseClient) -> None:
        rows = await client.select("users", "id, username")
        async with client.transaction() as session:
            await session.set_referential_integrity(False)
            await session.insert("users", {"id": "u1", "username": "alice"})
        await client.close()
"""

from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol


class DatabaseSession(Protocol):
    """Transaction-scoped operations used by restore.

    A session is only valid inside ``DatabaseClient.transaction()``.
    Everything executed through it commits or rolls back together.
    """

    async def insert(
        self,
        table: str,
        data: dict,
        column_types: dict[str, str] | None = None,
        skip_conflicts: bool = False,
    ) -> bool:
        """Insert one row.

        Args:
            table: Table name (unquoted).
            data: Dict of column=value pairs.
            column_types: Optional normalized data type per column, used to
                coerce serialized values back to driver types.
            skip_conflicts: When ``True``, a conflicting row is left
                untouched instead of raising.

        Returns:
            ``True`` if the row was written, ``False`` if it was skipped
            because of a conflict.

        Raises:
            Exception: On constraint violation (when not skipping) or any
                other driver error.
        """
        ...

    async def truncate(self, table: str) -> None:
        """Remove every row from ``table``."""
        ...

    async def execute(self, sql: str) -> int:
        """Execute one raw statement and return its row count.

        The statement is passed to the driver as-is; no bind-parameter
        parsing happens, so literals may contain colons.
        """
        ...

    async def set_referential_integrity(self, enabled: bool) -> None:
        """Suspend or restore foreign-key enforcement for this transaction."""
        ...

    async def try_advisory_lock(self, key: int) -> bool:
        """Try to take a transaction-scoped advisory lock.

        Returns:
            ``True`` if acquired, ``False`` if another session holds it.
        """
        ...

    def savepoint(self) -> AbstractAsyncContextManager[None]:
        """Open a nested transaction.

        Rolls back to the savepoint (and re-raises) if the block fails,
        leaving the outer transaction usable.
        """
        ...


class DatabaseClient(Protocol):
    """Database client interface that all adapters must implement.

    This Protocol ensures type safety and consistent behavior across
    different database backends.

    All methods are async -- callers must ``await`` every operation.
    """

    async def select(
        self,
        table: str,
        columns: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[dict]:
        """Select rows from table.

        Args:
            table: Table name.
            columns: Comma-separated column names (e.g., ``"id, name, status"``).
            filters: Optional dict of field=value filters (all must match via AND).
            order_by: Optional ORDER BY expression (e.g., ``"created_at DESC"``).
            limit: Optional maximum number of rows.

        Returns:
            List of dicts, one per row.  Empty list if no matches.

        Example:
            rows = await client.select(
                "backup_history",
                "*",
                filters={"kind": "export"},
                order_by="created_at DESC",
                limit=20,
            )
        """
        ...

    async def insert(self, table: str, data: dict) -> dict:
        """Insert row into table and return the created row.

        Raises:
            Exception: If duplicate key or constraint violation.
        """
        ...

    async def update(self, table: str, data: dict, filters: dict[str, Any]) -> dict:
        """Update rows in table and return the first updated row.

        Raises:
            Exception: If no rows match filters.
        """
        ...

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        """Delete rows from table."""
        ...

    async def execute(self, sql: str, params: dict | None = None) -> None:
        """Execute a raw SQL statement (DDL or other non-query operations).

        Example:
            await client.execute(
                "CREATE TABLE IF NOT EXISTS backup_history (id TEXT PRIMARY KEY)"
            )
        """
        ...

    async def fetch(self, sql: str, params: dict | None = None) -> list[dict]:
        """Run a raw query with named parameters and return rows as dicts.

        Used for metadata lookups (``information_schema``) that do not fit
        the ``select()`` shape.
        """
        ...

    def transaction(self) -> AbstractAsyncContextManager[DatabaseSession]:
        """Open a transaction.

        Commits when the block exits normally, rolls back when it raises.

        Example:
            async with client.transaction() as session:
                await session.truncate("users")
        """
        ...

    async def close(self) -> None:
        """Close database connection and clean up resources."""
        ...
