"""PostgreSQL schema introspection via information_schema.

This module queries the live database for the metadata backup and restore
need:
- Tables (base tables of one schema)
- Columns, in ordinal order, with normalized data types
- Foreign keys (child table -> parent table)

All queries run through ``DatabaseClient.fetch()``, so the introspector
shares the adapter's connection pool and is read-only.
"""

from db_snapshot.adapters.base import DatabaseClient
from db_snapshot.schema.models import ColumnSchema, ForeignKeyRef


class SchemaIntrospector:
    """Introspects a PostgreSQL database schema.

    Uses information_schema for metadata lookup.  Works with any
    PostgreSQL database (RDS, Supabase, local).

    Usage:
        introspector = SchemaIntrospector(adapter)
        tables = await introspector.list_tables()
        columns = await introspector.get_columns("users")
    """

    def __init__(self, client: DatabaseClient, schema_name: str = "public"):
        """Initialize with a database client.

        Args:
            client: Adapter implementing ``DatabaseClient``.
            schema_name: PostgreSQL schema to introspect (default: public)
        """
        self._client = client
        self._schema_name = schema_name

    @property
    def schema_name(self) -> str:
        return self._schema_name

    async def list_tables(self) -> list[str]:
        """Get all base table names in the schema, sorted by name."""
        rows = await self._client.fetch(
            """
            SELECT table_name
            FROM information_schema.tables
            WHERE table_schema = :schema
              AND table_type = 'BASE TABLE'
            ORDER BY table_name
            """,
            {"schema": self._schema_name},
        )
        return [row["table_name"] for row in rows]

    async def get_columns(self, table_name: str) -> dict[str, ColumnSchema]:
        """Get columns for a table, keyed by name, in ordinal order."""
        rows = await self._client.fetch(
            """
            SELECT
                column_name,
                data_type,
                is_nullable,
                column_default
            FROM information_schema.columns
            WHERE table_schema = :schema
              AND table_name = :table
            ORDER BY ordinal_position
            """,
            {"schema": self._schema_name, "table": table_name},
        )
        columns: dict[str, ColumnSchema] = {}
        for row in rows:
            columns[row["column_name"]] = ColumnSchema(
                name=row["column_name"],
                data_type=self._normalize_data_type(row["data_type"]),
                is_nullable=(row["is_nullable"] == "YES"),
                default=row["column_default"],
            )
        return columns

    async def list_columns(self, table_name: str) -> list[str]:
        """Get ordered column names for a table."""
        return list((await self.get_columns(table_name)).keys())

    async def get_column_names(self) -> dict[str, set[str]]:
        """Get column names for all tables.

        Returns:
            Dict mapping table name to set of column names
        """
        result: dict[str, set[str]] = {}
        for table_name in await self.list_tables():
            result[table_name] = set(await self.list_columns(table_name))
        return result

    async def list_foreign_keys(self) -> list[ForeignKeyRef]:
        """Get every foreign key in the schema."""
        rows = await self._client.fetch(
            """
            SELECT
                tc.constraint_name,
                tc.table_name,
                kcu.column_name,
                ccu.table_name AS references_table,
                ccu.column_name AS references_column
            FROM information_schema.table_constraints tc
            JOIN information_schema.key_column_usage kcu
                ON tc.constraint_name = kcu.constraint_name
                AND tc.table_schema = kcu.table_schema
            JOIN information_schema.constraint_column_usage ccu
                ON tc.constraint_name = ccu.constraint_name
                AND tc.table_schema = ccu.table_schema
            WHERE tc.table_schema = :schema
              AND tc.constraint_type = 'FOREIGN KEY'
            ORDER BY tc.table_name, tc.constraint_name
            """,
            {"schema": self._schema_name},
        )
        return [
            ForeignKeyRef(
                table=row["table_name"],
                column=row["column_name"],
                references_table=row["references_table"],
                references_column=row["references_column"],
                constraint_name=row["constraint_name"],
            )
            for row in rows
        ]

    def _normalize_data_type(self, data_type: str) -> str:
        """Normalize PostgreSQL data type names.

        Maps verbose information_schema types to standard names.
        """
        type_map = {
            "character varying": "varchar",
            "character": "char",
            "timestamp with time zone": "timestamptz",
            "timestamp without time zone": "timestamp",
            "time with time zone": "timetz",
            "time without time zone": "time",
            "integer": "int",
            "boolean": "bool",
            "double precision": "float8",
        }
        return type_map.get(data_type.lower(), data_type.lower())
