"""Schema introspection and table dependency order.

Usage:
    from db_snapshot.schema import SchemaIntrospector, ordered_tables
"""

from db_snapshot.schema.introspector import SchemaIntrospector
from db_snapshot.schema.models import ColumnSchema, ForeignKeyRef
from db_snapshot.schema.ordering import (
    DEFAULT_TABLE_ORDER,
    EXCLUDED_TABLES,
    find_order_violations,
    ordered_tables,
    sort_by_dependency,
)

__all__ = [
    "SchemaIntrospector",
    "ColumnSchema",
    "ForeignKeyRef",
    "DEFAULT_TABLE_ORDER",
    "EXCLUDED_TABLES",
    "ordered_tables",
    "sort_by_dependency",
    "find_order_violations",
]
