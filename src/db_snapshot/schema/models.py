"""Pydantic models for schema introspection.

- ``ColumnSchema``: one column of a live table.
- ``ForeignKeyRef``: one child -> parent table reference, used to check
  and extend the table dependency order.
"""

from pydantic import BaseModel


class ColumnSchema(BaseModel):
    """Schema for a database column.

    Example:
        >>> col = ColumnSchema(name="id", data_type="uuid")
        >>> col.is_nullable
        True
    """

    name: str
    data_type: str
    is_nullable: bool = True
    default: str | None = None


class ForeignKeyRef(BaseModel):
    """A foreign key from ``table.column`` to ``references_table``."""

    table: str                  # child table
    column: str                 # FK column in the child table
    references_table: str       # parent table
    references_column: str | None = None
    constraint_name: str = ""
