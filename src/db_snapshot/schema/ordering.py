"""Table dependency order.

The platform's tables are listed by hand in foreign-key tiers (parents
first).  ``ordered_tables()`` intersects that list with the tables that
actually exist, drops internal bookkeeping tables, and appends tables the
list does not know about.

Appended tables are a known gap: the hand-maintained list can fall behind
the live schema.  When foreign-key metadata is available the appended
tables are topologically sorted among themselves, and every appended table
is logged so the list can be updated.

Usage:
    from db_snapshot.schema.ordering import ordered_tables, sort_by_dependency

    order = ordered_tables(["tasks", "users", "audit_logs"])
    # -> ["users", "tasks", "audit_logs"]
"""

import logging
from collections.abc import Iterable, Sequence

from db_snapshot.schema.models import ForeignKeyRef

logger = logging.getLogger(__name__)

DEFAULT_TABLE_ORDER: tuple[str, ...] = (
    # Tier 1: no dependencies
    "roles",
    "users",
    # Tier 2
    "user_roles",
    "system_options",
    "ai_settings",
    "notification_settings",
    "data_collection_purposes",
    "data_retention_policies",
    "kpi_registry",
    "raci_templates",
    "form_definitions",
    # Tier 3
    "initiatives",
    "kpi_values",
    "kpi_versions",
    "bsc_objectives",
    "consent_forms",
    "data_deletion_requests",
    "system_integrations",
    "ranking_submissions",
    "file_uploads",
    "conversations",
    # Tier 4
    "okrs",
    "incidents",
    "bsc_objective_kpis",
    "bsc_causal_links",
    "initiative_bsc_objectives",
    "initiative_kpis",
    "initiative_programs",
    "workflows",
    "integration_sync_logs",
    "ranking_indicators",
    "messages",
    # Tier 5
    "key_results",
    "pdca_cycles",
    "workflow_actions",
    "incident_checklists",
    "incident_notifications",
    "ranking_evidence",
    # Tier 6
    "tasks",
    "pdca_plans",
    "pdca_executions",
    "pdca_checks",
    "pdca_actions",
    # Tier 7
    "task_attachments",
    "task_collaborators",
    "task_form_records",
    # Tier 8: logs last
    "data_imports",
    "audit_logs",
    "backup_history",
)

# System tables never exported or restored
EXCLUDED_TABLES: frozenset[str] = frozenset({
    "schema_migrations",
    "pg_stat_statements",
    "spatial_ref_sys",
})


def _toposort(tables: list[str], foreign_keys: Iterable[ForeignKeyRef]) -> list[str]:
    """Stable Kahn sort of ``tables`` using edges between members only.

    Tables caught in a cycle keep their input order after the sortable ones.
    """
    members = set(tables)
    parents: dict[str, set[str]] = {t: set() for t in tables}
    for fk in foreign_keys:
        if fk.table == fk.references_table:
            continue
        if fk.table in members and fk.references_table in members:
            parents[fk.table].add(fk.references_table)

    result: list[str] = []
    placed: set[str] = set()
    remaining = list(tables)
    progress = True
    while remaining and progress:
        progress = False
        for table in list(remaining):
            if parents[table] <= placed:
                result.append(table)
                placed.add(table)
                remaining.remove(table)
                progress = True
                break

    if remaining:
        logger.warning(
            "Foreign-key cycle among unlisted tables, keeping introspection order: %s",
            ", ".join(remaining),
        )
        result.extend(remaining)
    return result


def ordered_tables(
    existing: Sequence[str],
    table_order: Sequence[str] = DEFAULT_TABLE_ORDER,
    excluded: Iterable[str] = EXCLUDED_TABLES,
    foreign_keys: Iterable[ForeignKeyRef] | None = None,
) -> list[str]:
    """Return the processing order for the tables that exist.

    Args:
        existing: Table names as returned by the introspector.
        table_order: Hand-maintained dependency order (parents first).
        excluded: Tables that are never processed.
        foreign_keys: Optional live FK metadata.  Only used to order tables
            missing from ``table_order`` and to report violations.

    Returns:
        Listed tables in ``table_order`` order, then unlisted tables.

    Example:
        >>> ordered_tables(["tasks", "users", "schema_migrations"])
        ['users', 'tasks']
    """
    excluded_set = set(excluded)
    existing_set = set(existing)

    listed = [t for t in table_order if t in existing_set and t not in excluded_set]
    listed_set = set(listed)
    unlisted: list[str] = []
    for table in existing:
        if table not in listed_set and table not in excluded_set and table not in unlisted:
            unlisted.append(table)

    if unlisted:
        logger.warning(
            "Tables missing from the dependency order, appended last: %s",
            ", ".join(unlisted),
        )
        if foreign_keys is not None:
            foreign_keys = list(foreign_keys)
            unlisted = _toposort(unlisted, foreign_keys)

    result = listed + unlisted
    if foreign_keys is not None:
        for child, parent in find_order_violations(result, foreign_keys):
            logger.warning(
                "Dependency order lists %s before its parent %s", child, parent
            )
    return result


def sort_by_dependency(tables: Iterable[str], order: Sequence[str]) -> list[str]:
    """Reorder ``tables`` to follow ``order``.

    Tables not in ``order`` are dropped; use ``ordered_tables()`` output so
    every processable table is present.

    Example:
        >>> sort_by_dependency(["tasks", "users"], ["users", "tasks"])
        ['users', 'tasks']
    """
    wanted = set(tables)
    return [t for t in order if t in wanted]


def find_order_violations(
    order: Sequence[str], foreign_keys: Iterable[ForeignKeyRef]
) -> list[tuple[str, str]]:
    """Find ``(child, parent)`` pairs where the child comes first.

    Self-references and tables outside ``order`` are ignored.
    """
    position = {table: i for i, table in enumerate(order)}
    violations: list[tuple[str, str]] = []
    for fk in foreign_keys:
        if fk.table == fk.references_table:
            continue
        child_pos = position.get(fk.table)
        parent_pos = position.get(fk.references_table)
        if child_pos is None or parent_pos is None:
            continue
        pair = (fk.table, fk.references_table)
        if child_pos < parent_pos and pair not in violations:
            violations.append(pair)
    return violations
