"""Restore a stored artifact into the destination database.

The whole restore runs in one transaction:

1. Take the restore advisory lock (one restore per destination).
2. Suspend referential-integrity enforcement.
3. Walk the artifact's tables in dependency order, clearing each one first
   in ``overwrite`` mode, and insert every row inside its own savepoint.
4. Restore enforcement and commit.

Any fatal error (including cancellation) rolls back every table processed
so far.  ``SET LOCAL`` scoping means enforcement cannot outlive the
transaction even when the explicit re-enable cannot run.

Conflict policy per mode:
- ``overwrite``: plain insert; the first failing row aborts the restore.
- ``skip_conflicts`` / ``merge``: insert-if-absent; conflicting rows are
  counted as skipped, other row failures as failed.
"""

import logging
import zlib
from collections.abc import Iterable, Sequence
from typing import Any

from db_snapshot.adapters.base import DatabaseClient, DatabaseSession
from db_snapshot.backup.errors import (
    ArtifactNotFoundError,
    RestoreInProgressError,
    RestoreRowError,
)
from db_snapshot.backup.exporter import resolve_table_order
from db_snapshot.backup.jobs import CancellationToken, JobHandle, record_failure
from db_snapshot.backup.models import ArtifactFormat, RestoreMode, TableResult
from db_snapshot.backup.serializers import load_statements, load_structured
from db_snapshot.backup.storage import BlobSink
from db_snapshot.config.models import BackupSettings
from db_snapshot.schema.introspector import SchemaIntrospector
from db_snapshot.schema.ordering import sort_by_dependency
from db_snapshot.sql import ParsedStatement, with_conflict_skip

logger = logging.getLogger(__name__)

RESTORE_LOCK_KEY = zlib.crc32(b"db_snapshot.restore")


def plan_tables(
    artifact_tables: Iterable[str],
    order: Sequence[str],
    selected_tables: Iterable[str] | None = None,
) -> list[str]:
    """Tables to restore: artifact ∩ destination ∩ selection, in dependency order.

    ``order`` is the destination's processing order, so tables that do not
    exist (or are excluded) drop out here.

    Example:
        >>> plan_tables(["tasks", "users", "legacy"], ["users", "tasks"])
        ['users', 'tasks']
    """
    wanted = set(artifact_tables)
    if selected_tables is not None:
        wanted &= set(selected_tables)
    return sort_by_dependency(wanted, order)


def _summarize(results: dict[str, TableResult]) -> dict[str, Any]:
    return {
        "tables": {t: r.model_dump() for t, r in results.items()},
        "total_restored": sum(r.inserted for r in results.values()),
        "total_skipped": sum(r.skipped for r in results.values()),
        "total_failed": sum(r.failed for r in results.values()),
    }


class Restorer:
    """Runs one restore job to completion or failure."""

    def __init__(
        self,
        client: DatabaseClient,
        sink: BlobSink,
        settings: BackupSettings | None = None,
        introspector: SchemaIntrospector | None = None,
        lock_key: int = RESTORE_LOCK_KEY,
    ) -> None:
        self._client = client
        self._sink = sink
        self._settings = settings or BackupSettings()
        self._introspector = introspector or SchemaIntrospector(client)
        self._lock_key = lock_key

    async def run(
        self,
        handle: JobHandle,
        mode: RestoreMode,
        selected_tables: list[str] | None = None,
        token: CancellationToken | None = None,
    ) -> None:
        """Restore the job's artifact and finalize ``handle``.

        Never raises: every failure is recorded on the job record and the
        destination is rolled back.
        """
        mode = RestoreMode(mode)
        record = handle.record
        summary: dict[str, Any] = dict(record.result_summary)
        summary["mode"] = mode.value
        if selected_tables is not None:
            summary["selected_tables"] = list(selected_tables)

        results: dict[str, TableResult] = {}
        try:
            await handle.start()
            if not record.artifact_location:
                raise ArtifactNotFoundError(f"Restore job {record.id} has no artifact")
            data = await self._sink.get(record.artifact_location)
            order = await resolve_table_order(self._introspector, self._settings)

            async with self._client.transaction() as session:
                if not await session.try_advisory_lock(self._lock_key):
                    raise RestoreInProgressError(
                        "Another restore is already running against this database"
                    )
                await session.set_referential_integrity(False)
                try:
                    if record.format is ArtifactFormat.STRUCTURED:
                        await self._restore_structured(
                            session, handle, data, order, mode, selected_tables, results, token
                        )
                    else:
                        ignored = await self._restore_statements(
                            session, handle, data, order, mode, selected_tables, results, token
                        )
                        summary["ignored_statements"] = ignored
                except BaseException:
                    await _reenable_after_failure(session)
                    raise
                await session.set_referential_integrity(True)
        except Exception as e:
            logger.exception("Restore %s failed, rolled back", handle.job_id)
            await record_failure(handle, e, summary)
            return

        summary.update(_summarize(results))
        try:
            await handle.complete(
                summary,
                table_count=len(results),
                record_count=summary["total_restored"],
            )
        except Exception:
            logger.exception(
                "Restore %s committed but its job record was not updated", handle.job_id
            )
            return
        logger.info(
            "Restore %s completed (%s): %d restored, %d skipped, %d failed",
            handle.job_id,
            mode.value,
            summary["total_restored"],
            summary["total_skipped"],
            summary["total_failed"],
        )

    async def _begin_table(
        self,
        session: DatabaseSession,
        handle: JobHandle,
        table: str,
        index: int,
        total: int,
        mode: RestoreMode,
        token: CancellationToken | None,
    ) -> None:
        if token is not None:
            token.raise_if_cancelled()
        await handle.advance(index * 100 // total, table)
        if mode is RestoreMode.OVERWRITE:
            await session.truncate(table)

    def _row_failed(
        self, mode: RestoreMode, table: str, index: int, error: Exception, result: TableResult
    ) -> None:
        if mode is RestoreMode.OVERWRITE:
            raise RestoreRowError(table, index, error) from error
        result.failed += 1
        logger.warning("Row %d of %s failed: %s", index, table, error)

    async def _restore_structured(
        self,
        session: DatabaseSession,
        handle: JobHandle,
        data: bytes,
        order: list[str],
        mode: RestoreMode,
        selected_tables: list[str] | None,
        results: dict[str, TableResult],
        token: CancellationToken | None,
    ) -> None:
        tables_data: dict[str, list[dict]] = load_structured(data)["data"]
        tables = plan_tables(tables_data, order, selected_tables)
        skipped = [t for t in tables_data if t not in tables]
        if skipped:
            logger.info("Not restoring tables: %s", ", ".join(skipped))

        for i, table in enumerate(tables):
            await self._begin_table(session, handle, table, i, len(tables), mode, token)

            columns = await self._introspector.get_columns(table)
            column_types = {name: column.data_type for name, column in columns.items()}
            result = results[table] = TableResult()

            for index, row in enumerate(tables_data[table]):
                values = {k: v for k, v in row.items() if k in columns}
                try:
                    if not values:
                        raise ValueError("row has no columns present in the destination table")
                    async with session.savepoint():
                        written = await session.insert(
                            table,
                            values,
                            column_types=column_types,
                            skip_conflicts=mode.skips_conflicts,
                        )
                except Exception as e:
                    self._row_failed(mode, table, index, e, result)
                    continue
                if written:
                    result.inserted += 1
                else:
                    result.skipped += 1

            logger.debug(
                "Restored %s: %d inserted, %d skipped, %d failed",
                table,
                result.inserted,
                result.skipped,
                result.failed,
            )

    async def _restore_statements(
        self,
        session: DatabaseSession,
        handle: JobHandle,
        data: bytes,
        order: list[str],
        mode: RestoreMode,
        selected_tables: list[str] | None,
        results: dict[str, TableResult],
        token: CancellationToken | None,
    ) -> int:
        """Replay a statement artifact table by table; return ignored statement count."""
        groups: dict[str, list[ParsedStatement]] = {}
        ignored = 0
        schema_name = self._introspector.schema_name
        for statement in load_statements(data):
            if statement.schema not in (None, schema_name):
                ignored += 1
                logger.warning(
                    "Ignoring statement outside schema %s: %.80s", schema_name, statement.sql
                )
            elif statement.kind == "insert":
                groups.setdefault(statement.table, []).append(statement)
            elif statement.kind == "truncate":
                groups.setdefault(statement.table, [])
            elif statement.kind == "other":
                ignored += 1
                logger.warning("Ignoring unrecognized statement: %.80s", statement.sql)

        tables = plan_tables(groups, order, selected_tables)
        skipped = [t for t in groups if t not in tables]
        if skipped:
            logger.info("Not restoring tables: %s", ", ".join(skipped))

        for i, table in enumerate(tables):
            await self._begin_table(session, handle, table, i, len(tables), mode, token)
            result = results[table] = TableResult()

            for index, statement in enumerate(groups[table]):
                sql = with_conflict_skip(statement.sql) if mode.skips_conflicts else statement.sql
                try:
                    async with session.savepoint():
                        rowcount = await session.execute(sql)
                except Exception as e:
                    self._row_failed(mode, table, index, e, result)
                    continue
                if rowcount > 0:
                    result.inserted += 1
                else:
                    result.skipped += 1
        return ignored


async def _reenable_after_failure(session: DatabaseSession) -> None:
    try:
        await session.set_referential_integrity(True)
    except Exception as e:
        # Aborted transaction; SET LOCAL is reverted by the rollback
        logger.warning("Could not re-enable referential integrity before rollback: %s", e)
