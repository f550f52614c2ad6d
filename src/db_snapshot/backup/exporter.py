"""Full-database export into a structured or statement artifact.

The exporter walks every processable table in dependency order, reads all
rows through the ``DatabaseClient`` and feeds them to an
``ArtifactWriter``.  The artifact is written to the blob sink only after
every table has been read, so a failed export never leaves a partial
artifact behind.

Usage:
    exporter = Exporter(adapter, LocalBlobSink("backups"), settings)
    await exporter.run(handle, ArtifactFormat.STRUCTURED, exclude_sensitive=True, actor="admin")
"""

import logging
from datetime import datetime, timezone
from typing import Any

from db_snapshot.adapters.base import DatabaseClient
from db_snapshot.backup.jobs import CancellationToken, JobHandle, record_failure
from db_snapshot.backup.models import ArtifactFormat
from db_snapshot.backup.serializers import ArtifactWriter, get_writer
from db_snapshot.backup.storage import BlobSink
from db_snapshot.config.models import BackupSettings
from db_snapshot.schema.introspector import SchemaIntrospector
from db_snapshot.schema.models import ColumnSchema
from db_snapshot.schema.ordering import ordered_tables
from db_snapshot.sql import quote_identifier

logger = logging.getLogger(__name__)


def artifact_file_name(prefix: str, extension: str, created_at: datetime | None = None) -> str:
    """Build ``<prefix>-backup-<timestamp>.<ext>``.

    Example:
        >>> artifact_file_name("oga", "json", datetime(2026, 1, 2, 3, 4, 5, 678000))
        'oga-backup-2026-01-02T03-04-05-678Z.json'
    """
    created_at = created_at or datetime.now(timezone.utc)
    stamp = created_at.strftime("%Y-%m-%dT%H-%M-%S") + f"-{created_at.microsecond // 1000:03d}Z"
    return f"{prefix}-backup-{stamp}.{extension}"


async def resolve_table_order(
    introspector: SchemaIntrospector, settings: BackupSettings
) -> list[str]:
    """Processing order for the live schema, shared by export and restore."""
    existing = await introspector.list_tables()
    foreign_keys = None
    if settings.use_foreign_keys:
        foreign_keys = await introspector.list_foreign_keys()
    return ordered_tables(
        existing,
        table_order=settings.table_order,
        excluded=settings.all_excluded_tables,
        foreign_keys=foreign_keys,
    )


class Exporter:
    """Runs one export job to completion or failure."""

    def __init__(
        self,
        client: DatabaseClient,
        sink: BlobSink,
        settings: BackupSettings | None = None,
        introspector: SchemaIntrospector | None = None,
    ) -> None:
        self._client = client
        self._sink = sink
        self._settings = settings or BackupSettings()
        self._introspector = introspector or SchemaIntrospector(client)

    def _export_columns(
        self, table: str, columns: list[ColumnSchema], exclude_sensitive: bool
    ) -> list[ColumnSchema]:
        if not exclude_sensitive:
            return columns
        sensitive = set(self._settings.sensitive_columns.get(table, []))
        return [c for c in columns if c.name not in sensitive]

    async def _read_table(self, table: str, columns: list[ColumnSchema]) -> list[dict]:
        if not columns:
            return []
        column_list = ", ".join(quote_identifier(c.name) for c in columns)
        return await self._client.select(quote_identifier(table), column_list)

    async def build(
        self,
        handle: JobHandle,
        writer: ArtifactWriter,
        exclude_sensitive: bool,
        token: CancellationToken | None = None,
    ) -> dict[str, int]:
        """Read every table into ``writer``; return per-table row counts."""
        tables = await resolve_table_order(self._introspector, self._settings)
        logger.info("Exporting %d tables (%s)", len(tables), writer.format.value)

        counts: dict[str, int] = {}
        total = len(tables)
        for i, table in enumerate(tables):
            if token is not None:
                token.raise_if_cancelled()
            await handle.advance(i * 100 // total, table)

            all_columns = list((await self._introspector.get_columns(table)).values())
            columns = self._export_columns(table, all_columns, exclude_sensitive)
            rows = await self._read_table(table, columns)
            writer.write_table(table, columns, rows)
            counts[table] = len(rows)
            logger.debug("Exported %s: %d rows", table, len(rows))
        return counts

    async def run(
        self,
        handle: JobHandle,
        format: ArtifactFormat,
        exclude_sensitive: bool = False,
        actor: str = "",
        token: CancellationToken | None = None,
    ) -> None:
        """Export the database and finalize ``handle``.

        Never raises: every failure is recorded on the job record.
        """
        writer_cls = get_writer(format)
        writer = writer_cls(
            created_by=actor,
            system_name=self._settings.system_name,
            exclude_sensitive=exclude_sensitive,
        )

        try:
            counts = await self.build(handle, writer, exclude_sensitive, token)
            data = writer.finish()
        except Exception as e:
            logger.exception("Export %s failed", handle.job_id)
            await record_failure(handle, e)
            return

        name = artifact_file_name(self._settings.artifact_prefix, writer.extension)
        location: str | None = None
        try:
            location = await self._sink.put(name, data)
            summary: dict[str, Any] = {
                "tables": counts,
                "table_count": len(counts),
                "record_count": writer.record_count,
                "exclude_sensitive": exclude_sensitive,
            }
            await handle.complete(
                summary,
                artifact_name=name,
                artifact_location=location,
                artifact_size=len(data),
                table_count=len(counts),
                record_count=writer.record_count,
            )
        except Exception as e:
            logger.exception("Export %s failed while storing the artifact", handle.job_id)
            if location is not None:
                await _discard(self._sink, location)
            await record_failure(handle, e)
            return

        logger.info(
            "Export %s completed: %d tables, %d records -> %s",
            handle.job_id,
            len(counts),
            writer.record_count,
            name,
        )


async def _discard(sink: BlobSink, location: str) -> None:
    try:
        await sink.delete(location)
    except Exception:
        logger.exception("Could not delete artifact %s", location)
