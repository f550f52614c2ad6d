"""Job tracking for exports and restores.

Export and restore run in the background, so the job record is the only
way callers learn how an operation went.  Records live in the
``backup_history`` table and are written through the ``DatabaseClient``
(autocommit, never inside a restore transaction).

- ``JobTracker``: create / update / finalize / get / list records.
- ``JobHandle``: the single writer for one job, owned by the background
  task.  Readers only ever see snapshots.
- ``CancellationToken``: cooperative cancel flag checked at table
  boundaries.

Usage:
    tracker = JobTracker(adapter)
    await tracker.ensure_table()
    record = await tracker.create(JobKind.EXPORT, ArtifactFormat.STRUCTURED, "admin")
    handle = JobHandle(tracker, record)
    await handle.advance(50, "users")
    await handle.complete({"tables": {"users": 2}})
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from db_snapshot.adapters.base import DatabaseClient
from db_snapshot.backup.errors import JobCancelledError
from db_snapshot.backup.models import ArtifactFormat, JobKind, JobRecord, JobStatus

logger = logging.getLogger(__name__)

HISTORY_TABLE_DDL = """
CREATE TABLE IF NOT EXISTS {table} (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    format TEXT NOT NULL,
    status TEXT NOT NULL,
    progress INTEGER NOT NULL DEFAULT 0,
    current_table TEXT,
    artifact_name TEXT,
    artifact_location TEXT,
    artifact_size BIGINT,
    table_count INTEGER NOT NULL DEFAULT 0,
    record_count INTEGER NOT NULL DEFAULT 0,
    result_summary JSONB,
    error_message TEXT,
    created_by TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    completed_at TIMESTAMPTZ
)
"""

HISTORY_INDEX_DDL = (
    "CREATE INDEX IF NOT EXISTS idx_{table}_created_at ON {table} (created_at DESC)"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobTracker:
    """Persists ``JobRecord`` rows through a ``DatabaseClient``."""

    def __init__(self, client: DatabaseClient, table: str = "backup_history") -> None:
        self._client = client
        self._table = table

    @property
    def table(self) -> str:
        return self._table

    async def ensure_table(self) -> None:
        """Create the history table and its index if missing."""
        await self._client.execute(HISTORY_TABLE_DDL.format(table=self._table))
        await self._client.execute(HISTORY_INDEX_DDL.format(table=self._table))

    async def create(
        self,
        kind: JobKind,
        format: ArtifactFormat,
        created_by: str | None,
        status: JobStatus = JobStatus.PROCESSING,
        **fields: Any,
    ) -> JobRecord:
        """Insert a new job record with a fresh id."""
        record = JobRecord(
            id=str(uuid.uuid4()),
            kind=kind,
            format=format,
            status=status,
            created_by=created_by,
            created_at=_utcnow(),
            **fields,
        )
        await self._client.insert(self._table, record.model_dump())
        logger.debug("Created %s job %s (%s)", kind.value, record.id, status.value)
        return record

    async def update(self, job_id: str, **fields: Any) -> None:
        """Write arbitrary fields of one record."""
        await self._client.update(self._table, data=fields, filters={"id": job_id})

    async def update_progress(
        self, job_id: str, progress: int, current_table: str | None = None
    ) -> None:
        """Persist progress (and optionally the table being processed)."""
        fields: dict[str, Any] = {"progress": progress}
        if current_table is not None:
            fields["current_table"] = current_table
        await self.update(job_id, **fields)

    async def finalize(
        self,
        job_id: str,
        status: JobStatus,
        result_summary: dict[str, Any] | None = None,
        error_message: str | None = None,
        **fields: Any,
    ) -> None:
        """Move a job to a terminal status and stamp ``completed_at``."""
        data: dict[str, Any] = {"status": status, "completed_at": _utcnow(), **fields}
        if status is JobStatus.COMPLETED:
            data["progress"] = 100
            data["current_table"] = ""
        if result_summary is not None:
            data["result_summary"] = result_summary
        if error_message is not None:
            data["error_message"] = error_message
        await self.update(job_id, **data)

    async def get(self, job_id: str) -> JobRecord | None:
        """Return a snapshot of one job, or ``None``."""
        rows = await self._client.select(self._table, "*", filters={"id": job_id})
        if not rows:
            return None
        return JobRecord.model_validate(rows[0])

    async def purge(self, older_than: datetime) -> list[JobRecord]:
        """Delete records created before ``older_than`` and return them.

        Callers own the artifacts the returned records point at.
        """
        rows = await self._client.select(self._table, "*", order_by="created_at")
        expired = [
            record
            for record in (JobRecord.model_validate(row) for row in rows)
            if record.created_at < older_than
        ]
        for record in expired:
            await self._client.delete(self._table, filters={"id": record.id})
        if expired:
            logger.info("Purged %d job records older than %s", len(expired), older_than)
        return expired

    async def list(self, kind: JobKind | None = None, limit: int = 20) -> list[JobRecord]:
        """Return jobs, newest first."""
        filters = {"kind": kind} if kind is not None else None
        rows = await self._client.select(
            self._table,
            "*",
            filters=filters,
            order_by="created_at DESC",
            limit=limit,
        )
        return [JobRecord.model_validate(row) for row in rows]


class JobHandle:
    """Sole writer of one job record.

    Holds the authoritative in-memory copy and pushes every change to the
    tracker.  Progress never goes backwards.
    """

    def __init__(self, tracker: JobTracker, record: JobRecord) -> None:
        self._tracker = tracker
        self._record = record

    @property
    def job_id(self) -> str:
        return self._record.id

    @property
    def record(self) -> JobRecord:
        """A copy of the current state."""
        return self._record.model_copy(deep=True)

    async def start(self) -> None:
        """Move the job to ``processing`` at 0%."""
        self._record.status = JobStatus.PROCESSING
        self._record.progress = 0
        self._record.current_table = ""
        await self._tracker.update(
            self.job_id, status=JobStatus.PROCESSING, progress=0, current_table=""
        )

    async def advance(self, progress: int, current_table: str | None = None) -> None:
        """Record progress at a table boundary."""
        progress = max(self._record.progress, min(progress, 100))
        self._record.progress = progress
        if current_table is not None:
            self._record.current_table = current_table
        await self._tracker.update_progress(self.job_id, progress, current_table)

    async def complete(self, result_summary: dict[str, Any], **fields: Any) -> None:
        """Mark the job ``completed``."""
        await self._tracker.finalize(
            self.job_id, JobStatus.COMPLETED, result_summary=result_summary, **fields
        )
        self._record = self._record.model_copy(
            update={
                "status": JobStatus.COMPLETED,
                "progress": 100,
                "current_table": "",
                "result_summary": result_summary,
                **fields,
            }
        )

    async def fail(self, error: str, result_summary: dict[str, Any] | None = None) -> None:
        """Mark the job ``failed``; progress stays where it stopped."""
        await self._tracker.finalize(
            self.job_id,
            JobStatus.FAILED,
            result_summary=result_summary,
            error_message=error,
        )
        self._record.status = JobStatus.FAILED
        self._record.error_message = error


async def record_failure(
    handle: JobHandle, error: Exception, result_summary: dict[str, Any] | None = None
) -> None:
    """Mark the job failed; a tracker outage is logged, not raised."""
    try:
        await handle.fail(str(error) or type(error).__name__, result_summary=result_summary)
    except Exception:
        logger.exception("Could not record failure of job %s", handle.job_id)


class CancellationToken:
    """Cooperative cancel flag for one job."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise JobCancelledError()
