"""Backup service facade.

``BackupService`` is what an API layer or the CLI talks to.  Calls that
start work return a job id immediately; the export or restore body runs as
an ``asyncio`` task and reports through its job record.  Validation
problems, on the other hand, are raised synchronously.

Usage:
    service = BackupService(adapter, LocalBlobSink("backups"), settings)
    job_id = await service.start_export(ArtifactFormat.STRUCTURED, actor_id="admin")
    await service.wait(job_id)
    record = await service.get_job_status(job_id)
"""

import asyncio
import logging
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any

from db_snapshot.adapters.base import DatabaseClient
from db_snapshot.backup.errors import (
    ArtifactNotFoundError,
    ArtifactValidationError,
    InvalidJobStateError,
    JobNotFoundError,
    RestoreInProgressError,
)
from db_snapshot.backup.exporter import Exporter
from db_snapshot.backup.jobs import CancellationToken, JobHandle, JobTracker
from db_snapshot.backup.models import (
    ArtifactFormat,
    JobKind,
    JobRecord,
    JobStatus,
    RestoreMode,
    RestorePreview,
    ValidationResult,
)
from db_snapshot.backup.restorer import Restorer
from db_snapshot.backup.storage import BlobSink
from db_snapshot.backup.validator import build_preview, detect_format, validate_artifact
from db_snapshot.config.models import BackupSettings
from db_snapshot.schema.introspector import SchemaIntrospector

logger = logging.getLogger(__name__)


class BackupService:
    """Entry point for exports, uploads, restores and history.

    Args:
        client: Adapter for the database being backed up / restored into.
        sink: Where artifacts and uploads are stored.
        settings: ``[backup]`` settings (defaults when omitted).
        introspector: Schema introspector (defaults to one over ``client``).
        tracker: Job tracker (defaults to one over ``client``).
    """

    def __init__(
        self,
        client: DatabaseClient,
        sink: BlobSink,
        settings: BackupSettings | None = None,
        introspector: SchemaIntrospector | None = None,
        tracker: JobTracker | None = None,
    ) -> None:
        self._settings = settings or BackupSettings()
        self._sink = sink
        self._introspector = introspector or SchemaIntrospector(client)
        self._tracker = tracker or JobTracker(client, self._settings.history_table)
        self._exporter = Exporter(client, sink, self._settings, self._introspector)
        self._restorer = Restorer(client, sink, self._settings, self._introspector)
        self._tasks: dict[str, asyncio.Task] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._active_restore: str | None = None

    @property
    def tracker(self) -> JobTracker:
        return self._tracker

    @property
    def introspector(self) -> SchemaIntrospector:
        return self._introspector

    @property
    def settings(self) -> BackupSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def start_export(
        self,
        format: ArtifactFormat = ArtifactFormat.STRUCTURED,
        exclude_sensitive: bool = False,
        actor_id: str | None = None,
    ) -> str:
        """Create an export job and start it in the background."""
        format = ArtifactFormat(format)
        record = await self._tracker.create(JobKind.EXPORT, format, actor_id)
        handle = JobHandle(self._tracker, record)
        token = CancellationToken()
        self._spawn(
            record.id,
            self._exporter.run(handle, format, exclude_sensitive, actor_id or "", token),
            token,
        )
        logger.info("Started export %s (%s)", record.id, format.value)
        return record.id

    async def download_artifact(self, job_id: str) -> bytes:
        """Return the artifact of a completed export.

        Raises:
            JobNotFoundError: Unknown job id.
            ArtifactNotFoundError: Job is not a completed export, or its
                artifact is gone.
        """
        record = await self._require(job_id, JobKind.EXPORT)
        if record.status is not JobStatus.COMPLETED or not record.artifact_location:
            raise ArtifactNotFoundError(f"Export {job_id} has no artifact ({record.status.value})")
        try:
            return await self._sink.get(record.artifact_location)
        except FileNotFoundError as e:
            raise ArtifactNotFoundError(f"Artifact of export {job_id} is missing") from e

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def upload_candidate(
        self,
        data: bytes,
        declared_format: ArtifactFormat | None = None,
        actor_id: str | None = None,
        file_name: str | None = None,
    ) -> tuple[str, ValidationResult]:
        """Store an uploaded artifact as a ``pending`` restore job.

        The format is taken from ``declared_format`` or, failing that, from
        the extension of ``file_name``.

        Returns:
            ``(job_id, validation)``.  The job is created even when
            validation fails so the verdict stays visible in history.

        Raises:
            ValueError: Format neither declared nor detectable.
        """
        if declared_format is not None:
            format = ArtifactFormat(declared_format)
        elif file_name:
            format = detect_format(file_name)
        else:
            raise ValueError("Artifact format must be declared or inferable from file_name")

        existing = await self._introspector.list_tables()
        validation = validate_artifact(
            data,
            format,
            existing,
            self._settings.all_excluded_tables,
            schema_name=self._introspector.schema_name,
        )
        name = file_name or f"upload.{format.value}"

        record = await self._tracker.create(
            JobKind.RESTORE,
            format,
            actor_id,
            status=JobStatus.PENDING,
            artifact_name=name,
            table_count=len(validation.tables),
            record_count=validation.record_count,
            result_summary={"validation": validation.model_dump(mode="json")},
        )
        try:
            location = await self._sink.put(f"restore-{record.id}-{name}", data)
            await self._tracker.update(
                record.id, artifact_location=location, artifact_size=len(data)
            )
        except Exception as e:
            await self._tracker.finalize(record.id, JobStatus.FAILED, error_message=str(e))
            raise

        logger.info(
            "Uploaded restore candidate %s (%s, valid=%s, %d warnings)",
            record.id,
            format.value,
            validation.valid,
            len(validation.warnings),
        )
        return record.id, validation

    async def get_restore_preview(self, job_id: str) -> RestorePreview:
        """Validation verdict plus sample rows of an uploaded artifact."""
        record = await self._require(job_id, JobKind.RESTORE)
        validation = self._stored_validation(record)

        tables = []
        if record.artifact_location:
            data = await self._sink.get(record.artifact_location)
            tables = build_preview(
                data,
                record.format,
                max_tables=self._settings.preview_tables,
                max_rows=self._settings.preview_rows,
            )

        return RestorePreview(
            job_id=record.id,
            format=record.format,
            artifact_name=record.artifact_name,
            table_count=record.table_count,
            record_count=record.record_count,
            validation=validation,
            tables=tables,
        )

    async def execute_restore(
        self,
        job_id: str,
        mode: RestoreMode,
        selected_tables: list[str] | None = None,
    ) -> None:
        """Start restoring a pending, valid upload in the background.

        Raises:
            JobNotFoundError: Unknown job id.
            InvalidJobStateError: Job is not ``pending``.
            ArtifactValidationError: The upload failed validation.
            RestoreInProgressError: Another restore is running.
        """
        mode = RestoreMode(mode)
        record = await self._require(job_id, JobKind.RESTORE)
        if record.status is not JobStatus.PENDING:
            raise InvalidJobStateError(
                f"Restore {job_id} is {record.status.value}, expected pending"
            )
        validation = self._stored_validation(record)
        if not validation.valid:
            raise ArtifactValidationError(validation)
        if self._active_restore is not None:
            raise RestoreInProgressError(f"Restore {self._active_restore} is still running")

        self._active_restore = job_id
        token = CancellationToken()
        handle = JobHandle(self._tracker, record)
        self._spawn(job_id, self._restorer.run(handle, mode, selected_tables, token), token)
        logger.info("Started restore %s (%s)", job_id, mode.value)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def get_job_status(self, job_id: str) -> JobRecord:
        """Snapshot of one job.

        Raises:
            JobNotFoundError: Unknown job id.
        """
        record = await self._tracker.get(job_id)
        if record is None:
            raise JobNotFoundError(job_id)
        return record

    async def list_history(
        self, kind: JobKind | None = None, limit: int = 20
    ) -> list[JobRecord]:
        return await self._tracker.list(kind, limit)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation; takes effect at the next table boundary.

        Returns:
            ``False`` if the job is not running in this process.
        """
        token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Cancellation requested for job %s", job_id)
        return True

    def is_running(self, job_id: str) -> bool:
        """Whether the job's background task is still running in this process."""
        return job_id in self._tasks

    async def wait(self, job_id: str | None = None) -> None:
        """Wait for one background job, or for all of them."""
        if job_id is not None:
            tasks = [self._tasks[job_id]] if job_id in self._tasks else []
        else:
            tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def cleanup(self, days_old: int = 7) -> int:
        """Delete job records older than ``days_old`` days and their artifacts.

        Returns:
            Number of artifacts deleted.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=days_old)
        expired = await self._tracker.purge(cutoff)
        deleted = 0
        for record in expired:
            if record.id in self._tasks or not record.artifact_location:
                continue
            if await self._sink.exists(record.artifact_location):
                await self._sink.delete(record.artifact_location)
                deleted += 1
        return deleted

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _require(self, job_id: str, kind: JobKind) -> JobRecord:
        record = await self.get_job_status(job_id)
        if record.kind is not kind:
            raise JobNotFoundError(job_id)
        return record

    @staticmethod
    def _stored_validation(record: JobRecord) -> ValidationResult:
        stored = record.result_summary.get("validation")
        if stored is None:
            return ValidationResult(
                valid=False, format=record.format, errors=["No validation result stored"]
            )
        return ValidationResult.model_validate(stored)

    def _spawn(
        self, job_id: str, work: Coroutine[Any, Any, None], token: CancellationToken
    ) -> None:
        task = asyncio.create_task(work, name=f"db-snapshot-{job_id}")
        self._tasks[job_id] = task
        self._tokens[job_id] = token
        task.add_done_callback(partial(self._on_done, job_id))

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(job_id, None)
        self._tokens.pop(job_id, None)
        if self._active_restore == job_id:
            self._active_restore = None
        if task.cancelled():
            logger.warning("Background job %s was cancelled before finishing", job_id)
        elif task.exception() is not None:
            logger.error("Background job %s crashed", job_id, exc_info=task.exception())
