"""Backup and restore engine.

Exports a whole database into a structured (JSON) or statement (SQL)
artifact, validates uploaded artifacts, and restores them in dependency
order inside one transaction.  Progress and results are tracked as job
records in the ``backup_history`` table.

Usage:
    from db_snapshot.backup import BackupService, LocalBlobSink, ArtifactFormat
    from db_snapshot.backup import RestoreMode, validate_artifact
"""

from db_snapshot.backup.errors import (
    ArtifactNotFoundError,
    ArtifactValidationError,
    BackupError,
    InvalidJobStateError,
    JobCancelledError,
    JobNotFoundError,
    RestoreInProgressError,
    RestoreRowError,
)
from db_snapshot.backup.exporter import Exporter
from db_snapshot.backup.jobs import CancellationToken, JobHandle, JobTracker
from db_snapshot.backup.models import (
    ArtifactFormat,
    ArtifactMetadata,
    JobKind,
    JobRecord,
    JobStatus,
    RestoreMode,
    RestorePreview,
    TablePreview,
    TableResult,
    ValidationResult,
)
from db_snapshot.backup.restorer import Restorer
from db_snapshot.backup.serializers import StatementWriter, StructuredWriter, get_writer
from db_snapshot.backup.service import BackupService
from db_snapshot.backup.storage import BlobSink, LocalBlobSink
from db_snapshot.backup.validator import build_preview, detect_format, validate_artifact

__all__ = [
    # Service
    "BackupService",
    "Exporter",
    "Restorer",
    # Jobs
    "JobTracker",
    "JobHandle",
    "CancellationToken",
    # Models
    "ArtifactFormat",
    "ArtifactMetadata",
    "JobKind",
    "JobRecord",
    "JobStatus",
    "RestoreMode",
    "RestorePreview",
    "TablePreview",
    "TableResult",
    "ValidationResult",
    # Artifacts
    "StructuredWriter",
    "StatementWriter",
    "get_writer",
    "validate_artifact",
    "detect_format",
    "build_preview",
    # Storage
    "BlobSink",
    "LocalBlobSink",
    # Errors
    "BackupError",
    "JobNotFoundError",
    "ArtifactNotFoundError",
    "ArtifactValidationError",
    "InvalidJobStateError",
    "RestoreInProgressError",
    "RestoreRowError",
    "JobCancelledError",
]
