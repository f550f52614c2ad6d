"""Exceptions raised by the backup/restore engine."""

from db_snapshot.backup.models import ValidationResult


class BackupError(Exception):
    """Base class for backup/restore errors."""


class JobNotFoundError(BackupError):
    """Raised when a job id does not exist (or is of the wrong kind)."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class ArtifactNotFoundError(BackupError):
    """Raised when a job has no retrievable artifact."""


class ArtifactValidationError(BackupError):
    """Raised when an artifact failed validation and cannot be restored."""

    def __init__(self, result: ValidationResult) -> None:
        super().__init__("Invalid backup artifact: " + "; ".join(result.errors))
        self.result = result


class InvalidJobStateError(BackupError):
    """Raised when a job is not in the state an operation requires."""


class RestoreInProgressError(BackupError):
    """Raised when another restore already owns the destination."""


class RestoreRowError(BackupError):
    """Raised when a row fails to insert in ``overwrite`` mode.

    Overwrite has no partial-success state, so one failed row aborts the
    whole restore.
    """

    def __init__(self, table: str, index: int, cause: Exception) -> None:
        super().__init__(f"Row {index} of table '{table}' failed: {cause}")
        self.table = table
        self.index = index


class JobCancelledError(BackupError):
    """Raised at a table boundary after ``BackupService.cancel()``."""

    def __init__(self) -> None:
        super().__init__("Cancelled")
