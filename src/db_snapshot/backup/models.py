"""Pydantic models for backup jobs, artifacts, and validation.

- ``JobRecord``: persisted state of one export or restore.
- ``ArtifactMetadata``: header of a structured (JSON) artifact.
- ``ValidationResult``: verdict on an uploaded artifact.
- ``TableResult``: per-table restore counters.
- ``RestorePreview``: validation plus sample rows for the operator.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

FORMAT_VERSION = "1.0"


class JobKind(str, Enum):
    EXPORT = "export"
    RESTORE = "restore"


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ArtifactFormat(str, Enum):
    STRUCTURED = "json"
    STATEMENT = "sql"


class RestoreMode(str, Enum):
    OVERWRITE = "overwrite"
    SKIP_CONFLICTS = "skip_conflicts"
    MERGE = "merge"  # same as SKIP_CONFLICTS (row-level insert-if-absent)

    @property
    def skips_conflicts(self) -> bool:
        return self is not RestoreMode.OVERWRITE


class JobRecord(BaseModel):
    """One export or restore operation.

    Mutated only by the background task that owns it (through a
    ``JobHandle``); everyone else reads snapshots via ``JobTracker.get()``.
    """

    id: str
    kind: JobKind
    format: ArtifactFormat
    status: JobStatus
    progress: int = 0
    current_table: str = ""
    artifact_name: str | None = None
    artifact_location: str | None = None
    artifact_size: int | None = None
    table_count: int = 0
    record_count: int = 0
    result_summary: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    created_by: str | None = None
    created_at: datetime
    completed_at: datetime | None = None

    @field_validator("current_table", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("table_count", "record_count", "progress", mode="before")
    @classmethod
    def _none_to_zero(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("result_summary", mode="before")
    @classmethod
    def _parse_summary(cls, value: Any) -> Any:
        # Usually decoded by the driver codec; plain asyncpg connections return text
        if value is None:
            return {}
        if isinstance(value, str):
            return json.loads(value) if value else {}
        return value

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)


class ArtifactMetadata(BaseModel):
    """Header of a structured artifact."""

    format_version: str = FORMAT_VERSION
    created_at: str
    created_by: str
    system_name: str = ""
    table_count: int = 0
    record_count: int = 0
    tables: list[str] = Field(default_factory=list)
    exclude_sensitive: bool = False


class ValidationResult(BaseModel):
    """Result of validating an artifact.

    Example:
        >>> result = ValidationResult(valid=False, errors=["Missing data section"])
        >>> result.valid
        False
    """

    valid: bool
    format: ArtifactFormat | None = None
    tables: list[str] = Field(default_factory=list)
    record_count: int = 0
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class TableResult(BaseModel):
    """Restore counters for one table."""

    inserted: int = 0
    skipped: int = 0
    failed: int = 0


class TablePreview(BaseModel):
    """Sample of one table in an uploaded artifact."""

    name: str
    record_count: int
    sample_rows: list[dict[str, Any]] = Field(default_factory=list)


class RestorePreview(BaseModel):
    """What an operator sees before confirming a restore."""

    job_id: str
    format: ArtifactFormat
    artifact_name: str | None = None
    table_count: int = 0
    record_count: int = 0
    validation: ValidationResult
    tables: list[TablePreview] = Field(default_factory=list)
