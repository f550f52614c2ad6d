"""db-snapshot: Async full-database backup and restore for PostgreSQL.

Exports every table in foreign-key dependency order into a JSON or SQL
artifact, validates uploads, and restores them transactionally with a
choice of conflict policy.  Jobs run in the background and are tracked in
the ``backup_history`` table.

Usage:
    from db_snapshot import BackupService, LocalBlobSink, get_adapter
    from db_snapshot import ArtifactFormat, RestoreMode
    from db_snapshot import load_db_config, ordered_tables
"""

__version__ = "0.1.0"

# Adapters
from db_snapshot.adapters.base import DatabaseClient, DatabaseSession
from db_snapshot.adapters.postgres import AsyncPostgresAdapter

# Config
from db_snapshot.config.loader import load_db_config
from db_snapshot.config.models import BackupSettings, DatabaseConfig, DatabaseProfile

# Factory
from db_snapshot.factory import (
    ProfileNotFoundError,
    connect,
    get_adapter,
    resolve_url,
)

# Schema
from db_snapshot.schema.introspector import SchemaIntrospector
from db_snapshot.schema.ordering import ordered_tables

# Backup
from db_snapshot.backup import (
    ArtifactFormat,
    BackupError,
    BackupService,
    JobKind,
    JobRecord,
    JobStatus,
    LocalBlobSink,
    RestoreMode,
    ValidationResult,
)

__all__ = [
    # Adapters
    "DatabaseClient",
    "DatabaseSession",
    "AsyncPostgresAdapter",
    # Config
    "load_db_config",
    "BackupSettings",
    "DatabaseProfile",
    "DatabaseConfig",
    # Factory
    "get_adapter",
    "connect",
    "ProfileNotFoundError",
    "resolve_url",
    # Schema
    "SchemaIntrospector",
    "ordered_tables",
    # Backup
    "BackupService",
    "LocalBlobSink",
    "ArtifactFormat",
    "RestoreMode",
    "JobKind",
    "JobStatus",
    "JobRecord",
    "ValidationResult",
    "BackupError",
]
