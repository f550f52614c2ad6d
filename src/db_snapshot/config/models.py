"""Pydantic models for database and backup configuration."""

from pydantic import BaseModel, Field

from db_snapshot.schema.ordering import DEFAULT_TABLE_ORDER, EXCLUDED_TABLES


class DatabaseProfile(BaseModel):
    """Database connection profile from db.toml."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution
    provider: str = "postgres"  # Defaults to postgres


class BackupSettings(BaseModel):
    """Backup/restore settings from the ``[backup]`` table of db.toml.

    Example:
        >>> settings = BackupSettings()
        >>> settings.sensitive_columns["users"]
        ['password_hash']
    """

    artifact_dir: str = "backups"
    artifact_prefix: str = "oga"
    system_name: str = "OGA AI System"
    history_table: str = "backup_history"
    table_order: list[str] = Field(default_factory=lambda: list(DEFAULT_TABLE_ORDER))
    excluded_tables: list[str] = Field(default_factory=lambda: sorted(EXCLUDED_TABLES))
    sensitive_columns: dict[str, list[str]] = Field(
        default_factory=lambda: {"users": ["password_hash"]}
    )
    use_foreign_keys: bool = True  # order unlisted tables by live FK metadata
    preview_tables: int = 10
    preview_rows: int = 3

    @property
    def all_excluded_tables(self) -> set[str]:
        """Excluded tables plus the job history table."""
        return set(self.excluded_tables) | {self.history_table}


class DatabaseConfig(BaseModel):
    """Complete configuration from db.toml."""

    profiles: dict[str, DatabaseProfile]
    backup: BackupSettings = Field(default_factory=BackupSettings)
