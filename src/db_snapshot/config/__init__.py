"""Configuration management: profiles, backup settings, TOML loading.

Usage:
    >>> from db_snapshot.config import load_db_config, DatabaseProfile, BackupSettings
"""

from db_snapshot.config.loader import load_db_config
from db_snapshot.config.models import BackupSettings, DatabaseConfig, DatabaseProfile

__all__ = ["load_db_config", "BackupSettings", "DatabaseConfig", "DatabaseProfile"]
