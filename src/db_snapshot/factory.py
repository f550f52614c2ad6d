"""Database client factory.

Resolves which database to talk to and builds an ``AsyncPostgresAdapter``:

1. Direct URL: ``get_adapter(database_url=...)``.
2. Profile mode (db.toml + ``{PREFIX}DB_PROFILE`` env var or ``.db-profile``
   lock file in the working directory).

Adapters are not cached -- each call returns a new instance that the
caller must ``close()``.
"""

import logging
import os
from pathlib import Path
from urllib.parse import quote

from db_snapshot.adapters.postgres import AsyncPostgresAdapter
from db_snapshot.config.loader import load_db_config
from db_snapshot.config.models import DatabaseProfile

logger = logging.getLogger(__name__)

# Profile lock file path (working directory, not the package)
_PROFILE_LOCK_FILE = Path.cwd() / ".db-profile"

# Columns of the job history table stored as JSONB
HISTORY_JSONB_COLUMNS = ["result_summary"]


# ============================================================================
# Profile Lock File Operations
# ============================================================================


class ProfileNotFoundError(Exception):
    """Raised when no database profile is configured."""

    pass


def read_profile_lock() -> str | None:
    """Read profile name from lock file.

    Returns:
        Profile name if lock file exists, None otherwise
    """
    if _PROFILE_LOCK_FILE.exists():
        return _PROFILE_LOCK_FILE.read_text().strip()
    return None


def write_profile_lock(profile_name: str) -> None:
    """Write profile name to lock file.

    Only call this after a successful connection test.
    """
    _PROFILE_LOCK_FILE.write_text(profile_name)


def clear_profile_lock() -> None:
    """Remove profile lock file."""
    if _PROFILE_LOCK_FILE.exists():
        _PROFILE_LOCK_FILE.unlink()


def get_active_profile_name(env_prefix: str = "") -> str:
    """Get active profile name from env var or lock file.

    Priority:
    1. ``{env_prefix}DB_PROFILE`` env var (for initial connect or CI/CD)
    2. .db-profile file (profile from previous connect)
    3. Raise ProfileNotFoundError

    Raises:
        ProfileNotFoundError: If no profile is configured
    """
    env_profile = os.environ.get(f"{env_prefix}DB_PROFILE")
    if env_profile:
        return env_profile

    lock_profile = read_profile_lock()
    if lock_profile:
        return lock_profile

    raise ProfileNotFoundError(
        "No database profile configured.\n"
        f"Run: {env_prefix}DB_PROFILE=<name> db-snapshot connect\n"
        "Profiles are defined in db.toml."
    )


def get_active_profile(env_prefix: str = "") -> tuple[str, DatabaseProfile]:
    """Get active profile name and configuration.

    Raises:
        ProfileNotFoundError: If no profile configured
        KeyError: If profile not found in db.toml
    """
    profile_name = get_active_profile_name(env_prefix)
    config = load_db_config()

    if profile_name not in config.profiles:
        raise KeyError(
            f"Profile '{profile_name}' not found in db.toml.\n"
            f"Available profiles: {', '.join(config.profiles.keys())}"
        )

    return profile_name, config.profiles[profile_name]


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL with password substitution.

    Example:
        >>> resolve_url(DatabaseProfile(url="postgresql://u:[YOUR-PASSWORD]@h/db", db_password="p@ss"))
        'postgresql://u:p%40ss@h/db'
    """
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


# ============================================================================
# Adapter Factory
# ============================================================================


async def get_adapter(
    profile_name: str | None = None,
    env_prefix: str = "",
    database_url: str | None = None,
    jsonb_columns: list[str] | None = None,
) -> AsyncPostgresAdapter:
    """Create a database adapter.

    Args:
        profile_name: Profile name from db.toml.  When ``None``, resolved via
            ``get_active_profile_name(env_prefix)``.
        env_prefix: Prefix for the ``DB_PROFILE`` env var.
        database_url: Direct connection URL; skips profile resolution.
        jsonb_columns: Column names that receive JSONB serialization.

    Returns:
        New ``AsyncPostgresAdapter``.

    Raises:
        ProfileNotFoundError: If no database configuration found.
        KeyError: If the profile is not in db.toml.
    """
    if database_url is not None:
        return AsyncPostgresAdapter(database_url=database_url, jsonb_columns=jsonb_columns)

    if profile_name is None:
        profile_name = get_active_profile_name(env_prefix)

    config = load_db_config()
    if profile_name not in config.profiles:
        raise KeyError(
            f"Profile '{profile_name}' not found in db.toml.\n"
            f"Available profiles: {', '.join(config.profiles.keys())}"
        )

    logger.debug("Creating adapter for profile %s", profile_name)
    return AsyncPostgresAdapter(
        database_url=resolve_url(config.profiles[profile_name]),
        jsonb_columns=jsonb_columns,
    )


async def connect(profile_name: str, env_prefix: str = "") -> AsyncPostgresAdapter:
    """Connect to a profile, test the connection, and persist the selection.

    The lock file is written only after ``SELECT 1`` succeeds.

    Raises:
        Exception: If the connection test fails (adapter is closed first).
    """
    adapter = await get_adapter(
        profile_name=profile_name,
        env_prefix=env_prefix,
        jsonb_columns=HISTORY_JSONB_COLUMNS,
    )
    try:
        await adapter.test_connection()
    except Exception:
        await adapter.close()
        raise

    write_profile_lock(profile_name)
    logger.info("Connected to profile %s", profile_name)
    return adapter
