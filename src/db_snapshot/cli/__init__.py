"""CLI for database backup and restore.

Provides commands for profile management, full-database export,
artifact validation, restore, and job history.

Usage:
    DB_PROFILE=prod db-snapshot connect
    db-snapshot status
    db-snapshot profiles
    db-snapshot init
    db-snapshot export --format json --exclude-sensitive
    db-snapshot validate backups/oga-backup-2026-01-15T10-00-00-000Z.json
    db-snapshot restore backups/oga-backup.sql --mode skip_conflicts --tables users,tasks
    db-snapshot history --kind restore --limit 10

Commands:
    connect   - Test a profile's connection and make it the current profile
    status    - Show current connection status
    profiles  - List available profiles
    init      - Create the backup_history table
    export    - Export the whole database to an artifact
    validate  - Validate an artifact against the current database
    restore   - Restore an artifact into the current database
    job       - Show one job
    history   - List recent jobs
    cleanup   - Delete old job records and their artifacts
"""

import argparse
import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.prompt import Confirm
from rich.table import Table

from db_snapshot.backup.errors import BackupError
from db_snapshot.backup.models import (
    ArtifactFormat,
    JobKind,
    JobRecord,
    JobStatus,
    RestoreMode,
    ValidationResult,
)
from db_snapshot.backup.service import BackupService
from db_snapshot.backup.storage import LocalBlobSink
from db_snapshot.backup.validator import detect_format, validate_artifact
from db_snapshot.config.loader import load_db_config
from db_snapshot.config.models import BackupSettings
from db_snapshot.factory import (
    HISTORY_JSONB_COLUMNS,
    ProfileNotFoundError,
    connect,
    get_active_profile_name,
    get_adapter,
    read_profile_lock,
)

console = Console()

POLL_INTERVAL = 0.5

_STATUS_STYLES = {
    JobStatus.PENDING: "yellow",
    JobStatus.PROCESSING: "cyan",
    JobStatus.COMPLETED: "green",
    JobStatus.FAILED: "red",
}


# ============================================================================
# Helpers
# ============================================================================


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
    )


def _load_settings() -> BackupSettings:
    """``[backup]`` settings from db.toml, or defaults when there is none."""
    try:
        return load_db_config().backup
    except FileNotFoundError:
        return BackupSettings()


@asynccontextmanager
async def _open_service(args: argparse.Namespace) -> AsyncIterator[BackupService]:
    """Adapter + service for the current profile; the adapter is closed on exit."""
    settings = _load_settings()
    adapter = await get_adapter(
        env_prefix=getattr(args, "env_prefix", ""),
        database_url=getattr(args, "database_url", None),
        jsonb_columns=HISTORY_JSONB_COLUMNS,
    )
    try:
        yield BackupService(adapter, LocalBlobSink(settings.artifact_dir), settings)
    finally:
        await adapter.close()


def _status_text(status: JobStatus) -> str:
    style = _STATUS_STYLES[status]
    return f"[{style}]{status.value}[/{style}]"


def _job_table(record: JobRecord) -> Table:
    table = Table(title=f"Job {record.id}", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")

    table.add_row("Kind", record.kind.value)
    table.add_row("Format", record.format.value)
    table.add_row("Status", _status_text(record.status))
    table.add_row("Progress", f"{record.progress}%")
    if record.current_table:
        table.add_row("Current table", record.current_table)
    if record.artifact_name:
        table.add_row("Artifact", record.artifact_name)
    if record.artifact_location:
        table.add_row("Location", record.artifact_location)
    if record.artifact_size is not None:
        table.add_row("Size", f"{record.artifact_size:,} bytes")
    table.add_row("Tables", str(record.table_count))
    table.add_row("Records", str(record.record_count))
    if record.created_by:
        table.add_row("Created by", record.created_by)
    table.add_row("Created at", record.created_at.isoformat())
    if record.completed_at:
        table.add_row("Completed at", record.completed_at.isoformat())
    if record.error_message:
        table.add_row("Error", f"[red]{record.error_message}[/red]")
    return table


def _table_results(record: JobRecord) -> Table | None:
    """Per-table counters of a restore, if any."""
    tables = record.result_summary.get("tables")
    if not isinstance(tables, dict) or not tables:
        return None

    table = Table(title="Tables", show_header=True, header_style="bold")
    table.add_column("Table")
    if record.kind is JobKind.EXPORT:
        table.add_column("Records", justify="right")
        for name, count in tables.items():
            table.add_row(name, str(count))
        return table

    table.add_column("Inserted", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Failed", justify="right")
    for name, counts in tables.items():
        failed = counts.get("failed", 0)
        table.add_row(
            name,
            str(counts.get("inserted", 0)),
            str(counts.get("skipped", 0)),
            f"[red]{failed}[/red]" if failed else "0",
        )
    return table


def _print_validation(result: ValidationResult) -> None:
    if result.valid:
        console.print(
            f"[bold green]v[/bold green] Valid {result.format.value if result.format else ''} "
            f"artifact: {len(result.tables)} tables, {result.record_count} records"
        )
    else:
        console.print("[bold red]x[/bold red] Invalid artifact")
    for error in result.errors:
        console.print(f"  [red]error:[/red] {error}")
    for warning in result.warnings:
        console.print(f"  [yellow]warning:[/yellow] {warning}")


async def _watch(service: BackupService, job_id: str, label: str) -> JobRecord:
    """Poll a background job with a progress bar until it finishes."""
    progress = Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        TextColumn("{task.percentage:>3.0f}%"),
        TimeElapsedColumn(),
        console=console,
    )
    with progress:
        task = progress.add_task(label, total=100)
        while service.is_running(job_id):
            record = await service.get_job_status(job_id)
            description = f"{label} {record.current_table}".rstrip()
            progress.update(task, completed=record.progress, description=description)
            await asyncio.sleep(POLL_INTERVAL)
        await service.wait(job_id)
        record = await service.get_job_status(job_id)
        progress.update(task, completed=record.progress, description=label)
    return record


def _parse_tables(value: str | None) -> list[str] | None:
    if not value:
        return None
    return [t.strip() for t in value.split(",") if t.strip()]


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_connect(args: argparse.Namespace) -> int:
    """Async implementation for connect command.

    Returns:
        0 on success, 1 on failure.
    """
    env_prefix = getattr(args, "env_prefix", "")
    previous_profile = read_profile_lock()

    try:
        profile_name = args.profile or get_active_profile_name(env_prefix)
    except ProfileNotFoundError as e:
        console.print(f"[yellow]{e}[/yellow]")
        return 1

    console.print("Connecting to database...", style="dim")
    try:
        adapter = await connect(profile_name, env_prefix=env_prefix)
    except Exception as e:
        console.print(f"\n[bold red]x[/bold red] Connection failed: {e}")
        return 1
    await adapter.close()

    console.print(
        f"\n[bold green]v[/bold green] Connected to profile: "
        f"[bold cyan]{profile_name}[/bold cyan]"
    )
    if previous_profile and previous_profile != profile_name:
        console.print(
            f"\n[dim]Switched from[/dim] [bold]{previous_profile}[/bold] "
            f"[dim]to[/dim] [bold cyan]{profile_name}[/bold cyan]"
        )
    return 0


async def _async_init(args: argparse.Namespace) -> int:
    async with _open_service(args) as service:
        await service.tracker.ensure_table()
        console.print(
            f"[bold green]v[/bold green] History table "
            f"[cyan]{service.tracker.table}[/cyan] is ready"
        )
    return 0


async def _async_export(args: argparse.Namespace) -> int:
    """Async implementation for export command.

    Returns:
        0 when the export completed, 1 otherwise.
    """
    async with _open_service(args) as service:
        job_id = await service.start_export(
            ArtifactFormat(args.format),
            exclude_sensitive=args.exclude_sensitive,
            actor_id=args.actor,
        )
        record = await _watch(service, job_id, "Exporting")

        console.print(_job_table(record))
        if record.status is not JobStatus.COMPLETED:
            return 1

        if args.output:
            data = await service.download_artifact(job_id)
            Path(args.output).write_bytes(data)
            console.print(f"Artifact copied to [cyan]{args.output}[/cyan]")

        console.print("[bold green]v[/bold green] Export complete.")
    return 0


async def _async_validate(args: argparse.Namespace) -> int:
    """Async implementation for validate command.

    Uploads nothing: validates the file against the current database's
    tables only.

    Returns:
        0 if valid, 1 otherwise.
    """
    path = Path(args.file)
    data = path.read_bytes()
    format = ArtifactFormat(args.format) if args.format else detect_format(path.name)

    async with _open_service(args) as service:
        existing = await service.introspector.list_tables()
        excluded = service.settings.all_excluded_tables
        schema_name = service.introspector.schema_name
    result = validate_artifact(data, format, existing, excluded, schema_name=schema_name)

    _print_validation(result)
    return 0 if result.valid else 1


async def _async_restore(args: argparse.Namespace) -> int:
    """Async implementation for restore command.

    Uploads the file as a pending restore job, shows the validation result
    and a preview, asks for confirmation, then restores.

    Returns:
        0 when the restore completed without failed rows, 1 otherwise.
    """
    path = Path(args.file)
    data = path.read_bytes()
    mode = RestoreMode(args.mode)

    async with _open_service(args) as service:
        job_id, validation = await service.upload_candidate(
            data,
            declared_format=ArtifactFormat(args.format) if args.format else None,
            actor_id=args.actor,
            file_name=path.name,
        )
        _print_validation(validation)
        if not validation.valid:
            return 1

        preview = await service.get_restore_preview(job_id)
        for table_preview in preview.tables:
            console.print(
                f"  [dim]{table_preview.name}:[/dim] {table_preview.record_count} records"
            )

        if not args.yes:
            console.print(
                f"\nRestore job: [cyan]{job_id}[/cyan]  Mode: [bold]{mode.value}[/bold]"
            )
            if mode is RestoreMode.OVERWRITE:
                console.print(
                    "[bold yellow]WARNING:[/bold yellow] Restored tables will be cleared first!"
                )
            if not Confirm.ask("Continue?", default=False, console=console):
                console.print("Cancelled. The upload stays pending.")
                return 0

        await service.execute_restore(job_id, mode, selected_tables=_parse_tables(args.tables))
        record = await _watch(service, job_id, "Restoring")

    console.print(_job_table(record))
    results = _table_results(record)
    if results is not None:
        console.print(results)

    if record.status is not JobStatus.COMPLETED:
        return 1
    failed = record.result_summary.get("total_failed", 0)
    if failed:
        console.print(f"\n[bold yellow]![/bold yellow] Restore completed with {failed} failed rows")
        return 1
    console.print("[bold green]v[/bold green] Restore complete.")
    return 0


async def _async_job(args: argparse.Namespace) -> int:
    async with _open_service(args) as service:
        record = await service.get_job_status(args.job_id)

    console.print(_job_table(record))
    results = _table_results(record)
    if results is not None:
        console.print(results)
    return 0


async def _async_history(args: argparse.Namespace) -> int:
    async with _open_service(args) as service:
        records = await service.list_history(
            JobKind(args.kind) if args.kind else None, limit=args.limit
        )

    table = Table(title="Backup History", show_header=True, header_style="bold")
    table.add_column("ID", overflow="fold")
    table.add_column("Kind")
    table.add_column("Format")
    table.add_column("Status")
    table.add_column("Progress", justify="right")
    table.add_column("Tables", justify="right")
    table.add_column("Records", justify="right")
    table.add_column("Created")

    for record in records:
        table.add_row(
            record.id,
            record.kind.value,
            record.format.value,
            _status_text(record.status),
            f"{record.progress}%",
            str(record.table_count),
            str(record.record_count),
            record.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)
    return 0


async def _async_cleanup(args: argparse.Namespace) -> int:
    async with _open_service(args) as service:
        deleted = await service.cleanup(days_old=args.days)
    console.print(f"Deleted {deleted} artifacts older than {args.days} days")
    return 0


# ============================================================================
# Sync command wrappers (cmd_status, cmd_profiles read local files only)
# ============================================================================


def _run(coro_fn, args: argparse.Namespace) -> int:
    """Run an async command, mapping expected failures to exit code 1."""
    try:
        return asyncio.run(coro_fn(args))
    except (BackupError, ProfileNotFoundError, FileNotFoundError, KeyError, ValueError) as e:
        console.print(f"\n[red]Error: {e}[/red]")
        return 1


def cmd_connect(args: argparse.Namespace) -> int:
    """Test a profile's connection and write the lock file."""
    return asyncio.run(_async_connect(args))


def cmd_status(args: argparse.Namespace) -> int:
    """Show current connection status.

    Reads only local files (lock file and TOML config) -- no database calls.

    Returns:
        0 always (informational command).
    """
    profile = read_profile_lock()

    if not profile:
        console.print("[yellow]No validated profile.[/yellow]")
        console.print(
            "[dim]Run:[/dim] [cyan]DB_PROFILE=<name> db-snapshot connect[/cyan]"
        )
        return 0

    table = Table(title="Connection Status", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Current profile", f"[bold cyan]{profile}[/bold cyan]")
    table.add_row("Profile source", ".db-profile (validated)")

    try:
        config = load_db_config()
        if profile in config.profiles:
            p = config.profiles[profile]
            table.add_row("Provider", p.provider)
            if p.description:
                table.add_row("Description", p.description)
        table.add_row("Artifact dir", config.backup.artifact_dir)
    except FileNotFoundError:
        table.add_row("Warning", "[yellow]db.toml not found[/yellow]")

    console.print(table)
    return 0


def cmd_profiles(args: argparse.Namespace) -> int:
    """List available profiles from db.toml.

    Returns:
        0 on success, 1 if db.toml not found.
    """
    try:
        config = load_db_config()
    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    current = read_profile_lock()

    table = Table(title="Database Profiles", show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Profile")
    table.add_column("Provider")
    table.add_column("Description")

    for name, profile in config.profiles.items():
        marker = "[bold green]*[/bold green]" if name == current else " "
        table.add_row(
            marker,
            f"[bold cyan]{name}[/bold cyan]" if name == current else name,
            profile.provider,
            profile.description or "",
        )

    console.print(table)
    if current:
        console.print("\n[bold green]*[/bold green] = current profile")
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    return _run(_async_init, args)


def cmd_export(args: argparse.Namespace) -> int:
    return _run(_async_export, args)


def cmd_validate(args: argparse.Namespace) -> int:
    return _run(_async_validate, args)


def cmd_restore(args: argparse.Namespace) -> int:
    return _run(_async_restore, args)


def cmd_job(args: argparse.Namespace) -> int:
    return _run(_async_job, args)


def cmd_history(args: argparse.Namespace) -> int:
    return _run(_async_history, args)


def cmd_cleanup(args: argparse.Namespace) -> int:
    return _run(_async_cleanup, args)


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="db-snapshot",
        description="Full-database backup and restore for PostgreSQL",
    )

    parser.add_argument(
        "--env-prefix",
        default="",
        help=(
            "Prefix for environment variable lookup "
            "(e.g., --env-prefix APP_ reads APP_DB_PROFILE)"
        ),
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Connect to this URL instead of a db.toml profile",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_connect = subparsers.add_parser(
        "connect", help="Test a profile's connection and make it current"
    )
    p_connect.add_argument("profile", nargs="?", help="Profile name (default: DB_PROFILE)")
    p_connect.set_defaults(func=cmd_connect)

    p_status = subparsers.add_parser("status", help="Show current connection status")
    p_status.set_defaults(func=cmd_status)

    p_profiles = subparsers.add_parser("profiles", help="List available profiles")
    p_profiles.set_defaults(func=cmd_profiles)

    p_init = subparsers.add_parser("init", help="Create the job history table")
    p_init.set_defaults(func=cmd_init)

    p_export = subparsers.add_parser("export", help="Export the whole database")
    p_export.add_argument(
        "--format",
        choices=[f.value for f in ArtifactFormat],
        default=ArtifactFormat.STRUCTURED.value,
        help="Artifact format (default: json)",
    )
    p_export.add_argument(
        "--exclude-sensitive",
        action="store_true",
        help="Omit columns configured as sensitive (e.g., users.password_hash)",
    )
    p_export.add_argument("--actor", default=None, help="Recorded as the job's creator")
    p_export.add_argument("--output", "-o", default=None, help="Also copy the artifact here")
    p_export.set_defaults(func=cmd_export)

    p_validate = subparsers.add_parser(
        "validate", help="Validate an artifact against the current database"
    )
    p_validate.add_argument("file", help="Artifact path (.json or .sql)")
    p_validate.add_argument(
        "--format",
        choices=[f.value for f in ArtifactFormat],
        default=None,
        help="Artifact format (default: from the file extension)",
    )
    p_validate.set_defaults(func=cmd_validate)

    p_restore = subparsers.add_parser("restore", help="Restore an artifact")
    p_restore.add_argument("file", help="Artifact path (.json or .sql)")
    p_restore.add_argument(
        "--mode",
        choices=[m.value for m in RestoreMode],
        default=RestoreMode.SKIP_CONFLICTS.value,
        help="Conflict policy (default: skip_conflicts)",
    )
    p_restore.add_argument(
        "--tables",
        default=None,
        help="Comma-separated list of tables to restore (default: all)",
    )
    p_restore.add_argument(
        "--format",
        choices=[f.value for f in ArtifactFormat],
        default=None,
        help="Artifact format (default: from the file extension)",
    )
    p_restore.add_argument("--actor", default=None, help="Recorded as the job's creator")
    p_restore.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")
    p_restore.set_defaults(func=cmd_restore)

    p_job = subparsers.add_parser("job", help="Show one job")
    p_job.add_argument("job_id", help="Job ID")
    p_job.set_defaults(func=cmd_job)

    p_history = subparsers.add_parser("history", help="List recent jobs")
    p_history.add_argument(
        "--kind", choices=[k.value for k in JobKind], default=None, help="Filter by kind"
    )
    p_history.add_argument("--limit", type=int, default=20, help="Maximum rows (default: 20)")
    p_history.set_defaults(func=cmd_history)

    p_cleanup = subparsers.add_parser(
        "cleanup", help="Delete old job records and their artifacts"
    )
    p_cleanup.add_argument("--days", type=int, default=7, help="Age threshold (default: 7)")
    p_cleanup.set_defaults(func=cmd_cleanup)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    args = build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
