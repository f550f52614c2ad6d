"""Artifact validation and preview.

Validation is structural only: it never executes a statement and never
touches destination data.  The caller supplies the destination's table
names, which keeps these functions **sync** and pure.

Usage:
    result = validate_artifact(data, ArtifactFormat.STRUCTURED, existing_tables)
    if not result.valid:
        print(result.errors)
"""

from collections.abc import Iterable
from pathlib import PurePath

from db_snapshot.backup.models import (
    FORMAT_VERSION,
    ArtifactFormat,
    TablePreview,
    ValidationResult,
)
from db_snapshot.backup.serializers import load_statements, load_structured

_EXTENSIONS = {
    ".json": ArtifactFormat.STRUCTURED,
    ".sql": ArtifactFormat.STATEMENT,
}


def detect_format(file_name: str) -> ArtifactFormat:
    """Infer the artifact format from a file extension.

    Raises:
        ValueError: For anything other than ``.json`` / ``.sql``.

    Example:
        >>> detect_format("oga-backup.SQL")
        <ArtifactFormat.STATEMENT: 'sql'>
    """
    suffix = PurePath(file_name).suffix.lower()
    if suffix not in _EXTENSIONS:
        raise ValueError(f"Unsupported artifact type '{suffix}' (expected .json or .sql)")
    return _EXTENSIONS[suffix]


def validate_artifact(
    data: bytes,
    declared_format: ArtifactFormat,
    existing_tables: Iterable[str],
    excluded_tables: Iterable[str] = (),
    schema_name: str = "public",
) -> ValidationResult:
    """Validate an artifact against the destination's tables.

    Args:
        data: Artifact bytes.
        declared_format: Format the uploader claims.
        existing_tables: Tables present in the destination schema.
        excluded_tables: Bookkeeping tables restore always skips.
        schema_name: Destination schema; statements qualified with any
            other schema are not restored.

    Returns:
        ``ValidationResult``; ``valid`` is ``False`` only for errors,
        never for warnings.
    """
    declared_format = ArtifactFormat(declared_format)
    existing = set(existing_tables)
    excluded = set(excluded_tables)
    if declared_format is ArtifactFormat.STRUCTURED:
        return _validate_structured(data, existing, excluded)
    return _validate_statements(data, existing, excluded, schema_name)


def _table_warnings(tables: list[str], existing: set[str], excluded: set[str]) -> list[str]:
    warnings: list[str] = []
    for table in tables:
        if table in excluded:
            warnings.append(f"Table {table} is an internal table and will be skipped")
        elif table not in existing:
            warnings.append(f"Table {table} does not exist in the destination database")
    return warnings


def _validate_structured(data: bytes, existing: set[str], excluded: set[str]) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []
    result = ValidationResult(valid=False, format=ArtifactFormat.STRUCTURED)

    try:
        document = load_structured(data)
    except ValueError as e:
        result.errors.append(f"Invalid JSON: {e}")
        return result

    if not isinstance(document, dict):
        result.errors.append("Top-level value must be an object")
        return result

    metadata = document.get("metadata")
    tables_data = document.get("data")
    if metadata is None:
        errors.append("Missing metadata section")
    elif not isinstance(metadata, dict):
        errors.append("metadata must be an object")
    if tables_data is None:
        errors.append("Missing data section")
    elif not isinstance(tables_data, dict):
        errors.append("data must be an object mapping table names to rows")

    if errors:
        result.errors = errors
        return result

    version = metadata.get("format_version", metadata.get("version"))
    if version != FORMAT_VERSION:
        warnings.append(f"Backup version {version} may not be fully compatible")

    tables = list(tables_data.keys())
    record_count = 0
    for table in tables:
        rows = tables_data[table]
        if not isinstance(rows, list):
            errors.append(f"Table {table}: expected an array of rows")
            continue
        if any(not isinstance(row, dict) for row in rows):
            errors.append(f"Table {table}: every row must be an object")
        record_count += len(rows)

    warnings.extend(_table_warnings(tables, existing, excluded))

    declared_count = metadata.get("record_count")
    if isinstance(declared_count, int) and declared_count != record_count:
        warnings.append(
            f"Metadata declares {declared_count} records but data contains {record_count}"
        )

    return ValidationResult(
        valid=not errors,
        format=ArtifactFormat.STRUCTURED,
        tables=tables,
        record_count=record_count,
        errors=errors,
        warnings=warnings,
    )


def _validate_statements(
    data: bytes, existing: set[str], excluded: set[str], schema_name: str
) -> ValidationResult:
    errors: list[str] = []
    warnings: list[str] = []

    try:
        statements = load_statements(data)
    except UnicodeDecodeError as e:
        return ValidationResult(
            valid=False,
            format=ArtifactFormat.STATEMENT,
            errors=[f"Artifact is not UTF-8 text: {e}"],
        )

    # Table names are advisory: pattern-matched, not parsed
    tables: list[str] = []
    inserts = 0
    has_truncate = False
    unrecognized = 0
    foreign = 0
    for statement in statements:
        if statement.schema not in (None, schema_name):
            foreign += 1
        elif statement.kind == "insert":
            inserts += 1
            if statement.table not in tables:
                tables.append(statement.table)
        elif statement.kind == "truncate":
            has_truncate = True
        elif statement.kind == "other":
            unrecognized += 1

    if inserts == 0:
        errors.append("No INSERT statements found")
    if not has_truncate:
        warnings.append("No TRUNCATE statements found; restoring may duplicate rows")
    if unrecognized:
        warnings.append(f"{unrecognized} unrecognized statements will not be executed")
    if foreign:
        warnings.append(f"{foreign} statements outside schema {schema_name} will not be executed")
    warnings.extend(_table_warnings(tables, existing, excluded))

    return ValidationResult(
        valid=not errors,
        format=ArtifactFormat.STATEMENT,
        tables=tables,
        record_count=inserts,
        errors=errors,
        warnings=warnings,
    )


def build_preview(
    data: bytes,
    format: ArtifactFormat,
    max_tables: int = 10,
    max_rows: int = 3,
) -> list[TablePreview]:
    """Sample the first tables and rows of a structured artifact.

    Statement artifacts and unreadable documents yield an empty preview.
    """
    if ArtifactFormat(format) is not ArtifactFormat.STRUCTURED:
        return []
    try:
        document = load_structured(data)
    except ValueError:
        return []
    if not isinstance(document, dict) or not isinstance(document.get("data"), dict):
        return []

    previews: list[TablePreview] = []
    for name, rows in list(document["data"].items())[:max_tables]:
        rows = rows if isinstance(rows, list) else []
        previews.append(
            TablePreview(
                name=name,
                record_count=len(rows),
                sample_rows=[r for r in rows[:max_rows] if isinstance(r, dict)],
            )
        )
    return previews
