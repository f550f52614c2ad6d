"""Tests for the restorer: modes, atomicity, integrity bracket, locking."""

import copy
import json

import pytest
from conftest import FakeDatabase, FakeIntrospector, TASKS_FK, sample_schema, seed_users_and_tasks

from db_snapshot.backup.exporter import Exporter
from db_snapshot.backup.jobs import CancellationToken, JobHandle, JobTracker
from db_snapshot.backup.models import ArtifactFormat, JobKind, JobStatus, RestoreMode
from db_snapshot.backup.restorer import RESTORE_LOCK_KEY, Restorer, plan_tables
from db_snapshot.backup.serializers import StatementWriter
from db_snapshot.schema.models import ColumnSchema


def _seed_rows() -> dict[str, list[dict]]:
    db = FakeDatabase(sample_schema())
    seed_users_and_tasks(db)
    return {"users": db.rows["users"], "tasks": db.rows["tasks"]}


def _structured(data: dict[str, list[dict]]) -> bytes:
    metadata = {"format_version": "1.0", "created_at": "2026-01-15T09:30:00+00:00"}
    return json.dumps({"metadata": metadata, "data": data}).encode("utf-8")


def _statements(data: dict[str, list[dict]]) -> bytes:
    writer = StatementWriter(created_by="admin")
    for table, rows in data.items():
        columns = [ColumnSchema(name=name, data_type="text") for name in rows[0]]
        writer.write_table(table, columns, rows)
    return writer.finish()


async def _restore(
    db,
    sink,
    settings,
    data: bytes,
    mode: RestoreMode,
    format: ArtifactFormat = ArtifactFormat.STRUCTURED,
    selected_tables=None,
    token=None,
):
    tracker = JobTracker(db)
    location = await sink.put(f"artifact.{format.value}", data)
    record = await tracker.create(
        JobKind.RESTORE,
        format,
        "admin",
        status=JobStatus.PENDING,
        artifact_location=location,
        result_summary={"validation": {"valid": True}},
    )
    handle = JobHandle(tracker, record)
    restorer = Restorer(db, sink, settings, FakeIntrospector(db))
    await restorer.run(handle, mode, selected_tables, token)
    return await tracker.get(record.id)


def _stale(db) -> None:
    """Rows that an overwrite must remove."""
    db.rows["users"].append({"id": "u9", "username": "stale", "password_hash": "x"})
    db.rows["tasks"].append({"id": "t9", "assignee_id": "u9", "title": "stale"})


def _data_rows(db) -> dict[str, list[dict]]:
    return {t: copy.deepcopy(rows) for t, rows in db.rows.items() if t != "backup_history"}


class TestPlanTables:
    def test_dependency_order(self) -> None:
        """Artifact tables are restored parents first."""
        assert plan_tables(["tasks", "users"], ["users", "tasks"]) == ["users", "tasks"]

    def test_unknown_tables_dropped(self) -> None:
        """Tables missing from the destination are not planned."""
        assert plan_tables(["legacy", "users"], ["users", "tasks"]) == ["users"]

    def test_selection(self) -> None:
        """A selection narrows the plan."""
        assert plan_tables(["tasks", "users"], ["users", "tasks"], ["tasks"]) == ["tasks"]


class TestOverwrite:
    async def test_replaces_stale_rows(self, seeded_db, sink, settings) -> None:
        """Overwrite leaves exactly the artifact's rows."""
        _stale(seeded_db)
        record = await _restore(
            seeded_db, sink, settings, _structured(_seed_rows()), RestoreMode.OVERWRITE
        )
        assert record.status is JobStatus.COMPLETED
        assert [r["id"] for r in seeded_db.rows["users"]] == ["u1", "u2"]
        assert [r["id"] for r in seeded_db.rows["tasks"]] == ["t1", "t2", "t3"]
        assert record.result_summary["total_restored"] == 5
        assert record.result_summary["tables"]["users"] == {
            "inserted": 2,
            "skipped": 0,
            "failed": 0,
        }
        assert record.record_count == 5
        assert record.table_count == 2

    async def test_truncates_only_planned_tables(self, seeded_db, sink, settings) -> None:
        """Only tables being restored are truncated."""
        await _restore(seeded_db, sink, settings, _structured(_seed_rows()), RestoreMode.OVERWRITE)
        assert seeded_db.truncated == ["users", "tasks"]
        assert seeded_db.rows["schema_migrations"] == [{"version": "001"}]

    async def test_integrity_bracket(self, seeded_db, sink, settings) -> None:
        """Enforcement is suspended for the body and restored after."""
        await _restore(seeded_db, sink, settings, _structured(_seed_rows()), RestoreMode.OVERWRITE)
        assert seeded_db.integrity_log == [False, True]
        assert seeded_db.integrity_enabled
        assert seeded_db.commits == 1

    async def test_row_failure_rolls_back_everything(self, seeded_db, sink, settings) -> None:
        """One failing row aborts and rolls back every table."""
        _stale(seeded_db)
        before = _data_rows(seeded_db)
        seeded_db.fail_row = lambda table, row: table == "tasks" and row["id"] == "t3"

        record = await _restore(
            seeded_db, sink, settings, _structured(_seed_rows()), RestoreMode.OVERWRITE
        )
        assert record.status is JobStatus.FAILED
        assert "Row 2 of table 'tasks'" in record.error_message
        assert _data_rows(seeded_db) == before
        assert seeded_db.rollbacks == 1
        assert seeded_db.integrity_log == [False, True]
        assert seeded_db.integrity_enabled

    async def test_failure_keeps_mode_in_summary(self, seeded_db, sink, settings) -> None:
        """A failed restore still records its mode."""
        seeded_db.fail_row = lambda table, row: True
        record = await _restore(
            seeded_db, sink, settings, _structured(_seed_rows()), RestoreMode.OVERWRITE
        )
        assert record.result_summary["mode"] == "overwrite"
        assert "validation" in record.result_summary
        assert "total_restored" not in record.result_summary


class TestSkipConflicts:
    async def test_idempotent(self, db, sink, settings) -> None:
        """Restoring twice adds nothing the second time."""
        data = _structured(_seed_rows())
        first = await _restore(db, sink, settings, data, RestoreMode.SKIP_CONFLICTS)
        second = await _restore(db, sink, settings, data, RestoreMode.SKIP_CONFLICTS)

        assert first.result_summary["total_restored"] == 5
        assert second.result_summary["total_restored"] == 0
        assert second.result_summary["total_skipped"] == 5
        assert len(db.rows["users"]) == 2
        assert len(db.rows["tasks"]) == 3

    async def test_existing_row_left_unchanged(self, db, sink, settings) -> None:
        """A conflicting row keeps the destination's values and counts as skipped."""
        db.rows["users"] = [{"id": "u1", "username": "renamed", "password_hash": "new"}]
        record = await _restore(
            db, sink, settings, _structured(_seed_rows()), RestoreMode.SKIP_CONFLICTS
        )
        users = {r["id"]: r for r in db.rows["users"]}
        assert users["u1"]["username"] == "renamed"
        assert users["u2"]["username"] == "bob"
        assert record.result_summary["tables"]["users"] == {
            "inserted": 1,
            "skipped": 1,
            "failed": 0,
        }

    async def test_no_truncate(self, seeded_db, sink, settings) -> None:
        """skip_conflicts never truncates."""
        await _restore(
            seeded_db, sink, settings, _structured(_seed_rows()), RestoreMode.SKIP_CONFLICTS
        )
        assert seeded_db.truncated == []

    async def test_row_failure_counted(self, db, sink, settings) -> None:
        """Non-conflict row failures are counted, not fatal."""
        db.fail_row = lambda table, row: row["id"] == "t2"
        record = await _restore(
            db, sink, settings, _structured(_seed_rows()), RestoreMode.SKIP_CONFLICTS
        )
        assert record.status is JobStatus.COMPLETED
        assert record.result_summary["tables"]["tasks"]["failed"] == 1
        assert record.result_summary["total_failed"] == 1
        assert [r["id"] for r in db.rows["tasks"]] == ["t1", "t3"]

    async def test_merge_behaves_like_skip(self, seeded_db, sink, settings) -> None:
        """merge is insert-if-absent."""
        record = await _restore(
            seeded_db, sink, settings, _structured(_seed_rows()), RestoreMode.MERGE
        )
        assert record.status is JobStatus.COMPLETED
        assert record.result_summary["total_skipped"] == 5
        assert record.result_summary["mode"] == "merge"


class TestStructuredDetails:
    async def test_selected_tables(self, db, sink, settings) -> None:
        """Only selected tables are touched."""
        record = await _restore(
            db,
            sink,
            settings,
            _structured(_seed_rows()),
            RestoreMode.SKIP_CONFLICTS,
            selected_tables=["users"],
        )
        assert len(db.rows["users"]) == 2
        assert db.rows["tasks"] == []
        assert record.result_summary["selected_tables"] == ["users"]
        assert list(record.result_summary["tables"]) == ["users"]

    async def test_unknown_and_excluded_tables_skipped(self, db, sink, settings) -> None:
        """Unknown and bookkeeping tables in the artifact are skipped."""
        data = _seed_rows()
        data["legacy"] = [{"id": 1}]
        data["backup_history"] = [{"id": "j-old"}]
        record = await _restore(db, sink, settings, _structured(data), RestoreMode.OVERWRITE)
        assert record.status is JobStatus.COMPLETED
        assert list(record.result_summary["tables"]) == ["users", "tasks"]
        assert all(r["id"] != "j-old" for r in db.rows["backup_history"])

    async def test_children_before_parents_in_artifact(self, db, sink, settings) -> None:
        """Artifact order does not matter; dependency order does."""
        rows = _seed_rows()
        reordered = {"tasks": rows["tasks"], "users": rows["users"]}
        await _restore(db, sink, settings, _structured(reordered), RestoreMode.OVERWRITE)
        assert db.truncated == ["users", "tasks"]

    async def test_unknown_columns_dropped(self, db, sink, settings) -> None:
        """Columns the destination lacks are dropped from each row."""
        data = {"users": [{"id": "u1", "username": "alice", "nickname": "al"}]}
        record = await _restore(db, sink, settings, _structured(data), RestoreMode.OVERWRITE)
        assert record.status is JobStatus.COMPLETED
        assert db.rows["users"] == [{"id": "u1", "username": "alice"}]

    async def test_row_without_known_columns_fails(self, db, sink, settings) -> None:
        """A row with no known columns is a row failure."""
        data = {"users": [{"nickname": "al"}, {"id": "u1"}]}
        record = await _restore(db, sink, settings, _structured(data), RestoreMode.SKIP_CONFLICTS)
        assert record.result_summary["tables"]["users"] == {
            "inserted": 1,
            "skipped": 0,
            "failed": 1,
        }

    async def test_column_types_passed(self, db, sink, settings) -> None:
        """Introspected column types reach the session."""
        await _restore(db, sink, settings, _structured(_seed_rows()), RestoreMode.OVERWRITE)
        assert db.column_types_seen["tasks"]["metadata"] == "jsonb"

    async def test_progress_completes(self, db, sink, settings) -> None:
        """A completed restore reports 100 percent."""
        record = await _restore(
            db, sink, settings, _structured(_seed_rows()), RestoreMode.OVERWRITE
        )
        assert record.progress == 100
        assert record.current_table == ""


class TestConcurrencyAndCancellation:
    async def test_lock_held_elsewhere(self, seeded_db, sink, settings) -> None:
        """A concurrent restore fails fast without writing."""
        seeded_db.lock_held = True
        before = _data_rows(seeded_db)
        record = await _restore(
            seeded_db, sink, settings, _structured(_seed_rows()), RestoreMode.OVERWRITE
        )
        assert record.status is JobStatus.FAILED
        assert "Another restore" in record.error_message
        assert seeded_db.lock_keys == [RESTORE_LOCK_KEY]
        assert seeded_db.integrity_log == []
        assert _data_rows(seeded_db) == before

    async def test_cancelled_before_first_table(self, seeded_db, sink, settings) -> None:
        """Cancellation rolls back and records "Cancelled"."""
        _stale(seeded_db)
        before = _data_rows(seeded_db)
        token = CancellationToken()
        token.cancel()
        record = await _restore(
            seeded_db,
            sink,
            settings,
            _structured(_seed_rows()),
            RestoreMode.OVERWRITE,
            token=token,
        )
        assert record.status is JobStatus.FAILED
        assert record.error_message == "Cancelled"
        assert _data_rows(seeded_db) == before

    async def test_missing_artifact(self, db, sink, settings) -> None:
        """A job without an artifact fails."""
        tracker = JobTracker(db)
        record = await tracker.create(
            JobKind.RESTORE, ArtifactFormat.STRUCTURED, "admin", status=JobStatus.PENDING
        )
        restorer = Restorer(db, sink, settings, FakeIntrospector(db))
        await restorer.run(JobHandle(tracker, record), RestoreMode.OVERWRITE)
        fetched = await tracker.get(record.id)
        assert fetched.status is JobStatus.FAILED
        assert "no artifact" in fetched.error_message

    async def test_corrupt_artifact(self, db, sink, settings) -> None:
        """Unparseable artifacts fail the job."""
        record = await _restore(db, sink, settings, b"{not json", RestoreMode.OVERWRITE)
        assert record.status is JobStatus.FAILED


class TestStatementRestore:
    async def test_skip_mode_adds_conflict_clause(self, db, sink, settings) -> None:
        """Statement replay appends ON CONFLICT DO NOTHING in skip mode."""
        record = await _restore(
            db,
            sink,
            settings,
            _statements(_seed_rows()),
            RestoreMode.SKIP_CONFLICTS,
            format=ArtifactFormat.STATEMENT,
        )
        assert record.status is JobStatus.COMPLETED
        assert len(db.statements) == 5
        assert all(sql.endswith("ON CONFLICT DO NOTHING") for sql in db.statements)
        assert db.truncated == []
        assert record.result_summary["total_restored"] == 5

    async def test_overwrite_truncates_and_runs_plain_inserts(self, db, sink, settings) -> None:
        """Overwrite truncates and replays the inserts unchanged."""
        await _restore(
            db,
            sink,
            settings,
            _statements(_seed_rows()),
            RestoreMode.OVERWRITE,
            format=ArtifactFormat.STATEMENT,
        )
        assert db.truncated == ["users", "tasks"]
        assert not any("ON CONFLICT" in sql for sql in db.statements)
        # the script's own integrity statements are not replayed
        assert not any("session_replication_role" in sql for sql in db.statements)
        assert db.integrity_log == [False, True]

    async def test_zero_rowcount_counts_as_skipped(self, db, sink, settings) -> None:
        """An insert that writes nothing counts as skipped."""
        db.statement_rowcount = lambda sql: 0
        record = await _restore(
            db,
            sink,
            settings,
            _statements(_seed_rows()),
            RestoreMode.SKIP_CONFLICTS,
            format=ArtifactFormat.STATEMENT,
        )
        assert record.result_summary["total_skipped"] == 5

    async def test_unrecognized_statements_ignored(self, db, sink, settings) -> None:
        """Statements other than INSERT and TRUNCATE are never executed."""
        script = _statements(_seed_rows()) + b"DROP TABLE users;\n"
        record = await _restore(
            db, sink, settings, script, RestoreMode.OVERWRITE, format=ArtifactFormat.STATEMENT
        )
        assert record.status is JobStatus.COMPLETED
        assert record.result_summary["ignored_statements"] == 1
        assert not any(sql.startswith("DROP") for sql in db.statements)

    async def test_other_schema_statements_ignored(self, db, sink, settings) -> None:
        """A qualified target outside the destination schema never runs."""
        script = _statements(_seed_rows()) + (
            b"INSERT INTO audit.users (\"id\") VALUES ('x1');\n"
            b"INSERT INTO public.users (\"id\") VALUES ('x2');\n"
        )
        record = await _restore(
            db,
            sink,
            settings,
            script,
            RestoreMode.OVERWRITE,
            format=ArtifactFormat.STATEMENT,
            selected_tables=["tasks"],
        )
        assert record.status is JobStatus.COMPLETED
        assert record.result_summary["ignored_statements"] == 1
        assert not any("audit" in sql or "x2" in sql for sql in db.statements)
        assert record.result_summary["total_restored"] == 3

    async def test_conflict_text_in_value_still_skips(self, db, sink, settings) -> None:
        """Existing rows are skipped even when a value mentions ON CONFLICT."""
        rows = _seed_rows()
        rows["tasks"][0]["title"] = "Escalate ON CONFLICT with vendor"

        def rowcount(sql: str) -> int:
            if not sql.endswith("ON CONFLICT DO NOTHING"):
                raise RuntimeError('duplicate key value violates unique constraint "tasks_pkey"')
            return 0

        db.statement_rowcount = rowcount
        record = await _restore(
            db,
            sink,
            settings,
            _statements(rows),
            RestoreMode.SKIP_CONFLICTS,
            format=ArtifactFormat.STATEMENT,
        )
        assert record.status is JobStatus.COMPLETED
        assert record.result_summary["total_skipped"] == 5
        assert record.result_summary["total_failed"] == 0

    async def test_statement_failure_in_overwrite_is_fatal(self, db, sink, settings) -> None:
        """A failing statement aborts an overwrite."""
        def rowcount(sql: str) -> int:
            if "'t2'" in sql:
                raise RuntimeError("violates check constraint")
            return 1

        db.statement_rowcount = rowcount
        record = await _restore(
            db,
            sink,
            settings,
            _statements(_seed_rows()),
            RestoreMode.OVERWRITE,
            format=ArtifactFormat.STATEMENT,
        )
        assert record.status is JobStatus.FAILED
        assert "tasks" in record.error_message
        assert db.rollbacks == 1


async def _export_artifact(db, sink, settings, format: ArtifactFormat) -> bytes:
    tracker = JobTracker(db)
    export = await tracker.create(JobKind.EXPORT, format, "admin")
    exporter = Exporter(db, sink, settings, FakeIntrospector(db))
    await exporter.run(JobHandle(tracker, export), format, actor="admin")
    return await sink.get((await tracker.get(export.id)).artifact_location)


class TestRoundTrip:
    @pytest.mark.parametrize("format", list(ArtifactFormat))
    async def test_export_then_restore(self, seeded_db, sink, settings, format) -> None:
        """Restoring an export reproduces the source rows."""
        artifact = await _export_artifact(seeded_db, sink, settings, format)

        target = FakeDatabase(sample_schema(), foreign_keys=[TASKS_FK])
        record = await _restore(
            target, sink, settings, artifact, RestoreMode.OVERWRITE, format=format
        )
        assert record.status is JobStatus.COMPLETED
        assert record.result_summary["total_restored"] == 5
        if format is ArtifactFormat.STRUCTURED:
            assert target.rows["users"] == seeded_db.rows["users"]
            assert target.rows["tasks"] == seeded_db.rows["tasks"]
        else:
            assert len(target.statements) == 5

    @pytest.mark.parametrize("format", list(ArtifactFormat))
    async def test_jsonb_string_scalar(self, seeded_db, sink, settings, format) -> None:
        """A jsonb column holding a JSON string survives the round trip as JSON."""
        seeded_db.rows["tasks"][0]["metadata"] = "hello"
        artifact = await _export_artifact(seeded_db, sink, settings, format)

        target = FakeDatabase(sample_schema(), foreign_keys=[TASKS_FK])
        record = await _restore(
            target, sink, settings, artifact, RestoreMode.OVERWRITE, format=format
        )
        assert record.status is JobStatus.COMPLETED
        if format is ArtifactFormat.STRUCTURED:
            assert target.rows["tasks"][0]["metadata"] == "hello"
            assert target.column_types_seen["tasks"]["metadata"] == "jsonb"
        else:
            assert any("'\"hello\"'::jsonb" in sql for sql in target.statements)
