"""Unit tests for tenant_backfill.orchestrator (scripted database)."""

from __future__ import annotations

import pytest

from tenant_backfill import orchestrator as orchestrator_mod
from tenant_backfill.config import BackfillConfig
from tenant_backfill.orchestrator import default_snapshot_path, run_backfill
from tenant_backfill.registry import get_descriptor
from tenant_backfill.shared import CoverageError, DataIntegrityError

FORMS_COLUMNS = [("id",), ("organization_id",), ("tenant_code",), ("organization_code",)]
FORMS_FK = (
    "forms_organization_id_fkey",
    "forms",
    ["organization_id"],
    "organization_extension",
    ["organization_id"],
    "FOREIGN KEY (organization_id) REFERENCES organization_extension(organization_id)",
)


@pytest.fixture
def config(tmp_path) -> BackfillConfig:
    mapping = tmp_path / "mapping.csv"
    mapping.write_text(
        "organization_id,organization_code,tenant_code\n7,ACME01,acme\n", encoding="utf-8"
    )
    return BackfillConfig(
        db_dsn="postgresql://localhost/test",
        default_tenant_code="default",
        default_organization_code="default_code",
        mapping_path=str(mapping),
        artifacts_dir=str(tmp_path / "artifacts"),
    )


@pytest.fixture
def db(scripted_conn):
    """One pending forms table with a single FK and two empty rows."""
    scripted_conn.on("information_schema.tables", rows=[(1,)])
    scripted_conn.on("information_schema.columns", rows=FORMS_COLUMNS)
    scripted_conn.on("SELECT DISTINCT organization_id::text", rows=[("7",)])
    scripted_conn.on("COUNT(*)", rows=[(2,)])
    scripted_conn.on('"id"::text, ', rows=[("1", None, None), ("2", None, None)])
    scripted_conn.on("pg_get_constraintdef", rows=[FORMS_FK])
    scripted_conn.on("IS DISTINCT FROM", rowcount=1)
    return scripted_conn


FORMS = [get_descriptor("forms")]


def _writes(conn) -> list[str]:
    return [q for q, _ in conn.calls if q.lstrip().startswith(("UPDATE", "ALTER"))]


def _first_index(conn, fragment: str) -> int:
    return next(i for i, (q, _) in enumerate(conn.calls) if fragment in q)


def _patch_resolution(monkeypatch, behaviour):
    monkeypatch.setattr(
        orchestrator_mod.ResolutionExecutor, "run", lambda self, descriptors: behaviour()
    )


# ---------------------------------------------------------------------------
# Gates before any write
# ---------------------------------------------------------------------------

class TestGates:
    def test_coverage_error_issues_no_writes(self, db, config):
        db.on("SELECT DISTINCT organization_id::text", rows=[("7",), ("9",)])
        with pytest.raises(CoverageError) as exc:
            run_backfill(db, config, "run-cov", descriptors=FORMS)
        assert exc.value.missing_ids == ["9"]
        assert _writes(db) == []
        assert not default_snapshot_path(config, "run-cov").exists()

    def test_nothing_pending_issues_no_writes(self, db, config):
        db.on("COUNT(*)", rows=[(0,)])
        result = run_backfill(db, config, "run-again", descriptors=FORMS)
        assert result.success and result.nothing_to_do
        assert result.stats.outcome == "nothing_to_do"
        assert _writes(db) == []
        assert result.stats.constraints_dropped == []

    def test_dry_run_plans_without_writing(self, db, config):
        result = run_backfill(db, config, "run-dry", descriptors=FORMS, dry_run=True)
        assert result.success and result.dry_run
        assert list(result.pending_rows) == ["forms"]
        assert result.planned_constraints == ["forms.forms_organization_id_fkey"]
        assert _writes(db) == []

    def test_table_without_row_id_stops_before_writes(self, db, config):
        db.on("information_schema.columns", rows=[("organization_id",), ("tenant_code",)])
        with pytest.raises(DataIntegrityError, match="forms"):
            run_backfill(db, config, "run-norid", descriptors=FORMS)
        assert _writes(db) == []
        assert not default_snapshot_path(config, "run-norid").exists()


# ---------------------------------------------------------------------------
# Successful run
# ---------------------------------------------------------------------------

class TestSuccess:
    def test_constraints_restored_symmetrically(self, db, config, monkeypatch):
        # resolution leaves nothing pending for the final validation
        _patch_resolution(monkeypatch, lambda: db.on("COUNT(*)", rows=[(0,)]))
        result = run_backfill(db, config, "run-ok", descriptors=FORMS)

        assert result.success, result.error
        assert result.stats.outcome == "success"
        assert result.stats.constraints_dropped == ["forms.forms_organization_id_fkey"]
        assert result.stats.constraints_restored == result.stats.constraints_dropped
        assert _first_index(db, "DROP CONSTRAINT") < _first_index(db, "ADD CONSTRAINT")
        assert not result.snapshot_path.exists()
        assert db.queries("IS DISTINCT FROM") == []


# ---------------------------------------------------------------------------
# Compensation
# ---------------------------------------------------------------------------

class TestCompensation:
    def _raise(self, exc):
        def behaviour():
            raise exc
        return behaviour

    def test_data_integrity_error_rolls_back_then_restores(self, db, config, monkeypatch):
        _patch_resolution(monkeypatch, self._raise(DataIntegrityError("null created_by")))
        result = run_backfill(db, config, "run-null", descriptors=FORMS)

        assert not result.success
        assert result.error.startswith("DataIntegrityError")
        assert result.stats.outcome == "rolled_back"
        assert result.rollback.status == "full"
        rollback_at = _first_index(db, "IS DISTINCT FROM")
        assert _first_index(db, "DROP CONSTRAINT") < rollback_at < _first_index(db, "ADD CONSTRAINT")
        assert result.restore.restored == ["forms.forms_organization_id_fkey"]
        assert result.snapshot_path.exists()

    def test_validation_failure_rolls_back(self, db, config, monkeypatch):
        _patch_resolution(monkeypatch, lambda: None)
        result = run_backfill(db, config, "run-invalid", descriptors=FORMS)

        assert not result.success
        assert result.error.startswith("ValidationFailure")
        assert result.stats.validation_errors[0]["table"] == "forms"
        assert result.rollback.status == "full"
        assert db.queries("ADD CONSTRAINT")

    def test_unexpected_error_is_returned_not_raised(self, db, config, monkeypatch):
        _patch_resolution(monkeypatch, self._raise(RuntimeError("boom")))
        result = run_backfill(db, config, "run-boom", descriptors=FORMS)

        assert not result.success
        assert result.error == "RuntimeError: boom"
        assert result.stats.outcome == "rolled_back"
        assert db.queries("ADD CONSTRAINT")
