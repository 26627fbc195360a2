"""Unit tests for tenant_backfill.cli (database access patched out)."""

from __future__ import annotations

import json

import psycopg
import pytest
from click.testing import CliRunner

from tenant_backfill import cli
from tenant_backfill.cli import main
from tenant_backfill.orchestrator import BackfillResult
from tenant_backfill.shared import CoverageError
from tenant_backfill.snapshot import RollbackOutcome
from tenant_backfill.validator import TableValidation, ValidationReport

# Keep the developer's environment out of config resolution.
CLEAN_ENV = {
    "DATABASE_URL": None,
    "DEFAULT_TENANT_CODE": None,
    "DEFAULT_ORGANIZATION_CODE": None,
    "DEFAULT_ORGANISATION_CODE": None,
    "TENANT_MAPPING_PATH": None,
    "BACKFILL_BATCH_SIZE": None,
}


class _FakeConn:
    closed = False

    def close(self):
        self.closed = True


@pytest.fixture
def fake_connect(monkeypatch):
    conns = []

    def connect(dsn, autocommit=False):
        assert autocommit is True
        conn = _FakeConn()
        conns.append(conn)
        return conn

    monkeypatch.setattr(cli.psycopg, "connect", connect)
    return conns


def _backfill_args(tmp_path, *extra):
    config = tmp_path / "backfill.yml"
    config.write_text(f"artifacts_dir: {tmp_path / 'artifacts'}\n", encoding="utf-8")
    return [
        "--mode", "backfill",
        "--config-path", str(config),
        "--db-dsn", "postgresql://localhost/test",
        "--mapping-path", str(tmp_path / "mapping.csv"),
        "--default-tenant-code", "default",
        "--default-organization-code", "default_code",
        "--run-id", "run-1",
        *extra,
    ]


def _invoke(args):
    return CliRunner().invoke(main, args, env=CLEAN_ENV)


# ---------------------------------------------------------------------------
# Configuration / flag validation
# ---------------------------------------------------------------------------

class TestFlags:
    def test_missing_defaults_fatal(self):
        result = _invoke(["--mode", "backfill", "--db-dsn", "postgresql://x", "--mapping-path", "m.csv"])
        assert result.exit_code == 1
        assert "FATAL" in result.output
        assert "default_tenant_code" in result.output

    def test_missing_dsn_fatal_in_read_only_mode(self):
        result = _invoke(["--mode", "validate"])
        assert result.exit_code == 1
        assert "DATABASE_URL" in result.output

    def test_unknown_mode_rejected(self):
        assert _invoke(["--mode", "explode"]).exit_code == 2

    def test_rollback_requires_snapshot(self):
        result = _invoke(["--mode", "rollback", "--db-dsn", "postgresql://x"])
        assert result.exit_code == 1
        assert "--snapshot-path" in result.output

    def test_rollback_snapshot_must_exist(self, tmp_path):
        result = _invoke([
            "--mode", "rollback", "--db-dsn", "postgresql://x",
            "--snapshot-path", str(tmp_path / "missing.json"),
        ])
        assert result.exit_code == 1
        assert "not found" in result.output

    def test_connection_failure_fatal(self, tmp_path, monkeypatch):
        def refuse(dsn, autocommit=False):
            raise psycopg.OperationalError("connection refused")

        monkeypatch.setattr(cli.psycopg, "connect", refuse)
        result = _invoke(_backfill_args(tmp_path))
        assert result.exit_code == 1
        assert "cannot connect" in result.output


# ---------------------------------------------------------------------------
# backfill mode
# ---------------------------------------------------------------------------

class TestBackfillMode:
    def test_success_exit_zero_and_artifacts(self, tmp_path, fake_connect, monkeypatch):
        def fake_run(conn, config, run_id, dry_run=False, stats=None, snapshot_path=None):
            stats.outcome = "success"
            stats.add_rows("org_id_direct", "forms", 3)
            return BackfillResult(run_id=run_id, stats=stats, success=True)

        monkeypatch.setattr(cli, "run_backfill", fake_run)
        result = _invoke(_backfill_args(tmp_path))
        assert result.exit_code == 0, result.output
        assert "Backfill complete" in result.output
        assert fake_connect[0].closed

        report = json.loads((tmp_path / "artifacts" / "reports" / "run-1.json").read_text())
        assert report["counters"]["rows_updated_total"] == 3
        assert (tmp_path / "artifacts" / "anomalies" / "run-1.json").exists()

    def test_cli_overrides_reach_config(self, tmp_path, fake_connect, monkeypatch):
        seen = {}

        def fake_run(conn, config, run_id, dry_run=False, stats=None, snapshot_path=None):
            seen["config"] = config
            seen["dry_run"] = dry_run
            return BackfillResult(run_id=run_id, stats=stats, success=True, dry_run=dry_run)

        monkeypatch.setattr(cli, "run_backfill", fake_run)
        result = _invoke(_backfill_args(tmp_path, "--batch-size", "10", "--dry-run", "--create-indexes"))
        assert result.exit_code == 0
        assert seen["config"].batch_size == 10
        assert seen["config"].create_indexes is True
        assert seen["dry_run"] is True
        assert "DRY RUN" in result.output

    def test_coverage_failure_reports_no_data_modified(self, tmp_path, fake_connect, monkeypatch):
        def fake_run(conn, config, run_id, **kwargs):
            raise CoverageError(["9"])

        monkeypatch.setattr(cli, "run_backfill", fake_run)
        result = _invoke(_backfill_args(tmp_path))
        assert result.exit_code == 1
        assert "PRE-FLIGHT FAILED (no data modified)" in result.output
        report = json.loads((tmp_path / "artifacts" / "reports" / "run-1.json").read_text())
        assert report["counters"]["outcome"] == "preflight_failed"

    def test_undecodable_mapping_still_writes_artifacts(self, tmp_path, monkeypatch, scripted_conn):
        conn = scripted_conn
        monkeypatch.setattr(cli.psycopg, "connect", lambda dsn, autocommit=False: conn)
        (tmp_path / "mapping.csv").write_bytes(
            b"organization_id,organization_code,tenant_code\n7,ACME\xff,acme\n"
        )
        result = _invoke(_backfill_args(tmp_path))

        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)
        assert "PRE-FLIGHT FAILED (no data modified)" in result.output
        anomalies = json.loads((tmp_path / "artifacts" / "anomalies" / "run-1.json").read_text())
        assert anomalies["outcome"] == "preflight_failed"
        assert anomalies["error"].startswith("ConfigurationError")
        assert conn.queries("UPDATE") == []
        assert conn.closed

    def test_unexpected_error_still_writes_artifacts(self, tmp_path, fake_connect, monkeypatch):
        def fake_run(conn, config, run_id, **kwargs):
            raise psycopg.OperationalError("server closed the connection unexpectedly")

        monkeypatch.setattr(cli, "run_backfill", fake_run)
        result = _invoke(_backfill_args(tmp_path))

        assert result.exit_code == 1
        assert isinstance(result.exception, SystemExit)
        assert "FATAL: OperationalError: server closed" in result.output
        anomalies = json.loads((tmp_path / "artifacts" / "anomalies" / "run-1.json").read_text())
        assert anomalies["outcome"] == "failed"
        report = json.loads((tmp_path / "artifacts" / "reports" / "run-1.json").read_text())
        assert report["counters"]["outcome"] == "failed"
        assert fake_connect[0].closed

    def test_rolled_back_run_exits_one(self, tmp_path, fake_connect, monkeypatch):
        def fake_run(conn, config, run_id, dry_run=False, stats=None, snapshot_path=None):
            stats.outcome = "rolled_back"
            return BackfillResult(
                run_id=run_id, stats=stats, success=False,
                rollback=RollbackOutcome(status="full"),
                validation=ValidationReport(tables=[
                    TableValidation("sessions", null_counts={"tenant_code": 2}),
                ]),
            )

        monkeypatch.setattr(cli, "run_backfill", fake_run)
        result = _invoke(_backfill_args(tmp_path))
        assert result.exit_code == 1
        assert "Changes rolled back (full)" in result.output
        assert "[FAIL] sessions" in result.output

    def test_partial_rollback_requires_intervention(self, tmp_path, fake_connect, monkeypatch):
        def fake_run(conn, config, run_id, dry_run=False, stats=None, snapshot_path=None):
            return BackfillResult(
                run_id=run_id, stats=stats, success=False,
                rollback=RollbackOutcome(status="partial", tables_failed={"forms": "deadlock"}),
            )

        monkeypatch.setattr(cli, "run_backfill", fake_run)
        result = _invoke(_backfill_args(tmp_path))
        assert result.exit_code == 1
        assert "manual intervention required" in result.output


# ---------------------------------------------------------------------------
# validate / rollback modes
# ---------------------------------------------------------------------------

class TestReadOnlyModes:
    def test_validate_failure_exits_one(self, fake_connect, monkeypatch):
        report = ValidationReport(tables=[TableValidation("forms", null_counts={"tenant_code": 1})])
        monkeypatch.setattr(cli, "validate", lambda conn, descriptors, schema: report)
        result = _invoke(["--mode", "validate", "--db-dsn", "postgresql://x"])
        assert result.exit_code == 1
        assert "Overall: FAIL" in result.output

    def test_validate_pass_exits_zero(self, fake_connect, monkeypatch):
        report = ValidationReport(tables=[TableValidation("forms")])
        monkeypatch.setattr(cli, "validate", lambda conn, descriptors, schema: report)
        result = _invoke(["--mode", "validate", "--db-dsn", "postgresql://x"])
        assert result.exit_code == 0

    def test_rollback_mode(self, tmp_path, fake_connect, monkeypatch):
        snapshot = tmp_path / "run.json"
        snapshot.write_text("{}")
        config = tmp_path / "backfill.yml"
        config.write_text(f"artifacts_dir: {tmp_path / 'artifacts'}\n", encoding="utf-8")

        def fake_rollback(conn, cfg, path, stats):
            stats.rollback_status = "full"
            return RollbackOutcome(status="full", values_reverted=4, tables_restored=["forms"])

        monkeypatch.setattr(cli, "run_rollback", fake_rollback)
        result = _invoke([
            "--mode", "rollback", "--db-dsn", "postgresql://x",
            "--config-path", str(config), "--snapshot-path", str(snapshot),
        ])
        assert result.exit_code == 0, result.output
        assert "Rolled back 4 values (full)" in result.output
