"""tenant_backfill.cli

Unified CLI entrypoint for the tenant attribution backfill.

Modes (--mode):
  backfill         - resolve and write tenant_code / organization_code (default)
  preflight_check  - read-only join-key integrity check; run before backfill
  validate         - read-only residual-null validation
  rollback         - replay a persisted snapshot after an aborted run

Exit code 0 on full success, 1 on any unrecovered failure.

Usage (backfill):
    tenant-backfill \\
        --mode backfill \\
        --db-dsn "$DATABASE_URL" \\
        --mapping-path "data/tenant_mapping.csv" \\
        --default-tenant-code "default" \\
        --default-organization-code "default_code"

Usage (rollback):
    tenant-backfill --mode rollback --db-dsn "$DATABASE_URL" \\
        --snapshot-path "artifacts/snapshots/<run_id>.json"
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import psycopg

from tenant_backfill.config import BackfillConfig, load_config, validate_config
from tenant_backfill.lookup_cache import fetch_source_of_truth_org_ids, load_lookup_cache
from tenant_backfill.orchestrator import BackfillResult, run_backfill, run_rollback
from tenant_backfill.preflight import (
    build_preflight_report,
    run_preflight_check,
    write_preflight_log,
)
from tenant_backfill.registry import CATALOG, dependency_order
from tenant_backfill.shared import (
    BackfillError,
    ConfigurationError,
    RunStatistics,
    build_backfill_report,
    table_exists,
    write_anomaly_log,
    write_run_report,
)
from tenant_backfill.validator import build_validation_report, validate

log = logging.getLogger(__name__)


@click.command()
@click.option(
    "--mode",
    default="backfill",
    show_default=True,
    type=click.Choice(["backfill", "preflight_check", "validate", "rollback"]),
)
@click.option("--db-dsn", default=None, help="PostgreSQL DSN (falls back to DATABASE_URL)")
@click.option("--config-path", default=None, type=click.Path(), help="YAML config file")
@click.option("--mapping-path", default=None, type=click.Path(), help="[backfill|preflight_check] Organization -> tenant mapping CSV")
@click.option("--default-tenant-code", default=None, help="[backfill] Fallback tenant code (or DEFAULT_TENANT_CODE)")
@click.option("--default-organization-code", default=None, help="[backfill] Fallback organization code (or DEFAULT_ORGANIZATION_CODE)")
@click.option("--batch-size", default=None, type=int, help="Key values per update transaction [default: 5000]")
@click.option("--schema", default=None, help="Schema holding the tables [default: public]")
@click.option("--snapshot-path", default=None, type=click.Path(), help="[backfill|rollback] Snapshot JSON file")
@click.option(
    "--create-indexes/--no-create-indexes",
    default=None,
    help="[backfill] Create tenant-leading indexes after a successful run",
)
@click.option("--dry-run", is_flag=True, default=False)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    show_default=True,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
)
def main(
    mode: str,
    db_dsn: str | None,
    config_path: str | None,
    mapping_path: str | None,
    default_tenant_code: str | None,
    default_organization_code: str | None,
    batch_size: int | None,
    schema: str | None,
    snapshot_path: str | None,
    create_indexes: bool | None,
    dry_run: bool,
    run_id: str | None,
    log_level: str,
) -> None:
    """Tenant attribution backfill CLI."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    try:
        config = load_config(
            Path(config_path) if config_path else None,
            overrides={
                "db_dsn": db_dsn,
                "mapping_path": mapping_path,
                "default_tenant_code": default_tenant_code,
                "default_organization_code": default_organization_code,
                "batch_size": batch_size,
                "schema": schema,
                "create_indexes": create_indexes,
            },
        )
        if mode == "backfill":
            validate_config(config)
        else:
            validate_config(config, require_defaults=False, require_mapping=False)
    except ConfigurationError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    if mode == "backfill":
        _run_backfill_mode(config, run_id, started_at, dry_run, snapshot_path)
    elif mode == "preflight_check":
        _run_preflight_mode(config, run_id)
    elif mode == "validate":
        _run_validate_mode(config, run_id)
    elif mode == "rollback":
        _validate_rollback_flags(snapshot_path, run_id)
        _run_rollback_mode(config, run_id, started_at, Path(snapshot_path))


def _connect(config: BackfillConfig, run_id: str) -> psycopg.Connection:
    try:
        return psycopg.connect(config.db_dsn, autocommit=True)
    except psycopg.Error as exc:
        click.echo(f"[{run_id}] FATAL: cannot connect to database: {exc}", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# backfill
# ---------------------------------------------------------------------------

def _run_backfill_mode(
    config: BackfillConfig,
    run_id: str,
    started_at: str,
    dry_run: bool,
    snapshot_path: str | None,
) -> None:
    stats = RunStatistics()
    result: BackfillResult | None = None
    conn = _connect(config, run_id)
    try:
        result = run_backfill(
            conn, config, run_id,
            dry_run=dry_run,
            stats=stats,
            snapshot_path=Path(snapshot_path) if snapshot_path else None,
        )
    except BackfillError as exc:
        stats.outcome = "preflight_failed"
        stats.error = f"{type(exc).__name__}: {exc}"
        click.echo(f"[{run_id}] PRE-FLIGHT FAILED (no data modified): {exc}", err=True)
    except Exception as exc:
        log.exception("Backfill aborted")
        stats.outcome = "failed"
        stats.error = f"{type(exc).__name__}: {exc}"
        click.echo(f"[{run_id}] FATAL: {stats.error}", err=True)
    finally:
        conn.close()

    click.echo(build_backfill_report(stats, dry_run=dry_run))
    if result is not None:
        if result.dry_run and result.pending_rows:
            click.echo(f"[{run_id}] Pending rows per table:")
            for table, count in result.pending_rows.items():
                click.echo(f"  {table}: {count}")
            click.echo(f"[{run_id}] Constraints to suspend: {len(result.planned_constraints)}")
        if result.validation is not None and not result.validation.passed:
            click.echo(build_validation_report(result.validation))

    anomaly_path = write_anomaly_log(run_id, stats, config.artifacts_dir)
    report_path = write_run_report(
        run_id, started_at, "backfill", dry_run,
        {
            "mapping_path": config.mapping_path,
            "snapshot_path": str(result.snapshot_path) if result and result.snapshot_path else None,
        },
        stats,
        config.artifacts_dir,
    )
    click.echo(f"[{run_id}] Anomaly log: {anomaly_path}")
    click.echo(f"[{run_id}] Run report: {report_path}")

    if result is None or not result.success:
        if result is not None and result.rollback is not None:
            if result.rollback.manual_intervention_required:
                click.echo(
                    f"[{run_id}] ROLLBACK {result.rollback.status.upper()}: "
                    f"manual intervention required; snapshot kept at {result.snapshot_path}",
                    err=True,
                )
            else:
                click.echo(f"[{run_id}] Changes rolled back ({result.rollback.status}).", err=True)
        sys.exit(1)
    if result.nothing_to_do:
        click.echo(f"[{run_id}] Nothing to do.")
    elif dry_run:
        click.echo(f"[{run_id}] DRY RUN: no changes made.")
    else:
        click.echo(f"[{run_id}] Backfill complete.")


# ---------------------------------------------------------------------------
# preflight_check / validate
# ---------------------------------------------------------------------------

def _run_preflight_mode(config: BackfillConfig, run_id: str) -> None:
    conn = _connect(config, run_id)
    try:
        cache = None
        if config.mapping_path:
            sot_present = table_exists(conn, config.schema, config.source_of_truth_table)
            required = fetch_source_of_truth_org_ids(
                conn, config.schema, config.source_of_truth_table
            )
            cache = load_lookup_cache(
                Path(config.mapping_path),
                valid_org_ids=required if sot_present else None,
                delimiter=config.mapping_delimiter,
            )
        result = run_preflight_check(
            conn, dependency_order(CATALOG), config.schema,
            config.source_of_truth_table, cache,
        )
    except ConfigurationError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)
    finally:
        conn.close()

    click.echo(build_preflight_report(result))
    log_path = write_preflight_log(run_id, result, config.artifacts_dir)
    click.echo(f"[{run_id}] Pre-flight log: {log_path}")
    if not result.passed:
        click.echo(f"[{run_id}] Pre-flight check found {len(result.issues)} issues.", err=True)
        sys.exit(1)


def _run_validate_mode(config: BackfillConfig, run_id: str) -> None:
    conn = _connect(config, run_id)
    try:
        report = validate(conn, dependency_order(CATALOG), config.schema)
    finally:
        conn.close()
    click.echo(build_validation_report(report))
    if not report.passed:
        sys.exit(1)


# ---------------------------------------------------------------------------
# rollback
# ---------------------------------------------------------------------------

def _validate_rollback_flags(snapshot_path: str | None, run_id: str) -> None:
    if not snapshot_path:
        click.echo(f"[{run_id}] FATAL: rollback mode requires: --snapshot-path", err=True)
        sys.exit(1)
    if not Path(snapshot_path).exists():
        click.echo(f"[{run_id}] FATAL: --snapshot-path not found: {snapshot_path}", err=True)
        sys.exit(1)


def _run_rollback_mode(
    config: BackfillConfig,
    run_id: str,
    started_at: str,
    snapshot_path: Path,
) -> None:
    stats = RunStatistics()
    conn = _connect(config, run_id)
    try:
        outcome = run_rollback(conn, config, snapshot_path, stats)
    finally:
        conn.close()

    click.echo(build_backfill_report(stats))
    click.echo(f"[{run_id}] Rolled back {outcome.values_reverted} values ({outcome.status})")
    report_path = write_run_report(
        run_id, started_at, "rollback", False,
        {"snapshot_path": str(snapshot_path)}, stats, config.artifacts_dir,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    if outcome.manual_intervention_required:
        for table, error in outcome.tables_failed.items():
            click.echo(f"[{run_id}] failed to revert {table}: {error}", err=True)
        click.echo(f"[{run_id}] MANUAL INTERVENTION REQUIRED", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
