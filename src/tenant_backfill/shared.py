"""tenant_backfill.shared

Shared utilities used by every backfill mode.
Includes the error taxonomy, the RunStatistics accumulator, common DB
helpers, and report / anomaly-log writing support.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import psycopg


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class BackfillError(Exception):
    """Base class for every error raised by the backfill engine."""


class ConfigurationError(BackfillError):
    """Missing default codes, connection parameters, or an unusable mapping file."""


class RegistryError(BackfillError):
    """The table descriptor catalog is inconsistent (ordering, targets, upstreams)."""


class CoverageError(BackfillError):
    """The mapping file does not cover every organization id in the database."""

    def __init__(self, missing_ids: list[str]) -> None:
        self.missing_ids = list(missing_ids)
        super().__init__(
            f"Mapping file is missing {len(self.missing_ids)} organization id(s) "
            f"present in the source-of-truth table: {', '.join(self.missing_ids)}"
        )


class ConstraintError(BackfillError):
    """A foreign-key constraint could not be dropped (fatal) or restored."""


class DistributionError(BackfillError):
    """A distributed table could not be undistributed before mutation."""


class DataIntegrityError(BackfillError):
    """Rows carry a null join key that is not the system sentinel."""


class ValidationFailure(BackfillError):
    """Residual null / inconsistent tenant columns remain after all phases."""


# ---------------------------------------------------------------------------
# RunStatistics
# ---------------------------------------------------------------------------

ANOMALY_CATEGORIES = (
    "missing_mapping",
    "system_rows_fixed",
    "orphaned_references_fixed",
    "null_key_errors",
    "ambiguous_upstream",
    "constraint_restore_skipped",
    "validation_errors",
)


@dataclass
class RunStatistics:
    # Row counters
    rows_updated_by_phase: dict[str, int] = field(default_factory=dict)
    rows_updated_by_table: dict[str, int] = field(default_factory=dict)
    rows_defaulted: int = 0
    tables_processed: int = 0
    tables_skipped: list[str] = field(default_factory=list)
    # Mapping cache
    mapping_rows_loaded: int = 0
    mapping_rows_filtered: int = 0
    mapping_rows_incomplete: int = 0
    # Constraints
    constraints_dropped: list[str] = field(default_factory=list)
    constraints_restored: list[str] = field(default_factory=list)
    constraints_adapted: list[str] = field(default_factory=list)
    # Distribution
    tables_undistributed: list[str] = field(default_factory=list)
    tables_redistributed: list[str] = field(default_factory=list)
    # Anomalies
    missing_mapping: list[dict[str, Any]] = field(default_factory=list)
    system_rows_fixed: list[dict[str, Any]] = field(default_factory=list)
    orphaned_references_fixed: list[dict[str, Any]] = field(default_factory=list)
    null_key_errors: list[dict[str, Any]] = field(default_factory=list)
    ambiguous_upstream: list[dict[str, Any]] = field(default_factory=list)
    constraint_restore_skipped: list[dict[str, Any]] = field(default_factory=list)
    validation_errors: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    # Outcome
    outcome: str = "pending"
    error: str | None = None
    rollback_status: str | None = None
    rollback_failed_tables: list[str] = field(default_factory=list)

    def add_rows(self, phase: str, table: str, count: int) -> None:
        if count <= 0:
            return
        self.rows_updated_by_phase[phase] = self.rows_updated_by_phase.get(phase, 0) + count
        self.rows_updated_by_table[table] = self.rows_updated_by_table.get(table, 0) + count

    @property
    def total_rows_updated(self) -> int:
        return sum(self.rows_updated_by_table.values())

    @property
    def tables_left_undistributed(self) -> list[str]:
        redistributed = set(self.tables_redistributed)
        return [t for t in self.tables_undistributed if t not in redistributed]

    def anomaly_count(self) -> int:
        return sum(len(getattr(self, name)) for name in ANOMALY_CATEGORIES)

    def anomalies(self) -> dict[str, list[dict[str, Any]]]:
        return {name: list(getattr(self, name)) for name in ANOMALY_CATEGORIES}

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome,
            "error": self.error,
            "rows_updated_total": self.total_rows_updated,
            "rows_updated_by_phase": self.rows_updated_by_phase,
            "rows_updated_by_table": self.rows_updated_by_table,
            "rows_defaulted": self.rows_defaulted,
            "tables_processed": self.tables_processed,
            "tables_skipped": self.tables_skipped,
            "mapping_rows_loaded": self.mapping_rows_loaded,
            "mapping_rows_filtered": self.mapping_rows_filtered,
            "mapping_rows_incomplete": self.mapping_rows_incomplete,
            "constraints_dropped": len(self.constraints_dropped),
            "constraints_restored": len(self.constraints_restored),
            "constraints_adapted": self.constraints_adapted,
            "tables_undistributed": self.tables_undistributed,
            "tables_redistributed": self.tables_redistributed,
            "tables_left_undistributed": self.tables_left_undistributed,
            "rollback_status": self.rollback_status,
            "rollback_failed_tables": self.rollback_failed_tables,
            "anomaly_counts": {
                name: len(getattr(self, name)) for name in ANOMALY_CATEGORIES
            },
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# DB helpers
# ---------------------------------------------------------------------------

def table_exists(conn: psycopg.Connection, schema: str, table: str) -> bool:
    row = conn.execute(
        """
        SELECT 1 FROM information_schema.tables
        WHERE table_schema = %s AND table_name = %s
        """,
        (schema, table),
    ).fetchone()
    return row is not None


def table_columns(conn: psycopg.Connection, schema: str, table: str) -> set[str]:
    """Return the column names of ``schema.table`` (empty set when absent)."""
    rows = conn.execute(
        """
        SELECT column_name FROM information_schema.columns
        WHERE table_schema = %s AND table_name = %s
        """,
        (schema, table),
    ).fetchall()
    return {r[0] for r in rows}


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, Any],
    counters: RunStatistics,
    artifacts_dir: str | Path = "./artifacts",
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": _utcnow(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = Path(artifacts_dir) / "reports" / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path


def write_anomaly_log(
    run_id: str,
    stats: RunStatistics,
    artifacts_dir: str | Path = "./artifacts",
) -> Path:
    """Write every recorded anomaly to a machine-readable JSON artifact.

    Written on completion whatever the outcome, so operators can review
    orphans, missing mappings and skipped constraints before re-running.
    """
    payload = {
        "run_id": run_id,
        "written_at": _utcnow(),
        "outcome": stats.outcome,
        "error": stats.error,
        "rollback_status": stats.rollback_status,
        "tables_left_undistributed": stats.tables_left_undistributed,
        "anomalies": stats.anomalies(),
    }
    log_path = Path(artifacts_dir) / "anomalies" / f"{run_id}.json"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    log_path.write_text(json.dumps(payload, indent=2, default=str))
    return log_path


def build_backfill_report(stats: RunStatistics, dry_run: bool = False) -> str:
    lines = [
        "=" * 60,
        "Tenant Attribution Backfill Report",
        f"  dry_run: {dry_run}",
        f"  outcome: {stats.outcome}",
        "=" * 60,
        f"  tables processed:            {stats.tables_processed}",
        f"  rows updated (total):        {stats.total_rows_updated}",
    ]
    for phase, count in sorted(stats.rows_updated_by_phase.items()):
        lines.append(f"    {phase:<27}{count}")
    lines += [
        f"  rows defaulted:              {stats.rows_defaulted}",
        f"  constraints dropped:         {len(stats.constraints_dropped)}",
        f"  constraints restored:        {len(stats.constraints_restored)}",
        f"  constraints adapted:         {len(stats.constraints_adapted)}",
        f"  constraints skipped:         {len(stats.constraint_restore_skipped)}",
        f"  tables undistributed:        {len(stats.tables_undistributed)}",
        f"  tables redistributed:        {len(stats.tables_redistributed)}",
        "Anomalies:",
    ]
    for name in ANOMALY_CATEGORIES:
        lines.append(f"  {name:<29}{len(getattr(stats, name))}")
    for entry in stats.missing_mapping[:20]:
        lines.append(
            f"  missing mapping for {entry['key_column']} {entry['key_value']} "
            f"in {entry['table']}, {entry['rows']} rows"
        )
    if stats.tables_left_undistributed:
        lines.append(
            "Tables left undistributed (manual redistribution required): "
            + ", ".join(stats.tables_left_undistributed)
        )
    if stats.rollback_status:
        lines.append(f"Rollback: {stats.rollback_status}")
        if stats.rollback_status != "full":
            lines.append("  MANUAL INTERVENTION REQUIRED")
            for t in stats.rollback_failed_tables:
                lines.append(f"  failed to revert: {t}")
    if stats.error:
        lines.append(f"Error: {stats.error}")
    if stats.warnings:
        lines.append(f"\nWarnings ({len(stats.warnings)}):")
        for w in stats.warnings[:20]:
            lines.append(f"  {w}")
        if len(stats.warnings) > 20:
            lines.append(f"  ... and {len(stats.warnings) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
