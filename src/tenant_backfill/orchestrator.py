"""tenant_backfill.orchestrator

Sequences one backfill run:

    config + catalog checks -> mapping cache -> coverage gate
    -> pending-row check -> snapshot -> suspend constraints
    -> resolution phases -> redistribute -> validate -> restore constraints

Configuration, catalog, coverage and snapshot-coverage errors propagate
before anything is written. Once the snapshot exists, any failure triggers the compensating
rollback followed by a best-effort constraint restore, and the outcome is
returned rather than raised so the caller can always report it.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import psycopg

from tenant_backfill.config import BackfillConfig, validate_config
from tenant_backfill.constraints import ForeignKeySuspensionManager, RestoreResult
from tenant_backfill.distribution import DistributionController
from tenant_backfill.indexes import create_tenant_indexes
from tenant_backfill.lookup_cache import (
    fetch_source_of_truth_org_ids,
    load_lookup_cache,
    validate_coverage,
)
from tenant_backfill.registry import (
    CATALOG,
    TableDescriptor,
    dependency_order,
    validate_catalog,
)
from tenant_backfill.resolution import ResolutionExecutor
from tenant_backfill.shared import (
    DataIntegrityError,
    RunStatistics,
    ValidationFailure,
    table_exists,
)
from tenant_backfill.snapshot import RollbackOutcome, SnapshotManager
from tenant_backfill.validator import ValidationReport, validate

log = logging.getLogger(__name__)


@dataclass
class BackfillResult:
    run_id: str
    stats: RunStatistics
    success: bool = False
    dry_run: bool = False
    nothing_to_do: bool = False
    pending_rows: dict[str, int] = field(default_factory=dict)
    planned_constraints: list[str] = field(default_factory=list)
    validation: ValidationReport | None = None
    rollback: RollbackOutcome | None = None
    restore: RestoreResult | None = None
    snapshot_path: Path | None = None
    error: str | None = None


def default_snapshot_path(config: BackfillConfig, run_id: str) -> Path:
    return Path(config.artifacts_dir) / "snapshots" / f"{run_id}.json"


def run_backfill(
    conn: psycopg.Connection,
    config: BackfillConfig,
    run_id: str,
    descriptors: Sequence[TableDescriptor] = CATALOG,
    dry_run: bool = False,
    stats: RunStatistics | None = None,
    snapshot_path: Path | None = None,
) -> BackfillResult:
    """Backfill tenant_code / organization_code across ``descriptors``.

    Args:
        conn: Open psycopg connection in autocommit mode; the engine opens
            its own row-batch transactions and issues DDL between them.
        config: Validated run configuration.
        run_id: Identifier used for artifact names.
        descriptors: Table catalog; defaults to the built-in CATALOG.
        dry_run: Stop after the read-only planning steps.
        stats: Accumulator to fill; a new one is created when omitted.
        snapshot_path: Where to persist the snapshot.

    Returns:
        BackfillResult; ``success`` is True only when validation passed.

    Raises:
        ConfigurationError, RegistryError, CoverageError: Before any mutation.
        DataIntegrityError: Before any mutation, when a table with pending
            rows has no row id column to snapshot.
    """
    stats = stats if stats is not None else RunStatistics()
    result = BackfillResult(run_id=run_id, stats=stats, dry_run=dry_run)

    validate_config(config)
    validate_catalog(descriptors)
    ordered = dependency_order(descriptors)
    table_names = [d.name for d in ordered]

    distribution = DistributionController(conn, stats, config.schema)
    constraints = ForeignKeySuspensionManager(conn, stats, config.schema, distribution)
    distribution.constraints = constraints

    # -- mapping cache + coverage gate ----------------------------------
    sot_present = table_exists(conn, config.schema, config.source_of_truth_table)
    required = fetch_source_of_truth_org_ids(conn, config.schema, config.source_of_truth_table)
    cache = load_lookup_cache(
        Path(config.mapping_path),
        valid_org_ids=required if sot_present else None,
        delimiter=config.mapping_delimiter,
    )
    stats.mapping_rows_loaded = len(cache)
    stats.mapping_rows_filtered = cache.rows_filtered
    stats.mapping_rows_incomplete = cache.rows_incomplete
    validate_coverage(cache, required)
    log.info("Coverage check passed: %d organizations mapped", len(required))

    # -- anything to do? ------------------------------------------------
    pending = validate(conn, ordered, config.schema)
    result.pending_rows = {t.table: t.offending_rows for t in pending.tables if t.offending_rows}
    if pending.passed:
        log.info("No rows need tenant attribution; nothing to do")
        stats.outcome = "nothing_to_do"
        result.nothing_to_do = True
        result.success = True
        return result

    if dry_run:
        result.planned_constraints = [
            f"{c.table}.{c.constraint_name}" for c in constraints.discover(table_names)
        ]
        log.info(
            "Dry run: %d tables pending, %d constraints would be suspended",
            len(result.pending_rows), len(result.planned_constraints),
        )
        stats.outcome = "dry_run"
        result.success = True
        return result

    # -- mutation window ------------------------------------------------
    snapshots = SnapshotManager(conn, stats, config.schema, config.batch_size, distribution)
    snapshots.capture(ordered)
    if snapshots.uncovered:
        raise DataIntegrityError(
            "Cannot snapshot tables with rows pending: "
            + "; ".join(f"{t} ({reason})" for t, reason in sorted(snapshots.uncovered.items()))
        )
    result.snapshot_path = snapshots.persist(snapshot_path or default_snapshot_path(config, run_id))

    try:
        constraints.suspend(table_names)
        ResolutionExecutor(conn, cache, config, stats, distribution).run(ordered)
        distribution.redistribute_all(ordered)

        result.validation = validate(conn, ordered, config.schema)
        if not result.validation.passed:
            stats.validation_errors.extend(t.to_dict() for t in result.validation.failures)
            raise ValidationFailure(
                f"{result.validation.total_offending_rows} rows in "
                f"{len(result.validation.failures)} tables still lack tenant attribution"
            )
        result.restore = constraints.restore()
    except Exception as exc:
        _compensate(result, snapshots, constraints, exc)
        return result

    snapshots.discard(result.snapshot_path)
    if config.create_indexes:
        create_tenant_indexes(conn, stats, config.schema)
    stats.outcome = "success"
    result.success = True
    log.info("Backfill %s succeeded: %d rows updated", run_id, stats.total_rows_updated)
    return result


def _compensate(
    result: BackfillResult,
    snapshots: SnapshotManager,
    constraints: ForeignKeySuspensionManager,
    exc: BaseException,
) -> None:
    stats = result.stats
    log.error("Backfill failed, rolling back: %s", exc)
    result.error = stats.error = f"{type(exc).__name__}: {exc}"
    result.rollback = snapshots.rollback()
    result.restore = constraints.restore()
    if result.rollback.manual_intervention_required:
        stats.outcome = "rollback_failed"
    else:
        stats.outcome = "rolled_back"
    if stats.tables_left_undistributed:
        log.error(
            "Tables left undistributed, redistribute manually: %s",
            ", ".join(stats.tables_left_undistributed),
        )


def run_rollback(
    conn: psycopg.Connection,
    config: BackfillConfig,
    snapshot_path: Path,
    stats: RunStatistics | None = None,
) -> RollbackOutcome:
    """Replay a persisted snapshot, e.g. after a run died mid-flight."""
    stats = stats if stats is not None else RunStatistics()
    distribution = DistributionController(conn, stats, config.schema)
    snapshots = SnapshotManager(conn, stats, config.schema, config.batch_size, distribution)
    count = snapshots.load(snapshot_path)
    log.info("Loaded snapshot %s with %d rows", snapshot_path, count)
    outcome = snapshots.rollback()
    stats.outcome = "rollback_failed" if outcome.manual_intervention_required else "rolled_back"
    return outcome
