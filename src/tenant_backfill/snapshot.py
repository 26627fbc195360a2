"""tenant_backfill.snapshot

Pre-mutation snapshot of empty tenant columns and the compensating rollback.

Constraint and distribution DDL cannot be undone by a database ROLLBACK, so
a failed run is reverted by replaying the snapshot: every captured column
that was NULL/empty before the run is set back to exactly that value. A
column that held a value before the run is never touched. Each table is
reverted in its own transaction and a table that fails to revert does not
stop the others.

The snapshot is persisted to JSON so the rollback mode of the CLI can
replay it after a crash; it is deleted when a run succeeds.
"""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import psycopg
from psycopg import sql

from tenant_backfill.normalize import chunked
from tenant_backfill.registry import TableDescriptor
from tenant_backfill.shared import ConfigurationError, RunStatistics, table_columns
from tenant_backfill.sql_builder import count_rows, missing_any, qualified

if TYPE_CHECKING:
    from tenant_backfill.distribution import DistributionController

log = logging.getLogger(__name__)

SNAPSHOT_COLUMNS = ("tenant_code", "organization_code")


@dataclass(frozen=True)
class SnapshotRecord:
    table: str
    row_id: str
    original_tenant_code: str | None
    original_organization_code: str | None

    def original(self, column: str) -> str | None:
        if column == "tenant_code":
            return self.original_tenant_code
        return self.original_organization_code


@dataclass
class TableSnapshot:
    table: str
    row_id_column: str
    columns: tuple[str, ...]
    records: list[SnapshotRecord] = field(default_factory=list)


@dataclass
class RollbackOutcome:
    status: str = "empty"
    values_reverted: int = 0
    tables_restored: list[str] = field(default_factory=list)
    tables_failed: dict[str, str] = field(default_factory=dict)

    @property
    def manual_intervention_required(self) -> bool:
        return self.status in ("partial", "failed")


class SnapshotManager:
    """Capture, persist, replay and discard the pre-run null state."""

    def __init__(
        self,
        conn: psycopg.Connection,
        stats: RunStatistics,
        schema: str = "public",
        batch_size: int = 5000,
        distribution: DistributionController | None = None,
    ) -> None:
        self.conn = conn
        self.stats = stats
        self.schema = schema
        self.batch_size = batch_size
        self.distribution = distribution
        self.tables: dict[str, TableSnapshot] = {}
        # table -> reason it could not be captured
        self.uncovered: dict[str, str] = {}

    @property
    def record_count(self) -> int:
        return sum(len(t.records) for t in self.tables.values())

    # ------------------------------------------------------------------
    # Capture
    # ------------------------------------------------------------------

    def capture(self, descriptors: Sequence[TableDescriptor]) -> int:
        """Capture every row with an empty tenant column; return the record count.

        Tables with pending rows but no row id column cannot be captured;
        they are listed in ``uncovered`` and reported as failed by rollback.
        """
        self.tables = {}
        self.uncovered = {}
        for d in descriptors:
            columns = table_columns(self.conn, self.schema, d.name)
            targets = tuple(c for c in SNAPSHOT_COLUMNS if c in columns)
            if not targets:
                continue
            if d.row_id_column not in columns:
                pending = self.conn.execute(
                    count_rows(self.schema, d.name, missing_any(targets, alias="t"))
                ).fetchone()[0]
                if pending:
                    reason = f"no {d.row_id_column} column, {pending} rows pending"
                    log.error("Cannot snapshot %s: %s", d.name, reason)
                    self.uncovered[d.name] = reason
                else:
                    log.warning("Cannot snapshot %s: no %s column", d.name, d.row_id_column)
                    self.stats.warnings.append(
                        f"{d.name} not snapshotted (no {d.row_id_column} column); nothing pending"
                    )
                continue

            select_cols = [
                sql.Identifier(c) if c in targets else sql.SQL("NULL")
                for c in SNAPSHOT_COLUMNS
            ]
            rows = self.conn.execute(
                sql.SQL("SELECT {rid}::text, {cols} FROM {table} AS t WHERE {missing}").format(
                    rid=sql.Identifier(d.row_id_column),
                    cols=sql.SQL(", ").join(select_cols),
                    table=qualified(self.schema, d.name),
                    missing=missing_any(targets, alias="t"),
                )
            ).fetchall()
            snap = TableSnapshot(table=d.name, row_id_column=d.row_id_column, columns=targets)
            snap.records = [SnapshotRecord(d.name, r[0], r[1], r[2]) for r in rows]
            self.tables[d.name] = snap
            log.debug("Snapshot %s: %d rows", d.name, len(snap.records))

        log.info("Snapshot captured %d rows across %d tables", self.record_count, len(self.tables))
        return self.record_count

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema": self.schema,
            "captured_at": datetime.now(timezone.utc).isoformat(),
            "tables": {
                name: {
                    "row_id_column": snap.row_id_column,
                    "columns": list(snap.columns),
                    "records": [
                        [r.row_id, r.original_tenant_code, r.original_organization_code]
                        for r in snap.records
                    ],
                }
                for name, snap in self.tables.items()
            },
            "uncovered": dict(self.uncovered),
        }

    def persist(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2))
        log.info("Snapshot written to %s", path)
        return path

    def load(self, path: Path) -> int:
        """Replace the in-memory snapshot with the one persisted at ``path``."""
        if not path.exists():
            raise ConfigurationError(f"Snapshot file not found: {path}")
        data = json.loads(path.read_text(encoding="utf-8"))
        self.tables = {}
        for name, payload in (data.get("tables") or {}).items():
            snap = TableSnapshot(
                table=name,
                row_id_column=payload["row_id_column"],
                columns=tuple(payload["columns"]),
            )
            snap.records = [
                SnapshotRecord(name, str(rec[0]), rec[1], rec[2]) for rec in payload["records"]
            ]
            self.tables[name] = snap
        self.uncovered = dict(data.get("uncovered") or {})
        return self.record_count

    def discard(self, path: Path | None = None) -> None:
        self.tables = {}
        self.uncovered = {}
        if path is not None and path.exists():
            path.unlink()
            log.info("Snapshot %s discarded", path)

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback(self) -> RollbackOutcome:
        """Restore every captured column to its pre-run NULL/empty value."""
        outcome = RollbackOutcome()
        for table, reason in self.uncovered.items():
            outcome.tables_failed[table] = f"not snapshotted: {reason}"
        pending = [snap for snap in self.tables.values() if snap.records]
        for snap in pending:
            try:
                reverted = self._revert_table(snap)
            except psycopg.Error as exc:
                log.error("Rollback of %s failed: %s", snap.table, exc)
                outcome.tables_failed[snap.table] = str(exc)
                continue
            outcome.values_reverted += reverted
            outcome.tables_restored.append(snap.table)
            log.info("Rolled back %s: %d values", snap.table, reverted)

        if not pending and not outcome.tables_failed:
            outcome.status = "empty"
        elif not outcome.tables_failed:
            outcome.status = "full"
        elif outcome.tables_restored:
            outcome.status = "partial"
        else:
            outcome.status = "failed"

        self.stats.rollback_status = outcome.status
        self.stats.rollback_failed_tables = sorted(outcome.tables_failed)
        if outcome.manual_intervention_required:
            log.error(
                "Rollback %s; manual intervention required for: %s",
                outcome.status, ", ".join(sorted(outcome.tables_failed)),
            )
        return outcome

    def _revert_table(self, snap: TableSnapshot) -> int:
        if self.distribution is not None and self.distribution.is_distributed(snap.table):
            self.distribution.undistribute(snap.table)

        # column -> original value (None or '') -> row ids
        plan: dict[str, dict[str | None, list[str]]] = defaultdict(lambda: defaultdict(list))
        for rec in snap.records:
            for col in snap.columns:
                original = rec.original(col)
                if original is None or original == "":
                    plan[col][original].append(rec.row_id)

        reverted = 0
        table = qualified(self.schema, snap.table)
        with self.conn.transaction():
            for col, by_value in plan.items():
                for original, ids in by_value.items():
                    for batch in chunked(ids, self.batch_size):
                        cur = self.conn.execute(
                            sql.SQL(
                                "UPDATE {table} SET {col} = %s "
                                "WHERE {rid}::text = ANY(%s::text[]) AND {col} IS DISTINCT FROM %s"
                            ).format(
                                table=table,
                                col=sql.Identifier(col),
                                rid=sql.Identifier(snap.row_id_column),
                            ),
                            [original, list(batch), original],
                        )
                        reverted += cur.rowcount
        return reverted
