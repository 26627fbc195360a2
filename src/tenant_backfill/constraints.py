"""tenant_backfill.constraints

Foreign-key suspension and restoration around the backfill.

Responsibilities:
  - Discover every FK whose constrained OR referenced table is affected
  - Drop them idempotently (DROP CONSTRAINT IF EXISTS); a failed drop is fatal
  - Restore them afterwards: verbatim from pg_get_constraintdef, or, when both
    sides are now distributed on tenant_code, as a tenant-aware composite
    constraint from a static mapping; otherwise skip and record the skip

Every constraint that is not recreated is recorded under
constraint_restore_skipped in the run statistics.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import psycopg
from psycopg import sql

from tenant_backfill.shared import ConstraintError, RunStatistics

if TYPE_CHECKING:
    from tenant_backfill.distribution import DistributionController

log = logging.getLogger(__name__)

PARTITION_KEY = "tenant_code"

# (table, columns) -> (referenced_table, referenced_columns) for FKs that have
# a tenant-aware equivalent once both sides are distributed on tenant_code.
TENANT_AWARE_FOREIGN_KEYS: dict[tuple[str, tuple[str, ...]], tuple[str, tuple[str, ...]]] = {
    ("entities", ("entity_type_id",)): ("entity_types", ("id",)),
    ("session_attendees", ("session_id",)): ("sessions", ("id",)),
    ("post_session_details", ("session_id",)): ("sessions", ("id",)),
    ("resources", ("session_id",)): ("sessions", ("id",)),
}

_DISCOVER_SQL = """
SELECT
    con.conname,
    src.relname,
    ARRAY(
        SELECT a.attname
        FROM unnest(con.conkey) WITH ORDINALITY AS k(attnum, ord)
        JOIN pg_attribute a ON a.attrelid = con.conrelid AND a.attnum = k.attnum
        ORDER BY k.ord
    ) AS columns,
    tgt.relname,
    ARRAY(
        SELECT a.attname
        FROM unnest(con.confkey) WITH ORDINALITY AS k(attnum, ord)
        JOIN pg_attribute a ON a.attrelid = con.confrelid AND a.attnum = k.attnum
        ORDER BY k.ord
    ) AS referenced_columns,
    pg_get_constraintdef(con.oid)
FROM pg_constraint con
JOIN pg_class src ON src.oid = con.conrelid
JOIN pg_namespace ns ON ns.oid = src.relnamespace
JOIN pg_class tgt ON tgt.oid = con.confrelid
WHERE con.contype = 'f'
  AND ns.nspname = %s
  AND (src.relname = ANY(%s) OR tgt.relname = ANY(%s))
ORDER BY src.relname, con.conname
"""


@dataclass(frozen=True)
class ConstraintDescriptor:
    table: str
    constraint_name: str
    columns: tuple[str, ...]
    referenced_table: str
    referenced_columns: tuple[str, ...]
    definition: str
    schema: str = "public"

    @property
    def key(self) -> tuple[str, str]:
        return (self.table, self.constraint_name)

    @property
    def includes_partition_key(self) -> bool:
        return PARTITION_KEY in self.columns

    @property
    def tenant_aware_name(self) -> str:
        return f"{self.constraint_name}_tenant_aware"


@dataclass
class RestoreResult:
    restored: list[str] = field(default_factory=list)
    adapted: list[str] = field(default_factory=list)
    already_present: list[str] = field(default_factory=list)
    skipped: list[dict[str, str]] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.skipped


class ForeignKeySuspensionManager:
    """Drop FKs touching the affected tables and put them back afterwards."""

    def __init__(
        self,
        conn: psycopg.Connection,
        stats: RunStatistics,
        schema: str = "public",
        distribution: DistributionController | None = None,
    ) -> None:
        self.conn = conn
        self.stats = stats
        self.schema = schema
        self.distribution = distribution
        self.suspended: list[ConstraintDescriptor] = []

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def discover(self, tables: Iterable[str]) -> list[ConstraintDescriptor]:
        names = sorted(set(tables))
        rows = self.conn.execute(_DISCOVER_SQL, (self.schema, names, names)).fetchall()
        return [
            ConstraintDescriptor(
                table=r[1],
                constraint_name=r[0],
                columns=tuple(r[2]),
                referenced_table=r[3],
                referenced_columns=tuple(r[4]),
                definition=r[5],
                schema=self.schema,
            )
            for r in rows
        ]

    def constraint_exists(self, table: str, name: str) -> bool:
        row = self.conn.execute(
            """
            SELECT 1
            FROM pg_constraint con
            JOIN pg_class rel ON rel.oid = con.conrelid
            JOIN pg_namespace ns ON ns.oid = rel.relnamespace
            WHERE ns.nspname = %s AND rel.relname = %s AND con.conname = %s
            """,
            (self.schema, table, name),
        ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Suspend
    # ------------------------------------------------------------------

    def suspend(self, tables: Iterable[str]) -> list[ConstraintDescriptor]:
        """Drop every FK touching ``tables``; return the dropped descriptors.

        Raises:
            ConstraintError: If any constraint cannot be dropped.
        """
        found = self.discover(tables)
        dropped: list[ConstraintDescriptor] = []
        for c in found:
            try:
                self.conn.execute(
                    sql.SQL("ALTER TABLE IF EXISTS {} DROP CONSTRAINT IF EXISTS {}").format(
                        sql.Identifier(self.schema, c.table),
                        sql.Identifier(c.constraint_name),
                    )
                )
            except psycopg.Error as exc:
                raise ConstraintError(
                    f"Could not drop constraint {c.constraint_name} on {c.table}: {exc}"
                ) from exc
            log.info("Dropped constraint %s on %s", c.constraint_name, c.table)
            dropped.append(c)
            self._remember(c)
        return dropped

    def _remember(self, c: ConstraintDescriptor) -> None:
        if c.key not in {s.key for s in self.suspended}:
            self.suspended.append(c)
            self.stats.constraints_dropped.append(f"{c.table}.{c.constraint_name}")

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def _both_distributed(self, c: ConstraintDescriptor) -> bool:
        if self.distribution is None or not self.distribution.is_distribution_active():
            return False
        return self.distribution.is_distributed(c.table) and self.distribution.is_distributed(
            c.referenced_table
        )

    def requires_partition_key(self, c: ConstraintDescriptor) -> bool:
        return not c.includes_partition_key and self._both_distributed(c)

    def restore(self, descriptors: Sequence[ConstraintDescriptor] | None = None) -> RestoreResult:
        """Recreate ``descriptors`` (default: everything suspended so far).

        Failures never raise; each is recorded as a skipped constraint.
        """
        if descriptors is None:
            descriptors = list(self.suspended)
        result = RestoreResult()
        for c in descriptors:
            label = f"{c.table}.{c.constraint_name}"
            if self.constraint_exists(c.table, c.constraint_name):
                result.already_present.append(label)
                self._forget(c)
                continue
            if self.requires_partition_key(c):
                self._restore_tenant_aware(c, result)
            else:
                self._restore_verbatim(c, result)
        return result

    def _restore_verbatim(self, c: ConstraintDescriptor, result: RestoreResult) -> None:
        label = f"{c.table}.{c.constraint_name}"
        try:
            self.conn.execute(
                sql.SQL("ALTER TABLE {} ADD CONSTRAINT {} {}").format(
                    sql.Identifier(self.schema, c.table),
                    sql.Identifier(c.constraint_name),
                    sql.SQL(c.definition),
                )
            )
        except psycopg.Error as exc:
            self._skip(c, result, f"restore failed: {exc}")
            return
        log.info("Restored constraint %s", label)
        result.restored.append(label)
        self.stats.constraints_restored.append(label)
        self._forget(c)

    def _restore_tenant_aware(self, c: ConstraintDescriptor, result: RestoreResult) -> None:
        mapping = TENANT_AWARE_FOREIGN_KEYS.get((c.table, c.columns))
        if mapping is None or mapping != (c.referenced_table, c.referenced_columns):
            self._skip(c, result, "incompatible with tenant_code distribution; no tenant-aware mapping")
            return

        name = c.tenant_aware_name
        label = f"{c.table}.{name}"
        if self.constraint_exists(c.table, name):
            result.already_present.append(label)
            self._forget(c)
            return

        columns = [*c.columns, PARTITION_KEY]
        ref_columns = [*c.referenced_columns, PARTITION_KEY]
        try:
            self.conn.execute(
                sql.SQL(
                    "ALTER TABLE {table} ADD CONSTRAINT {name} FOREIGN KEY ({cols}) "
                    "REFERENCES {ref} ({ref_cols})"
                ).format(
                    table=sql.Identifier(self.schema, c.table),
                    name=sql.Identifier(name),
                    cols=sql.SQL(", ").join(sql.Identifier(col) for col in columns),
                    ref=sql.Identifier(self.schema, c.referenced_table),
                    ref_cols=sql.SQL(", ").join(sql.Identifier(col) for col in ref_columns),
                )
            )
        except psycopg.Error as exc:
            self._skip(c, result, f"tenant-aware restore failed: {exc}")
            return
        log.info("Adapted constraint %s -> %s", c.constraint_name, name)
        result.adapted.append(label)
        self.stats.constraints_adapted.append(f"{c.table}.{c.constraint_name} -> {name}")
        self._forget(c)

    def _skip(self, c: ConstraintDescriptor, result: RestoreResult, reason: str) -> None:
        entry = {
            "table": c.table,
            "constraint_name": c.constraint_name,
            "columns": ", ".join(c.columns),
            "referenced_table": c.referenced_table,
            "referenced_columns": ", ".join(c.referenced_columns),
            "definition": c.definition,
            "reason": reason,
        }
        log.warning("Constraint %s on %s not restored: %s", c.constraint_name, c.table, reason)
        result.skipped.append(entry)
        self.stats.constraint_restore_skipped.append(entry)

    def _forget(self, c: ConstraintDescriptor) -> None:
        self.suspended = [s for s in self.suspended if s.key != c.key]
