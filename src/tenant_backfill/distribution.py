"""tenant_backfill.distribution

Citus distribution toggling around the tenant_code mutation window.

A distributed table cannot have its distribution column rewritten, so a
table is undistributed before tenant_code is written and redistributed on
tenant_code once every phase has run. When the citus extension is not
installed every operation is a logged no-op returning False.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING

import psycopg

from tenant_backfill.shared import RunStatistics, table_columns

if TYPE_CHECKING:
    from tenant_backfill.constraints import ForeignKeySuspensionManager
    from tenant_backfill.registry import TableDescriptor

log = logging.getLogger(__name__)

PARTITION_KEY = "tenant_code"

# Distribution DDL fails on these while their foreign keys are in place.
FK_SENSITIVE_TABLES = frozenset({"entity_types", "sessions", "permissions"})


class DistributionController:
    """Undistribute / redistribute tables, checking live state before each action."""

    def __init__(
        self,
        conn: psycopg.Connection,
        stats: RunStatistics,
        schema: str = "public",
        constraints: ForeignKeySuspensionManager | None = None,
    ) -> None:
        self.conn = conn
        self.stats = stats
        self.schema = schema
        self.constraints = constraints
        self._active: bool | None = None

    def _regclass(self, table: str) -> str:
        return f"{self.schema}.{table}"

    def is_distribution_active(self) -> bool:
        if self._active is None:
            row = self.conn.execute(
                "SELECT 1 FROM pg_extension WHERE extname = 'citus'"
            ).fetchone()
            self._active = row is not None
            log.info("Citus distribution %s", "active" if self._active else "not installed")
        return self._active

    def is_distributed(self, table: str) -> bool:
        if not self.is_distribution_active():
            return False
        row = self.conn.execute(
            "SELECT 1 FROM pg_dist_partition WHERE logicalrelid = to_regclass(%s)",
            (self._regclass(table),),
        ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Undistribute
    # ------------------------------------------------------------------

    def undistribute(self, table: str) -> bool:
        """Undistribute ``table`` if it is currently distributed.

        Returns True only when undistribute_table actually ran.
        """
        if not self.is_distribution_active():
            log.debug("Skipping undistribute of %s: distribution not active", table)
            return False
        if not self.is_distributed(table):
            log.debug("Skipping undistribute of %s: not distributed", table)
            return False

        dropped = []
        if table in FK_SENSITIVE_TABLES and self.constraints is not None:
            dropped = self.constraints.suspend([table])

        try:
            self.conn.execute("SELECT undistribute_table(%s::regclass)", (self._regclass(table),))
        except psycopg.Error as exc:
            log.error("undistribute_table(%s) failed: %s", table, exc)
            self.stats.warnings.append(f"undistribute {table} failed: {exc}")
            if dropped and self.constraints is not None:
                self.constraints.restore(dropped)
            return False

        log.info("Undistributed %s", table)
        self.stats.tables_undistributed.append(table)
        return True

    # ------------------------------------------------------------------
    # Redistribute
    # ------------------------------------------------------------------

    def redistribute(self, table: str, partition_key: str = PARTITION_KEY) -> bool:
        """Distribute ``table`` on ``partition_key`` unless already distributed."""
        if not self.is_distribution_active():
            log.debug("Skipping redistribute of %s: distribution not active", table)
            return False
        if self.is_distributed(table):
            log.debug("Skipping redistribute of %s: already distributed", table)
            return False
        columns = table_columns(self.conn, self.schema, table)
        if not columns:
            log.warning("Skipping redistribute of %s: table not found", table)
            return False
        if partition_key not in columns:
            log.warning("Skipping redistribute of %s: no %s column", table, partition_key)
            return False

        try:
            self.conn.execute(
                "SELECT create_distributed_table(%s::regclass, %s)",
                (self._regclass(table), partition_key),
            )
        except psycopg.Error as exc:
            log.error("create_distributed_table(%s) failed: %s", table, exc)
            self.stats.warnings.append(f"redistribute {table} failed: {exc}")
            return False

        log.info("Distributed %s on %s", table, partition_key)
        self.stats.tables_redistributed.append(table)
        return True

    def redistribute_all(self, descriptors: Sequence[TableDescriptor]) -> list[str]:
        """Redistribute every partition-participating table; return those distributed."""
        if not self.is_distribution_active():
            log.info("Distribution not active; skipping redistribution")
            return []
        done = []
        for d in descriptors:
            if d.participates_in_partitioning and self.redistribute(d.name):
                done.append(d.name)
        return done
