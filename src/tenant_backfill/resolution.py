"""tenant_backfill.resolution

Resolution executor: writes tenant_code / organization_code table by table.

For each table, in checked dependency order:
  1. primary pass   - resolve each distinct join-key value from the mapping
                      cache (ORG_ID_DIRECT) or from the already-resolved
                      upstream table (join strategies); keys with no
                      resolvable mapping are recorded, never defaulted
  2. defaults pass  - fill rows that are still empty: system sentinel keys,
                      null keys where the table allows it, orphaned keys,
                      and every row of DEFAULTS_ONLY tables
  3. null-key check - any remaining empty row with a NULL join key on a
                      table whose policy is ERROR aborts the run

Row updates run in one transaction per batch of key values. The connection
must be in autocommit mode so DDL issued between tables is not held open
inside a row transaction.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Sequence
from dataclasses import dataclass

import psycopg
from psycopg import sql

from tenant_backfill.config import BackfillConfig
from tenant_backfill.distribution import DistributionController
from tenant_backfill.lookup_cache import LookupCache
from tenant_backfill.normalize import SYSTEM_SENTINEL, chunked, normalize_key
from tenant_backfill.registry import (
    NullKeyPolicy,
    Strategy,
    TableDescriptor,
    dependency_order,
)
from tenant_backfill.shared import (
    DataIntegrityError,
    DistributionError,
    RegistryError,
    RunStatistics,
    table_columns,
)
from tenant_backfill.sql_builder import (
    count_rows,
    default_update,
    key_equals,
    key_is_null,
    key_is_orphan,
    missing_any,
    qualified,
    sample_ids,
    update_for_key,
    update_for_keys,
)

log = logging.getLogger(__name__)

SAMPLE_LIMIT = 5
DEFAULTS_PHASE = "defaults"


@dataclass(frozen=True)
class TablePlan:
    """What can actually be written for one descriptor in this database."""

    descriptor: TableDescriptor
    columns: tuple[str, ...]
    key_column: str | None
    timestamp_column: str | None
    row_id_column: str | None

    @property
    def name(self) -> str:
        return self.descriptor.name


class ResolutionExecutor:
    """Run every resolution phase against an autocommit connection."""

    def __init__(
        self,
        conn: psycopg.Connection,
        cache: LookupCache,
        config: BackfillConfig,
        stats: RunStatistics,
        distribution: DistributionController | None = None,
    ) -> None:
        self.conn = conn
        self.cache = cache
        self.config = config
        self.stats = stats
        self.distribution = distribution
        self.schema = config.schema
        self.batch_size = config.batch_size
        self._handlers: dict[Strategy, Callable[[TablePlan], int]] = {
            Strategy.ORG_ID_DIRECT: self._resolve_from_cache,
            Strategy.USER_ID_JOIN: self._resolve_from_upstream,
            Strategy.ENTITY_TYPE_JOIN: self._resolve_from_upstream,
            Strategy.SESSION_JOIN: self._resolve_from_upstream,
            Strategy.REPORT_JOIN: self._resolve_from_upstream,
            Strategy.REPORT_TYPE_JOIN: self._resolve_from_upstream,
            Strategy.DEFAULTS_ONLY: self._resolve_defaults_only,
        }
        unhandled = set(Strategy) - set(self._handlers)
        if unhandled:
            raise RegistryError(f"No handler for strategies: {sorted(s.value for s in unhandled)}")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def run(self, descriptors: Sequence[TableDescriptor]) -> None:
        for d in dependency_order(descriptors):
            self.process_table(d)

    def plan(self, d: TableDescriptor) -> TablePlan | None:
        """Return the writable plan for ``d``, or None (with a warning) to skip it."""
        columns = table_columns(self.conn, self.schema, d.name)
        if not columns:
            self._skip_table(d.name, "table not found")
            return None
        available = tuple(c for c in d.target_columns if c in columns)
        if not available:
            self._skip_table(d.name, f"none of {list(d.target_columns)} present")
            return None
        if d.join_key_column and d.join_key_column not in columns:
            self._skip_table(d.name, f"join key column {d.join_key_column} not present")
            return None
        return TablePlan(
            descriptor=d,
            columns=available,
            key_column=d.join_key_column,
            timestamp_column=d.timestamp_column if d.timestamp_column in columns else None,
            row_id_column=d.row_id_column if d.row_id_column in columns else None,
        )

    def process_table(self, d: TableDescriptor) -> None:
        plan = self.plan(d)
        if plan is None:
            return

        if (
            self.distribution is not None
            and d.participates_in_partitioning
            and "tenant_code" in plan.columns
        ):
            self.distribution.undistribute(d.name)
            if self.distribution.is_distributed(d.name):
                raise DistributionError(
                    f"{d.name} is still distributed; tenant_code cannot be rewritten"
                )

        log.info("Resolving %s via %s (%s)", d.name, d.strategy.value, ", ".join(plan.columns))
        updated = self._handlers[d.strategy](plan)
        self.stats.add_rows(d.strategy.value, d.name, updated)

        defaulted = self._apply_defaults(plan)
        self._check_null_keys(plan)

        self.stats.tables_processed += 1
        log.info("%s: %d rows resolved, %d rows defaulted", d.name, updated, defaulted)

    def _skip_table(self, table: str, reason: str) -> None:
        log.warning("Skipping %s: %s", table, reason)
        self.stats.tables_skipped.append(table)
        self.stats.warnings.append(f"{table} skipped: {reason}")

    # ------------------------------------------------------------------
    # Primary pass handlers
    # ------------------------------------------------------------------

    def _key_counts(self, plan: TablePlan) -> list[tuple[str, int]]:
        rows = self.conn.execute(
            sql.SQL(
                "SELECT {key}::text, COUNT(*) FROM {table} "
                "WHERE {key} IS NOT NULL GROUP BY 1 ORDER BY 1"
            ).format(key=sql.Identifier(plan.key_column), table=qualified(self.schema, plan.name))
        ).fetchall()
        return [(r[0], int(r[1])) for r in rows]

    def _resolve_from_cache(self, plan: TablePlan) -> int:
        updated = 0
        for batch in chunked(self._key_counts(plan), self.batch_size):
            with self.conn.transaction():
                for key_value, row_count in batch:
                    mapping = self.cache.get(key_value)
                    if mapping is None:
                        if normalize_key(key_value) != SYSTEM_SENTINEL:
                            self._record_missing_mapping(plan, key_value, row_count, "not in mapping file")
                        continue
                    identity = {
                        "tenant_code": mapping.tenant_code,
                        "organization_code": mapping.organization_code,
                    }
                    query, params = update_for_key(
                        self.schema, plan.name, plan.key_column, plan.columns, identity,
                        key_value, plan.timestamp_column, not self.config.overwrite_existing,
                    )
                    updated += self.conn.execute(query, params).rowcount
        return updated

    def _resolve_from_upstream(self, plan: TablePlan) -> int:
        upstream = plan.descriptor.upstream
        upstream_columns = table_columns(self.conn, self.schema, upstream.table)
        if not upstream_columns:
            self.stats.warnings.append(
                f"{plan.name}: upstream {upstream.table} not found; all keys treated as orphans"
            )
            return 0

        select_cols = [
            sql.SQL("NULLIF({}, '')").format(sql.Identifier("u", c))
            if c in upstream_columns else sql.SQL("NULL")
            for c in plan.columns
        ]
        rows = self.conn.execute(
            sql.SQL(
                "SELECT DISTINCT {tkey}::text, {cols} FROM {table} AS t "
                "JOIN {upstream} AS u ON {ukey}::text = {tkey}::text "
                "WHERE {tkey} IS NOT NULL"
            ).format(
                tkey=sql.Identifier("t", plan.key_column),
                cols=sql.SQL(", ").join(select_cols),
                table=qualified(self.schema, plan.name),
                upstream=qualified(self.schema, upstream.table),
                ukey=sql.Identifier("u", upstream.key_column),
            )
        ).fetchall()
        identities: dict[str, set[tuple[str | None, ...]]] = defaultdict(set)
        for r in rows:
            identities[r[0]].add(tuple(r[1:]))

        groups: dict[tuple[str, ...], list[str]] = defaultdict(list)
        for key_value, row_count in self._key_counts(plan):
            found = identities.get(key_value)
            if found is None:
                # Orphan; handled by the defaults pass.
                continue
            resolvable = sorted(i for i in found if all(i))
            if not resolvable:
                if normalize_key(key_value) != SYSTEM_SENTINEL:
                    self._record_missing_mapping(
                        plan, key_value, row_count, f"{upstream.table} row has no tenant"
                    )
                continue
            if len(resolvable) > 1:
                self.stats.ambiguous_upstream.append({
                    "table": plan.name,
                    "key_column": plan.key_column,
                    "key_value": key_value,
                    "upstream_table": upstream.table,
                    "candidates": [list(i) for i in resolvable],
                    "chosen": list(resolvable[0]),
                    "rows": row_count,
                })
            groups[resolvable[0]].append(key_value)

        updated = 0
        for identity_values, keys in groups.items():
            identity = dict(zip(plan.columns, identity_values))
            for batch in chunked(keys, self.batch_size):
                query, params = update_for_keys(
                    self.schema, plan.name, plan.key_column, plan.columns, identity,
                    batch, plan.timestamp_column, not self.config.overwrite_existing,
                )
                with self.conn.transaction():
                    updated += self.conn.execute(query, params).rowcount
        return updated

    def _resolve_defaults_only(self, plan: TablePlan) -> int:
        # Nothing to look up; the defaults pass fills every empty row.
        return 0

    def _record_missing_mapping(
        self, plan: TablePlan, key_value: str, row_count: int, reason: str
    ) -> None:
        log.warning(
            "Missing mapping for %s %s in %s, %d rows (%s)",
            plan.key_column, key_value, plan.name, row_count, reason,
        )
        self.stats.missing_mapping.append({
            "table": plan.name,
            "key_column": plan.key_column,
            "key_value": key_value,
            "rows": row_count,
            "reason": reason,
        })

    # ------------------------------------------------------------------
    # Defaults pass
    # ------------------------------------------------------------------

    def _default(
        self,
        plan: TablePlan,
        columns: Sequence[str],
        defaults: dict[str, str | None],
        condition: sql.Composable | None = None,
        params: Sequence[str] = (),
    ) -> int:
        query, all_params = default_update(
            self.schema, plan.name, columns, defaults, plan.timestamp_column, condition, params,
        )
        return self.conn.execute(query, all_params).rowcount

    def _apply_defaults(self, plan: TablePlan) -> int:
        """Fill still-empty rows with defaults; never touches resolved values."""
        d = plan.descriptor
        defaults = self.config.defaults_for(d.name)
        columns = [c for c in plan.columns if defaults.get(c)]
        if not columns:
            return 0

        total = 0
        with self.conn.transaction():
            if d.strategy == Strategy.DEFAULTS_ONLY:
                total = self._default(plan, columns, defaults)
            else:
                key = plan.key_column
                n = self._default(plan, columns, defaults, key_equals(key), [SYSTEM_SENTINEL])
                if n:
                    self.stats.system_rows_fixed.append({
                        "table": d.name, "key_column": key,
                        "reason": f"{key} = '{SYSTEM_SENTINEL}' (system row)", "rows": n,
                    })
                total += n

                if d.null_key_policy == NullKeyPolicy.DEFAULT:
                    n = self._default(plan, columns, defaults, key_is_null(key))
                    if n:
                        self.stats.system_rows_fixed.append({
                            "table": d.name, "key_column": key,
                            "reason": f"{key} IS NULL", "rows": n,
                        })
                    total += n

                upstream = d.upstream
                if upstream is not None and table_columns(self.conn, self.schema, upstream.table):
                    n = self._default(
                        plan, columns, defaults,
                        key_is_orphan(self.schema, key, upstream.table, upstream.key_column),
                        [SYSTEM_SENTINEL],
                    )
                    if n:
                        self.stats.orphaned_references_fixed.append({
                            "table": d.name, "key_column": key,
                            "upstream_table": upstream.table, "rows": n,
                        })
                    total += n

        self.stats.rows_defaulted += total
        self.stats.add_rows(DEFAULTS_PHASE, d.name, total)
        return total

    # ------------------------------------------------------------------
    # Null-key check
    # ------------------------------------------------------------------

    def _check_null_keys(self, plan: TablePlan) -> None:
        d = plan.descriptor
        if d.strategy == Strategy.DEFAULTS_ONLY or d.null_key_policy != NullKeyPolicy.ERROR:
            return
        condition = sql.SQL("{} AND {}").format(
            key_is_null(plan.key_column), missing_any(plan.columns, alias="t")
        )
        count = self.conn.execute(count_rows(self.schema, d.name, condition)).fetchone()[0]
        if not count:
            return

        samples: list[str] = []
        if plan.row_id_column:
            samples = [
                r[0] for r in self.conn.execute(
                    sample_ids(self.schema, d.name, plan.row_id_column, condition),
                    [SAMPLE_LIMIT],
                ).fetchall()
            ]
        self.stats.null_key_errors.append({
            "table": d.name,
            "key_column": plan.key_column,
            "rows": int(count),
            "sample_row_ids": samples,
        })
        raise DataIntegrityError(
            f"{d.name}: {count} rows have NULL {plan.key_column}; tenant cannot be "
            f"determined (sample ids: {', '.join(samples) or 'n/a'})"
        )
