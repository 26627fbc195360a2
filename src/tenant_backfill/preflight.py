"""tenant_backfill.preflight

Read-only pre-flight integrity check, run before the mutating backfill.

Reports, without writing to any table, whether every catalog table's join
key is populated and referentially valid against its upstream table:
  - NULL join keys (critical when the run would abort on them)
  - join keys with no upstream row (the system sentinel '0' is valid)
  - organization ids absent from the source-of-truth table
  - organization ids absent from the mapping file, when one is supplied
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import psycopg
from psycopg import sql

from tenant_backfill.lookup_cache import LookupCache, fetch_source_of_truth_org_ids
from tenant_backfill.normalize import SYSTEM_SENTINEL, sorted_ids
from tenant_backfill.registry import NullKeyPolicy, Strategy, TableDescriptor
from tenant_backfill.shared import table_columns
from tenant_backfill.sql_builder import key_is_null, key_is_orphan, qualified, sample_ids

log = logging.getLogger(__name__)

SAMPLE_LIMIT = 5


@dataclass
class PreflightResult:
    tables_checked: int = 0
    issues: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return not self.issues

    @property
    def critical_issues(self) -> list[dict[str, Any]]:
        return [i for i in self.issues if i["severity"] == "critical"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "tables_checked": self.tables_checked,
            "issues": self.issues,
            "warnings": self.warnings,
        }


def _count_and_sample(
    conn: psycopg.Connection,
    schema: str,
    d: TableDescriptor,
    condition: sql.Composable,
    params: list[Any],
    has_row_id: bool,
) -> tuple[int, list[str]]:
    count = conn.execute(
        sql.SQL("SELECT COUNT(*) FROM {} AS t WHERE {}").format(qualified(schema, d.name), condition),
        params,
    ).fetchone()[0]
    samples: list[str] = []
    if count and has_row_id:
        samples = [
            r[0] for r in conn.execute(
                sample_ids(schema, d.name, d.row_id_column, condition),
                [*params, SAMPLE_LIMIT],
            ).fetchall()
        ]
    return int(count), samples


def run_preflight_check(
    conn: psycopg.Connection,
    descriptors: Sequence[TableDescriptor],
    schema: str = "public",
    source_of_truth_table: str = "organization_extension",
    cache: LookupCache | None = None,
) -> PreflightResult:
    """Inspect join-key completeness and referential validity; never writes.

    Args:
        conn: Open psycopg connection.
        descriptors: Tables to inspect.
        schema: Schema holding the tables.
        source_of_truth_table: Table whose organization ids define the
            authoritative set.
        cache: Optional mapping cache; when given, uncovered organization
            ids are reported too.

    Returns:
        PreflightResult; ``passed`` is True only when no issue was found.
    """
    result = PreflightResult()

    for d in descriptors:
        columns = table_columns(conn, schema, d.name)
        if not columns:
            result.warnings.append(f"{d.name}: table not found, skipped")
            continue
        result.tables_checked += 1
        missing_targets = [c for c in d.target_columns if c not in columns]
        if missing_targets:
            result.warnings.append(f"{d.name}: target columns absent: {missing_targets}")
        if d.strategy == Strategy.DEFAULTS_ONLY:
            continue

        key = d.join_key_column
        if key not in columns:
            result.issues.append({
                "table": d.name, "check": "join_key_column", "severity": "critical",
                "rows": 0, "detail": f"join key column {key} does not exist",
                "sample_row_ids": [],
            })
            continue
        has_row_id = d.row_id_column in columns

        nulls, samples = _count_and_sample(conn, schema, d, key_is_null(key), [], has_row_id)
        if nulls:
            critical = d.null_key_policy == NullKeyPolicy.ERROR
            result.issues.append({
                "table": d.name, "check": "null_join_key",
                "severity": "critical" if critical else "error",
                "rows": nulls,
                "detail": f"{key} IS NULL" + ("" if critical else " (would be defaulted)"),
                "sample_row_ids": samples,
            })

        if d.strategy == Strategy.ORG_ID_DIRECT:
            if d.name == source_of_truth_table:
                continue
            ref_table, ref_key = source_of_truth_table, "organization_id"
            if not table_columns(conn, schema, ref_table):
                result.warnings.append(
                    f"{d.name}: source-of-truth table {ref_table} not found, "
                    "organization ids not checked"
                )
                continue
        else:
            ref_table, ref_key = d.upstream.table, d.upstream.key_column

        if not table_columns(conn, schema, ref_table):
            result.issues.append({
                "table": d.name, "check": "upstream_table", "severity": "critical",
                "rows": 0, "detail": f"upstream table {ref_table} does not exist",
                "sample_row_ids": [],
            })
            continue

        orphans, samples = _count_and_sample(
            conn, schema, d, key_is_orphan(schema, key, ref_table, ref_key),
            [SYSTEM_SENTINEL], has_row_id,
        )
        if orphans:
            result.issues.append({
                "table": d.name, "check": "orphaned_reference", "severity": "error",
                "rows": orphans,
                "detail": f"{key} has no matching {ref_table}.{ref_key}",
                "sample_row_ids": samples,
            })

    if cache is not None:
        required = fetch_source_of_truth_org_ids(conn, schema, source_of_truth_table)
        uncovered = sorted_ids(i for i in required if i not in cache.entries)
        if uncovered:
            result.issues.append({
                "table": source_of_truth_table, "check": "mapping_coverage",
                "severity": "critical", "rows": len(uncovered),
                "detail": "organization ids missing from mapping file: " + ", ".join(uncovered),
                "sample_row_ids": uncovered[:SAMPLE_LIMIT],
            })

    for issue in result.issues:
        log.warning("Pre-flight %s issue on %s: %s (%d rows)",
                    issue["severity"], issue["table"], issue["detail"], issue["rows"])
    return result


def build_preflight_report(result: PreflightResult) -> str:
    lines = [
        "=" * 60,
        "Pre-flight Integrity Check (read-only)",
        "=" * 60,
        f"  tables checked:  {result.tables_checked}",
        f"  issues:          {len(result.issues)} ({len(result.critical_issues)} critical)",
    ]
    for issue in result.issues:
        lines.append(
            f"  [{issue['severity'].upper()}] {issue['table']}: {issue['detail']} "
            f"({issue['rows']} rows)"
        )
        if issue["sample_row_ids"]:
            lines.append(f"      sample ids: {', '.join(str(s) for s in issue['sample_row_ids'])}")
    if result.warnings:
        lines.append(f"\nWarnings ({len(result.warnings)}):")
        for w in result.warnings[:20]:
            lines.append(f"  {w}")
    lines.append(f"\n  Overall: {'PASS' if result.passed else 'FAIL'}")
    lines.append("=" * 60)
    return "\n".join(lines)


def write_preflight_log(
    run_id: str,
    result: PreflightResult,
    artifacts_dir: str | Path = "./artifacts",
) -> Path:
    payload = {
        "run_id": run_id,
        "written_at": datetime.now(timezone.utc).isoformat(),
        **result.to_dict(),
    }
    path = Path(artifacts_dir) / "preflight" / f"{run_id}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, default=str))
    return path
