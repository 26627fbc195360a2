"""tenant_backfill.validator

Post-run integrity validation: residual empty tenant columns per table.

A table fails when any target column is NULL/empty, or when tenant_code is
set while organization_code (also a target) is still empty.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

import psycopg
from psycopg import sql

from tenant_backfill.registry import TableDescriptor
from tenant_backfill.shared import table_columns
from tenant_backfill.sql_builder import missing_any, qualified, sample_ids

log = logging.getLogger(__name__)


@dataclass
class TableValidation:
    table: str
    checked: bool = True
    null_counts: dict[str, int] = field(default_factory=dict)
    inconsistent_rows: int = 0
    sample_row_ids: list[str] = field(default_factory=list)

    @property
    def offending_rows(self) -> int:
        return sum(self.null_counts.values()) + self.inconsistent_rows

    @property
    def passed(self) -> bool:
        return self.offending_rows == 0

    def to_dict(self) -> dict:
        return {
            "table": self.table,
            "null_counts": self.null_counts,
            "inconsistent_rows": self.inconsistent_rows,
            "sample_row_ids": self.sample_row_ids,
        }


@dataclass
class ValidationReport:
    tables: list[TableValidation] = field(default_factory=list)

    @property
    def failures(self) -> list[TableValidation]:
        return [t for t in self.tables if not t.passed]

    @property
    def passed(self) -> bool:
        return not self.failures

    @property
    def total_offending_rows(self) -> int:
        return sum(t.offending_rows for t in self.tables)


def validate(
    conn: psycopg.Connection,
    descriptors: Sequence[TableDescriptor],
    schema: str = "public",
    sample_limit: int = 5,
) -> ValidationReport:
    """Count residual empty target columns for every descriptor's table."""
    report = ValidationReport()
    for d in descriptors:
        columns = table_columns(conn, schema, d.name)
        targets = [c for c in d.target_columns if c in columns]
        result = TableValidation(table=d.name)
        report.tables.append(result)
        if not targets:
            result.checked = False
            continue

        table = qualified(schema, d.name)
        for col in targets:
            count = conn.execute(
                sql.SQL("SELECT COUNT(*) FROM {} AS t WHERE {}").format(
                    table, missing_any([col], alias="t")
                )
            ).fetchone()[0]
            if count:
                result.null_counts[col] = int(count)

        if "tenant_code" in targets and "organization_code" in targets:
            inconsistent = sql.SQL(
                "t.tenant_code IS NOT NULL AND t.tenant_code <> '' AND {}"
            ).format(missing_any(["organization_code"], alias="t"))
            result.inconsistent_rows = int(
                conn.execute(
                    sql.SQL("SELECT COUNT(*) FROM {} AS t WHERE {}").format(table, inconsistent)
                ).fetchone()[0]
            )

        if not result.passed and d.row_id_column in columns:
            rows = conn.execute(
                sample_ids(schema, d.name, d.row_id_column, missing_any(targets, alias="t")),
                [sample_limit],
            ).fetchall()
            result.sample_row_ids = [r[0] for r in rows]

        if not result.passed:
            log.warning(
                "Validation failed for %s: %s empty, %d inconsistent",
                d.name, result.null_counts, result.inconsistent_rows,
            )
    return report


def build_validation_report(report: ValidationReport) -> str:
    lines = [
        "=" * 60,
        "Tenant Column Validation",
        "=" * 60,
    ]
    for t in report.tables:
        if not t.checked:
            lines.append(f"  [SKIP] {t.table}: no target columns present")
            continue
        status = "PASS" if t.passed else "FAIL"
        lines.append(f"  [{status}] {t.table}")
        for col, count in t.null_counts.items():
            lines.append(f"         {col}: {count} empty")
        if t.inconsistent_rows:
            lines.append(
                f"         tenant_code set but organization_code empty: {t.inconsistent_rows}"
            )
        if t.sample_row_ids:
            lines.append(f"         sample ids: {', '.join(t.sample_row_ids)}")
    lines += [
        "",
        f"Overall: {'PASS' if report.passed else 'FAIL'} "
        f"({len(report.failures)} tables, {report.total_offending_rows} rows)",
        "=" * 60,
    ]
    return "\n".join(lines)
