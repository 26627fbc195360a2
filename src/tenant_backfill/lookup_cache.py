"""tenant_backfill.lookup_cache

Organization -> tenant mapping cache built from the external mapping file.

The coverage check at the end of this module is the up-front gate of a
backfill run: every organization id in the source-of-truth table must be
present in the cache before any row is touched.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field
from pathlib import Path

import psycopg
from psycopg import sql

from tenant_backfill.normalize import normalize_header, normalize_key, sorted_ids, trim
from tenant_backfill.shared import ConfigurationError, CoverageError, table_exists

log = logging.getLogger(__name__)

REQUIRED_HEADERS = ("organization_id", "organization_code", "tenant_code")


@dataclass(frozen=True)
class OrgMapping:
    tenant_code: str
    organization_code: str


@dataclass
class LookupCache:
    """Mapping of organization id -> (tenant_code, organization_code)."""

    entries: dict[str, OrgMapping] = field(default_factory=dict)
    rows_read: int = 0
    rows_incomplete: int = 0
    rows_filtered: int = 0
    duplicates: int = 0
    filtered_org_ids: set[str] = field(default_factory=set)

    def get(self, organization_id: object) -> OrgMapping | None:
        key = normalize_key(organization_id)
        if key is None:
            return None
        return self.entries.get(key)

    def __contains__(self, organization_id: object) -> bool:
        return self.get(organization_id) is not None

    def __len__(self) -> int:
        return len(self.entries)


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_lookup_cache(
    path: Path,
    valid_org_ids: set[str] | None = None,
    delimiter: str = ",",
) -> LookupCache:
    """Parse the mapping file into a LookupCache.

    Args:
        path: Delimited file with at least organization_id,
            organization_code and tenant_code columns.
        valid_org_ids: When given, rows for other organization ids are
            discarded and counted rather than errored.
        delimiter: Field delimiter.

    Raises:
        ConfigurationError: If the file is missing, cannot be decoded or
            parsed, or lacks a required header.
    """
    if not path.exists():
        raise ConfigurationError(f"Mapping file not found: {path}")

    try:
        cache = _read_mapping(path, valid_org_ids, delimiter)
    except (UnicodeDecodeError, csv.Error) as exc:
        raise ConfigurationError(f"Mapping file {path} is unreadable: {exc}") from exc

    log.info(
        "Loaded %d organization mappings from %s (%d incomplete, %d filtered, %d duplicates)",
        len(cache), path, cache.rows_incomplete, cache.rows_filtered, cache.duplicates,
    )
    if cache.filtered_org_ids:
        log.info(
            "Skipped mapping rows for organization ids not in the database: %s",
            ", ".join(sorted_ids(cache.filtered_org_ids)),
        )
    return cache


def _read_mapping(path: Path, valid_org_ids: set[str] | None, delimiter: str) -> LookupCache:
    cache = LookupCache()
    with open(path, newline="", encoding="utf-8-sig") as fh:
        reader = csv.DictReader(fh, delimiter=delimiter)
        header_map = {normalize_header(h): h for h in (reader.fieldnames or [])}
        missing = [h for h in REQUIRED_HEADERS if h not in header_map]
        if missing:
            raise ConfigurationError(
                f"Mapping file {path} is missing required headers: {missing}"
            )

        for raw in reader:
            cache.rows_read += 1
            org_id = trim(raw.get(header_map["organization_id"]))
            org_code = trim(raw.get(header_map["organization_code"]))
            tenant = trim(raw.get(header_map["tenant_code"]))
            if org_id is None or org_code is None or tenant is None:
                cache.rows_incomplete += 1
                continue
            if valid_org_ids is not None and org_id not in valid_org_ids:
                cache.rows_filtered += 1
                cache.filtered_org_ids.add(org_id)
                continue
            if org_id in cache.entries:
                cache.duplicates += 1
            cache.entries[org_id] = OrgMapping(tenant_code=tenant, organization_code=org_code)
    return cache


def fetch_source_of_truth_org_ids(
    conn: psycopg.Connection,
    schema: str = "public",
    table: str = "organization_extension",
) -> set[str]:
    """Return every organization id present in the source-of-truth table."""
    if not table_exists(conn, schema, table):
        log.warning("Source-of-truth table %s.%s not found; no coverage requirement", schema, table)
        return set()
    rows = conn.execute(
        sql.SQL(
            "SELECT DISTINCT organization_id::text FROM {} WHERE organization_id IS NOT NULL"
        ).format(sql.Identifier(schema, table))
    ).fetchall()
    ids = {normalize_key(r[0]) for r in rows}
    ids.discard(None)
    return ids  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Coverage gate
# ---------------------------------------------------------------------------

def validate_coverage(cache: LookupCache, required_ids: set[str]) -> None:
    """Raise CoverageError listing every required id absent from the cache."""
    missing = [org_id for org_id in required_ids if org_id not in cache.entries]
    if missing:
        raise CoverageError(sorted_ids(missing))
    if not required_ids and not cache.entries:
        log.info("Empty mapping cache and no organizations to cover")
