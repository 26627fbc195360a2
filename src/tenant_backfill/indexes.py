"""tenant_backfill.indexes

Optional tenant-leading indexes created after a successful backfill.

Every index is CREATE INDEX IF NOT EXISTS; tables or columns that do not
exist in the target database are skipped, and a failed index is a warning.
"""

from __future__ import annotations

import logging

import psycopg
from psycopg import sql

from tenant_backfill.shared import RunStatistics, table_columns

log = logging.getLogger(__name__)

# (index name, table, columns)
TENANT_INDEXES: tuple[tuple[str, str, tuple[str, ...]], ...] = (
    ("idx_user_extensions_tenant_user", "user_extensions", ("tenant_code", "user_id")),
    ("idx_organization_extension_tenant_org", "organization_extension", ("tenant_code", "organization_id")),
    ("idx_sessions_tenant_mentor", "sessions", ("tenant_code", "mentor_id")),
    ("idx_sessions_tenant_status", "sessions", ("tenant_code", "status")),
    ("idx_session_attendees_tenant_session", "session_attendees", ("tenant_code", "session_id")),
    ("idx_entities_tenant_type", "entities", ("tenant_code", "entity_type_id")),
    ("idx_entity_types_tenant_value", "entity_types", ("tenant_code", "value")),
    ("idx_forms_tenant_org", "forms", ("tenant_code", "organization_id")),
    ("idx_resources_tenant_session", "resources", ("tenant_code", "session_id")),
    ("idx_post_session_details_tenant_session", "post_session_details", ("tenant_code", "session_id")),
    ("idx_reports_tenant_org", "reports", ("tenant_code", "organization_id")),
    ("idx_report_types_title_tenant", "report_types", ("title", "tenant_code")),
    ("idx_feedbacks_tenant_user", "feedbacks", ("tenant_code", "user_id")),
    ("idx_issues_tenant", "issues", ("tenant_code",)),
    ("idx_session_request_tenant", "session_request", ("tenant_code",)),
)


def create_tenant_indexes(
    conn: psycopg.Connection,
    stats: RunStatistics,
    schema: str = "public",
) -> list[str]:
    """Create the tenant-leading indexes; return the names that now exist."""
    created: list[str] = []
    column_cache: dict[str, set[str]] = {}
    for name, table, columns in TENANT_INDEXES:
        if table not in column_cache:
            column_cache[table] = table_columns(conn, schema, table)
        available = column_cache[table]
        missing = [c for c in columns if c not in available]
        if not available or missing:
            log.debug("Skipping index %s: %s missing", name, missing or table)
            continue
        try:
            conn.execute(
                sql.SQL("CREATE INDEX IF NOT EXISTS {} ON {} ({})").format(
                    sql.Identifier(name),
                    sql.Identifier(schema, table),
                    sql.SQL(", ").join(sql.Identifier(c) for c in columns),
                )
            )
        except psycopg.Error as exc:
            log.warning("Index %s failed: %s", name, exc)
            stats.warnings.append(f"index {name} failed: {exc}")
            continue
        created.append(name)
    log.info("Tenant indexes present: %d of %d", len(created), len(TENANT_INDEXES))
    return created
