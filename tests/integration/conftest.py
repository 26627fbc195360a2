"""Integration test fixtures.

Applies the legacy schema migration against an ephemeral PostgreSQL
database provided by pytest-postgresql, seeds a small two-tenant dataset
and writes the matching mapping file.

Every test in this directory is reported as skipped when pytest-postgresql
or pg_ctl is unavailable.
"""

from __future__ import annotations

import csv
import importlib.util
import shutil
from pathlib import Path

import psycopg
import pytest

from tenant_backfill.config import BackfillConfig

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_legacy_schema.sql",
]

INTEGRATION_DIR = Path(__file__).resolve().parent

POSTGRES_AVAILABLE = (
    importlib.util.find_spec("pytest_postgresql") is not None
    and shutil.which("pg_ctl") is not None
)

if POSTGRES_AVAILABLE:
    from pytest_postgresql import factories

    # -----------------------------------------------------------------------
    # pytest-postgresql process fixture
    # -----------------------------------------------------------------------

    postgresql_proc = factories.postgresql_proc(executable=shutil.which("pg_ctl"))
    postgresql = factories.postgresql("postgresql_proc")


def pytest_collection_modifyitems(config, items):
    if POSTGRES_AVAILABLE:
        return
    skip = pytest.mark.skip(reason="integration tests need pytest-postgresql and pg_ctl on PATH")
    for item in items:
        if INTEGRATION_DIR in item.path.resolve().parents:
            item.add_marker(skip)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

MAPPING_ROWS = [
    {"organization_id": "7", "organization_code": "ACME01", "tenant_code": "acme"},
    {"organization_id": "8", "organization_code": "BETA01", "tenant_code": "beta"},
    # Not in organization_extension; filtered out at load.
    {"organization_id": "99", "organization_code": "GONE", "tenant_code": "gone"},
]

SEED_SQL = """
INSERT INTO organization_extension (organization_id, name) VALUES (7, 'Acme'), (8, 'Beta');
INSERT INTO user_extensions (user_id, organization_id, name)
    VALUES (100, 7, 'Ada'), (200, 8, 'Ben');

INSERT INTO forms (id, organization_id, type) VALUES
    (1, 7, 'session'), (2, 0, 'system'), (3, NULL, 'template');
INSERT INTO entity_types (id, value, organization_id) VALUES (10, 'categories', 7);
INSERT INTO reports (id, code, organization_id, report_type_title)
    VALUES (20, 'R1', 7, 'Mentoring');

INSERT INTO sessions (id, created_by, status) VALUES
    (1000, 100, 'COMPLETED'), (1001, 200, 'PUBLISHED'),
    (1002, 0, 'PUBLISHED'), (1003, 999, 'PUBLISHED');
INSERT INTO issues (id, user_id, description) VALUES (1, 200, 'broken link');
INSERT INTO feedbacks (id, user_id, session_id) VALUES (1, 100, 1000);

INSERT INTO session_attendees (id, session_id, mentee_id) VALUES (1, 1000, 200), (2, 1001, 100);
INSERT INTO post_session_details (id, session_id) VALUES (1, 1000);
INSERT INTO resources (id, created_by, session_id, name) VALUES (1, 100, 1000, 'slides');
INSERT INTO entities (id, entity_type_id, value, created_by) VALUES (1, 10, 'career', 100);
INSERT INTO report_role_mapping (id, report_code, role_title) VALUES (1, 'R1', 'mentor');
INSERT INTO report_types (id, title) VALUES (1, 'Mentoring');
INSERT INTO modules (id, code) VALUES (1, 'mentoring');

UPDATE organization_extension SET updated_at = '2020-01-01';
UPDATE forms SET updated_at = '2020-01-01';
UPDATE sessions SET updated_at = '2020-01-01';
"""


def write_mapping(path: Path, rows: list[dict] | None = None) -> Path:
    with path.open("w", newline="", encoding="utf-8") as fh:
        w = csv.DictWriter(fh, fieldnames=["organization_id", "organization_code", "tenant_code"])
        w.writeheader()
        for row in MAPPING_ROWS if rows is None else rows:
            w.writerow(row)
    return path


def fetch_codes(conn: psycopg.Connection, table: str, row_id: int, id_column: str = "id"):
    columns = [
        r[0] for r in conn.execute(
            "SELECT column_name FROM information_schema.columns "
            "WHERE table_schema = 'public' AND table_name = %s "
            "AND column_name IN ('tenant_code', 'organization_code') ORDER BY column_name DESC",
            (table,),
        ).fetchall()
    ]
    row = conn.execute(
        f"SELECT {', '.join(columns)} FROM {table} WHERE {id_column} = %s", (row_id,)
    ).fetchone()
    return tuple(row)


def foreign_keys(conn: psycopg.Connection) -> set[tuple[str, str]]:
    rows = conn.execute(
        """
        SELECT rel.relname, con.conname
        FROM pg_constraint con
        JOIN pg_class rel ON rel.oid = con.conrelid
        JOIN pg_namespace ns ON ns.oid = rel.relnamespace
        WHERE con.contype = 'f' AND ns.nspname = 'public'
        """
    ).fetchall()
    return {(r[0], r[1]) for r in rows}


# ---------------------------------------------------------------------------
# Schema fixture: applies the migration per test
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return an autocommit psycopg connection with the legacy schema applied.

    Each test gets a fresh schema via function scope so tests are isolated.
    """
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        yield conn, dsn
    finally:
        conn.close()


@pytest.fixture
def seeded(db_conn):
    conn, dsn = db_conn
    conn.execute(SEED_SQL)
    return conn, dsn


@pytest.fixture
def backfill_config(db_conn, tmp_path) -> BackfillConfig:
    _, dsn = db_conn
    return BackfillConfig(
        db_dsn=dsn,
        default_tenant_code="default",
        default_organization_code="default_code",
        mapping_path=str(write_mapping(tmp_path / "mapping.csv")),
        batch_size=2,
        artifacts_dir=str(tmp_path / "artifacts"),
    )


@pytest.fixture
def codes(db_conn):
    """Callable returning (tenant_code[, organization_code]) for one row."""
    conn, _ = db_conn
    return lambda table, row_id, id_column="id": fetch_codes(conn, table, row_id, id_column)


@pytest.fixture
def fks(db_conn):
    conn, _ = db_conn
    return lambda: foreign_keys(conn)
