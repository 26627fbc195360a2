"""tenant_backfill.sql_builder

psycopg.sql builders for the backfill UPDATE / SELECT statements.

Identifiers (schema, table, column names from the descriptor catalog) are
composed with sql.Identifier; every value, including tenant codes,
organization codes and join-key values, is a bound %s parameter.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from psycopg import sql

Query = tuple[sql.Composed, list[Any]]


def qualified(schema: str, table: str) -> sql.Identifier:
    return sql.Identifier(schema, table)


def _col(column: str, alias: str | None = None) -> sql.Identifier:
    return sql.Identifier(alias, column) if alias else sql.Identifier(column)


def missing_any(columns: Sequence[str], alias: str | None = None) -> sql.Composed:
    """``(c IS NULL OR c = '' OR ...)`` over every column."""
    parts = [
        sql.SQL("{c} IS NULL OR {c} = ''").format(c=_col(c, alias))
        for c in columns
    ]
    return sql.SQL("({})").format(sql.SQL(" OR ").join(parts))


def differs_from_params(columns: Sequence[str]) -> sql.Composed:
    """``(c1 IS DISTINCT FROM %s OR ...)``; one parameter per column."""
    parts = [
        sql.SQL("{} IS DISTINCT FROM %s").format(sql.Identifier(c)) for c in columns
    ]
    return sql.SQL("({})").format(sql.SQL(" OR ").join(parts))


def set_clause(columns: Sequence[str], timestamp_column: str | None) -> sql.Composed:
    """``c1 = %s, c2 = %s[, ts = NOW()]``; one parameter per column."""
    parts = [sql.SQL("{} = %s").format(sql.Identifier(c)) for c in columns]
    if timestamp_column:
        parts.append(sql.SQL("{} = NOW()").format(sql.Identifier(timestamp_column)))
    return sql.SQL(", ").join(parts)


def default_set_clause(columns: Sequence[str], timestamp_column: str | None) -> sql.Composed:
    """Fill only empty columns: ``c = COALESCE(NULLIF(c, ''), %s)``."""
    parts = [
        sql.SQL("{c} = COALESCE(NULLIF({c}, ''), %s)").format(c=sql.Identifier(c))
        for c in columns
    ]
    if timestamp_column:
        parts.append(sql.SQL("{} = NOW()").format(sql.Identifier(timestamp_column)))
    return sql.SQL(", ").join(parts)


def identity_values(columns: Sequence[str], identity: dict[str, str | None]) -> list[Any]:
    return [identity.get(c) for c in columns]


def _sets(columns: Sequence[str], timestamp_column: str | None, only_missing: bool) -> sql.Composed:
    # Existing non-empty values survive when overwriting is off.
    if only_missing:
        return default_set_clause(columns, timestamp_column)
    return set_clause(columns, timestamp_column)


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

def update_for_key(
    schema: str,
    table: str,
    key_column: str,
    columns: Sequence[str],
    identity: dict[str, str | None],
    key_value: str,
    timestamp_column: str | None,
    only_missing: bool,
) -> Query:
    """UPDATE every row whose join key equals ``key_value``."""
    values = identity_values(columns, identity)
    query = sql.SQL(
        "UPDATE {table} SET {sets} WHERE {key}::text = %s AND {differs}{extra}"
    ).format(
        table=qualified(schema, table),
        sets=_sets(columns, timestamp_column, only_missing),
        key=sql.Identifier(key_column),
        differs=differs_from_params(columns),
        extra=sql.SQL(" AND {}").format(missing_any(columns)) if only_missing else sql.SQL(""),
    )
    return query, [*values, key_value, *values]


def update_for_keys(
    schema: str,
    table: str,
    key_column: str,
    columns: Sequence[str],
    identity: dict[str, str | None],
    key_values: Sequence[str],
    timestamp_column: str | None,
    only_missing: bool,
) -> Query:
    """UPDATE every row whose join key is one of ``key_values``."""
    values = identity_values(columns, identity)
    query = sql.SQL(
        "UPDATE {table} SET {sets} WHERE {key}::text = ANY(%s::text[]) AND {differs}{extra}"
    ).format(
        table=qualified(schema, table),
        sets=_sets(columns, timestamp_column, only_missing),
        key=sql.Identifier(key_column),
        differs=differs_from_params(columns),
        extra=sql.SQL(" AND {}").format(missing_any(columns)) if only_missing else sql.SQL(""),
    )
    return query, [*values, list(key_values), *values]


def default_update(
    schema: str,
    table: str,
    columns: Sequence[str],
    defaults: dict[str, str | None],
    timestamp_column: str | None,
    condition: sql.Composable | None = None,
    condition_params: Sequence[Any] = (),
) -> Query:
    """Fill still-empty target columns with defaults on rows matching ``condition``.

    The target table is aliased ``t`` so conditions can correlate against it.
    """
    where = missing_any(columns, alias="t")
    if condition is not None:
        where = sql.SQL("{} AND {}").format(where, condition)
    query = sql.SQL("UPDATE {table} AS t SET {sets} WHERE {where}").format(
        table=qualified(schema, table),
        sets=default_set_clause(columns, timestamp_column),
        where=where,
    )
    return query, [*identity_values(columns, defaults), *condition_params]


def key_equals(key_column: str) -> sql.Composed:
    return sql.SQL("{}::text = %s").format(_col(key_column, "t"))


def key_is_null(key_column: str) -> sql.Composed:
    return sql.SQL("{} IS NULL").format(_col(key_column, "t"))


def key_is_orphan(schema: str, key_column: str, upstream_table: str, upstream_key: str) -> sql.Composed:
    """Non-null, non-sentinel key with no matching upstream row (one %s: the sentinel)."""
    return sql.SQL(
        "{key} IS NOT NULL AND {key}::text <> %s AND NOT EXISTS "
        "(SELECT 1 FROM {upstream} AS u WHERE {ukey}::text = {key}::text)"
    ).format(
        key=_col(key_column, "t"),
        upstream=qualified(schema, upstream_table),
        ukey=_col(upstream_key, "u"),
    )


def count_rows(schema: str, table: str, condition: sql.Composable) -> sql.Composed:
    return sql.SQL("SELECT COUNT(*) FROM {} AS t WHERE {}").format(
        qualified(schema, table), condition
    )


def sample_ids(
    schema: str, table: str, row_id_column: str, condition: sql.Composable
) -> sql.Composed:
    """Up to %s sample row ids matching ``condition`` (limit is the last param)."""
    return sql.SQL(
        "SELECT {rid}::text FROM {table} AS t WHERE {cond} ORDER BY {rid} LIMIT %s"
    ).format(
        rid=_col(row_id_column, "t"),
        table=qualified(schema, table),
        cond=condition,
    )
