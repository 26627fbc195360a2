"""Unit test fixtures.

ScriptedConnection stands in for a psycopg connection: queries are matched
against registered text fragments, every call is recorded, and composed
psycopg.sql queries are rendered to text for matching and assertions.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any

import pytest
from psycopg import sql


class ScriptedCursor:
    def __init__(self, rows: list[tuple] | None = None, rowcount: int = 0) -> None:
        self._rows = list(rows or [])
        self.rowcount = rowcount

    def fetchone(self) -> tuple | None:
        return self._rows[0] if self._rows else None

    def fetchall(self) -> list[tuple]:
        return list(self._rows)


class ScriptedConnection:
    def __init__(self) -> None:
        self.calls: list[tuple[str, Any]] = []
        self.transactions = 0
        self.closed = False
        self._rules: list[tuple[str, Any]] = []

    def on(
        self,
        fragment: str,
        rows: list[tuple] | None = None,
        rowcount: int = 0,
        error: Exception | None = None,
        when=None,
    ) -> None:
        """Answer queries containing ``fragment``; newest rule wins.

        ``when`` optionally narrows the rule with a predicate over params.
        """
        self._rules.insert(0, (fragment, (rows, rowcount, error, when)))

    def execute(self, query: Any, params: Any = None) -> ScriptedCursor:
        text = query.as_string() if isinstance(query, sql.Composable) else str(query)
        self.calls.append((text, params))
        for fragment, (rows, rowcount, error, when) in self._rules:
            if fragment in text and (when is None or when(params)):
                if error is not None:
                    raise error
                return ScriptedCursor(rows, rowcount)
        return ScriptedCursor()

    @contextmanager
    def transaction(self):
        self.transactions += 1
        yield

    def close(self) -> None:
        self.closed = True

    def queries(self, fragment: str) -> list[tuple[str, Any]]:
        return [(q, p) for q, p in self.calls if fragment in q]


@pytest.fixture
def scripted_conn() -> ScriptedConnection:
    return ScriptedConnection()
