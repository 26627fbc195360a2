"""Normalization functions for mapping-file values and join keys.

All functions accept str | None (or arbitrary key values) and return the
appropriate type or None.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Sequence
from typing import Any, TypeVar

T = TypeVar("T")

# Join-key value that marks a pre-existing system-authored row.
SYSTEM_SENTINEL = "0"


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_key
# ---------------------------------------------------------------------------

def normalize_key(value: Any) -> str | None:
    """Render a join-key value (int, str, UUID ...) as its trimmed text form.

    Keys are compared as text on both sides of every lookup so that an
    integer column and a varchar mapping file agree on ``42 == "42"``.
    """
    if value is None:
        return None
    return trim(str(value))


def normalize_header(value: str | None) -> str:
    v = trim(value)
    return v.lower() if v else ""


def is_system_sentinel(value: Any) -> bool:
    return normalize_key(value) == SYSTEM_SENTINEL


# ---------------------------------------------------------------------------
# Rule 3: id ordering
# ---------------------------------------------------------------------------

def id_sort_key(value: str) -> tuple[int, int, str]:
    """Sort numeric ids numerically, then everything else lexically."""
    if value.isdigit():
        return (0, int(value), value)
    return (1, 0, value)


def sorted_ids(values: Iterable[str]) -> list[str]:
    return sorted(values, key=id_sort_key)


# ---------------------------------------------------------------------------
# Rule 4: chunking
# ---------------------------------------------------------------------------

def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size < 1:
        raise ValueError(f"chunk size must be >= 1, got {size}")
    for start in range(0, len(items), size):
        yield items[start:start + size]
