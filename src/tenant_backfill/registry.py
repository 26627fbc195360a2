"""tenant_backfill.registry

Static catalog of the tables that receive tenant_code / organization_code,
and the checked dependency order in which they are resolved.

Join strategies read the already-resolved tenant of an upstream table, so
every upstream must be processed before its dependents. The order is an
explicit property of the catalog, verified by validate_catalog() at
startup rather than trusted from list position.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum

from tenant_backfill.shared import RegistryError

TENANT_ONLY = ("tenant_code",)
TENANT_AND_ORG = ("tenant_code", "organization_code")
VALID_TARGET_COLUMNS = frozenset(TENANT_AND_ORG)


class Strategy(str, Enum):
    ORG_ID_DIRECT = "org_id_direct"
    USER_ID_JOIN = "user_id_join"
    ENTITY_TYPE_JOIN = "entity_type_join"
    SESSION_JOIN = "session_join"
    REPORT_JOIN = "report_join"
    REPORT_TYPE_JOIN = "report_type_join"
    DEFAULTS_ONLY = "defaults_only"


class NullKeyPolicy(str, Enum):
    """What happens to rows whose join key is NULL."""

    DEFAULT = "default"
    ERROR = "error"


@dataclass(frozen=True)
class Upstream:
    table: str
    key_column: str


UPSTREAMS: dict[Strategy, Upstream] = {
    Strategy.USER_ID_JOIN: Upstream("user_extensions", "user_id"),
    Strategy.ENTITY_TYPE_JOIN: Upstream("entity_types", "id"),
    Strategy.SESSION_JOIN: Upstream("sessions", "id"),
    Strategy.REPORT_JOIN: Upstream("reports", "code"),
    Strategy.REPORT_TYPE_JOIN: Upstream("reports", "report_type_title"),
}


@dataclass(frozen=True)
class TableDescriptor:
    name: str
    strategy: Strategy
    target_columns: tuple[str, ...]
    join_key_column: str | None = None
    participates_in_partitioning: bool = True
    null_key_policy: NullKeyPolicy = NullKeyPolicy.ERROR
    row_id_column: str = "id"
    timestamp_column: str | None = "updated_at"

    @property
    def upstream(self) -> Upstream | None:
        return UPSTREAMS.get(self.strategy)

    @property
    def targets_organization_code(self) -> bool:
        return "organization_code" in self.target_columns


def _org(name: str, **kwargs) -> TableDescriptor:
    kwargs.setdefault("null_key_policy", NullKeyPolicy.DEFAULT)
    return TableDescriptor(
        name, Strategy.ORG_ID_DIRECT, TENANT_AND_ORG, "organization_id", **kwargs
    )


def _user(name: str, key: str, targets: tuple[str, ...] = TENANT_ONLY) -> TableDescriptor:
    return TableDescriptor(name, Strategy.USER_ID_JOIN, targets, key)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

CATALOG: tuple[TableDescriptor, ...] = (
    # Organization id resolved straight from the mapping cache.
    _org("organization_extension", row_id_column="organization_id"),
    _org("user_extensions", row_id_column="user_id", null_key_policy=NullKeyPolicy.ERROR),
    _org("availabilities"),
    _org("default_rules"),
    _org("entity_types"),
    _org("file_uploads"),
    _org("forms"),
    _org("notification_templates"),
    _org("report_queries"),
    _org("reports"),
    _org("role_extensions"),
    # Resolved through user_extensions.user_id.
    _user("sessions", "created_by"),
    _user("feedbacks", "user_id"),
    _user("connection_requests", "created_by"),
    _user("connections", "created_by"),
    _user("issues", "user_id", TENANT_AND_ORG),
    _user("resources", "created_by"),
    _user("session_request", "created_by"),
    _user("question_sets", "created_by", TENANT_AND_ORG),
    _user("questions", "created_by", TENANT_AND_ORG),
    # Resolved through sessions.id.
    TableDescriptor("session_attendees", Strategy.SESSION_JOIN, TENANT_ONLY, "session_id"),
    TableDescriptor("post_session_details", Strategy.SESSION_JOIN, TENANT_ONLY, "session_id"),
    # Resolved through entity_types.id.
    TableDescriptor("entities", Strategy.ENTITY_TYPE_JOIN, TENANT_ONLY, "entity_type_id"),
    # Resolved through reports.
    TableDescriptor("report_role_mapping", Strategy.REPORT_JOIN, TENANT_AND_ORG, "report_code"),
    TableDescriptor("report_types", Strategy.REPORT_TYPE_JOIN, TENANT_AND_ORG, "title"),
    # No linkage at all.
    TableDescriptor("modules", Strategy.DEFAULTS_ONLY, TENANT_ONLY),
)


def get_descriptor(name: str, descriptors: Sequence[TableDescriptor] = CATALOG) -> TableDescriptor:
    for d in descriptors:
        if d.name == name:
            return d
    raise RegistryError(f"No table descriptor named '{name}'")


# ---------------------------------------------------------------------------
# Ordering
# ---------------------------------------------------------------------------

def dependency_order(descriptors: Sequence[TableDescriptor]) -> list[TableDescriptor]:
    """Return ``descriptors`` topologically sorted by upstream dependency.

    Ties are broken by catalog position, so an already well-ordered catalog
    comes back unchanged. DEFAULTS_ONLY tables always sort last.

    Raises:
        RegistryError: On duplicate names, an upstream absent from the
            catalog, or a dependency cycle.
    """
    by_name = {d.name: d for d in descriptors}
    if len(by_name) != len(descriptors):
        counts = Counter(d.name for d in descriptors)
        dupes = sorted(name for name, n in counts.items() if n > 1)
        raise RegistryError(f"Duplicate table descriptors: {dupes}")

    position = {d.name: i for i, d in enumerate(descriptors)}
    non_defaults = {d.name for d in descriptors if d.strategy != Strategy.DEFAULTS_ONLY}

    requires: dict[str, set[str]] = {}
    for d in descriptors:
        deps: set[str] = set()
        upstream = d.upstream
        if upstream is not None:
            if upstream.table not in by_name:
                raise RegistryError(
                    f"{d.name}: upstream table '{upstream.table}' is not in the catalog"
                )
            if upstream.table == d.name:
                raise RegistryError(f"{d.name}: table cannot be its own upstream")
            deps.add(upstream.table)
        if d.strategy == Strategy.DEFAULTS_ONLY:
            deps |= non_defaults
        requires[d.name] = deps

    ordered: list[TableDescriptor] = []
    done: set[str] = set()
    while len(ordered) < len(descriptors):
        ready = [d for d in descriptors if d.name not in done and requires[d.name] <= done]
        if not ready:
            remaining = sorted(set(by_name) - done)
            raise RegistryError(f"Dependency cycle among tables: {remaining}")
        nxt = min(ready, key=lambda d: position[d.name])
        ordered.append(nxt)
        done.add(nxt.name)
    return ordered


def validate_catalog(descriptors: Sequence[TableDescriptor]) -> None:
    """Raise RegistryError if ``descriptors`` is not safe to execute in order.

    Validates:
      - target columns are a non-empty subset of tenant/organization code,
        always including tenant_code
      - join strategies declare a join key; DEFAULTS_ONLY does not need one
      - every upstream is in the catalog and precedes its dependents
      - a dependent targeting organization_code has an upstream that does too
      - DEFAULTS_ONLY tables come after every other table
    """
    order = dependency_order(descriptors)
    position = {d.name: i for i, d in enumerate(descriptors)}
    by_name = {d.name: d for d in order}

    for d in descriptors:
        if not d.target_columns:
            raise RegistryError(f"{d.name}: no target columns declared")
        unknown = set(d.target_columns) - VALID_TARGET_COLUMNS
        if unknown:
            raise RegistryError(f"{d.name}: unknown target columns {sorted(unknown)}")
        if "tenant_code" not in d.target_columns:
            raise RegistryError(f"{d.name}: tenant_code must be a target column")
        if d.strategy != Strategy.DEFAULTS_ONLY and not d.join_key_column:
            raise RegistryError(f"{d.name}: strategy {d.strategy.value} needs a join key column")

        upstream = d.upstream
        if upstream is not None:
            if position[upstream.table] > position[d.name]:
                raise RegistryError(
                    f"{d.name}: upstream '{upstream.table}' must be resolved first"
                )
            if d.targets_organization_code and not by_name[upstream.table].targets_organization_code:
                raise RegistryError(
                    f"{d.name}: targets organization_code but upstream "
                    f"'{upstream.table}' does not resolve it"
                )

    seen_defaults_only = False
    for d in descriptors:
        if d.strategy == Strategy.DEFAULTS_ONLY:
            seen_defaults_only = True
        elif seen_defaults_only:
            raise RegistryError(f"{d.name}: DEFAULTS_ONLY tables must run last")
