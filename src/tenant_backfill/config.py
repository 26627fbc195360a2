"""tenant_backfill.config

Run configuration for the backfill engine.

Responsibilities:
  - Load an optional YAML config file (yaml.safe_load)
  - Overlay environment variables, then explicit CLI overrides
  - Validate that the required default codes and connection parameters
    are present; there is no implicit fallback for either

Usage:
    from pathlib import Path
    from tenant_backfill.config import load_config, validate_config

    config = load_config(Path("config/backfill.yml"), overrides={"batch_size": 2000})
    validate_config(config)
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from tenant_backfill.normalize import trim
from tenant_backfill.shared import ConfigurationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BATCH_SIZE = 5000

TARGET_COLUMNS = ("tenant_code", "organization_code")

# First variable found wins.
ENV_VARS: dict[str, tuple[str, ...]] = {
    "db_dsn": ("DATABASE_URL",),
    "default_tenant_code": ("DEFAULT_TENANT_CODE",),
    "default_organization_code": (
        "DEFAULT_ORGANIZATION_CODE",
        "DEFAULT_ORGANISATION_CODE",
    ),
    "mapping_path": ("TENANT_MAPPING_PATH",),
    "batch_size": ("BACKFILL_BATCH_SIZE",),
}


# ---------------------------------------------------------------------------
# BackfillConfig dataclass
# ---------------------------------------------------------------------------

@dataclass
class BackfillConfig:
    """Resolved configuration for one backfill run."""

    db_dsn: str | None = None
    default_tenant_code: str | None = None
    default_organization_code: str | None = None
    mapping_path: str | None = None
    mapping_delimiter: str = ","
    batch_size: int = DEFAULT_BATCH_SIZE
    schema: str = "public"
    source_of_truth_table: str = "organization_extension"
    overwrite_existing: bool = True
    create_indexes: bool = False
    artifacts_dir: str = "./artifacts"
    table_defaults: dict[str, dict[str, str]] = field(default_factory=dict)

    def defaults_for(self, table: str) -> dict[str, str | None]:
        """Default codes for ``table``: per-table overrides over the globals."""
        values: dict[str, str | None] = {
            "tenant_code": self.default_tenant_code,
            "organization_code": self.default_organization_code,
        }
        values.update(self.table_defaults.get(table, {}))
        return values


_KNOWN_KEYS = frozenset(f.name for f in fields(BackfillConfig))


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_config(
    config_path: Path | None = None,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> BackfillConfig:
    """Build a BackfillConfig from YAML, environment and explicit overrides.

    Precedence (highest first): ``overrides`` (None values ignored), the
    environment, the YAML file, dataclass defaults.

    Raises:
        ConfigurationError: If the file is missing, not a mapping, contains
            unknown keys, or a value has the wrong type.
    """
    env = os.environ if environ is None else environ
    data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {config_path}")
        loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigurationError("Config YAML root must be a mapping.")
        unknown = set(loaded) - _KNOWN_KEYS
        if unknown:
            raise ConfigurationError(f"Unknown config keys: {sorted(unknown)}")
        data.update(loaded)

    for key, names in ENV_VARS.items():
        for name in names:
            value = trim(env.get(name))
            if value is not None:
                data[key] = value
                break

    for key, value in (overrides or {}).items():
        if value is None:
            continue
        if key not in _KNOWN_KEYS:
            raise ConfigurationError(f"Unknown config override: {key}")
        data[key] = value

    return _coerce(data)


def _coerce(data: dict[str, Any]) -> BackfillConfig:
    try:
        batch_size = int(data.get("batch_size", DEFAULT_BATCH_SIZE))
    except (TypeError, ValueError):
        raise ConfigurationError(f"batch_size '{data.get('batch_size')}' is not an integer.")

    table_defaults: dict[str, dict[str, str]] = {}
    raw_defaults = data.get("table_defaults") or {}
    if not isinstance(raw_defaults, dict):
        raise ConfigurationError("table_defaults must be a mapping of table -> codes.")
    for table, codes in raw_defaults.items():
        if not isinstance(codes, dict):
            raise ConfigurationError(f"table_defaults.{table} must be a mapping.")
        bad = set(codes) - set(TARGET_COLUMNS)
        if bad:
            raise ConfigurationError(
                f"table_defaults.{table} has unknown columns {sorted(bad)}; "
                f"allowed: {list(TARGET_COLUMNS)}"
            )
        table_defaults[str(table)] = {
            col: str(val).strip() for col, val in codes.items() if trim(str(val))
        }

    return BackfillConfig(
        db_dsn=trim(_as_str(data.get("db_dsn"))),
        default_tenant_code=trim(_as_str(data.get("default_tenant_code"))),
        default_organization_code=trim(_as_str(data.get("default_organization_code"))),
        mapping_path=trim(_as_str(data.get("mapping_path"))),
        mapping_delimiter=str(data.get("mapping_delimiter") or ","),
        batch_size=batch_size,
        schema=str(data.get("schema") or "public"),
        source_of_truth_table=str(data.get("source_of_truth_table") or "organization_extension"),
        overwrite_existing=_as_bool(data.get("overwrite_existing", True)),
        create_indexes=_as_bool(data.get("create_indexes", False)),
        artifacts_dir=str(data.get("artifacts_dir") or "./artifacts"),
        table_defaults=table_defaults,
    )


def _as_str(value: Any) -> str | None:
    return None if value is None else str(value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("1", "true", "yes", "on"):
        return True
    if text in ("0", "false", "no", "off", ""):
        return False
    raise ConfigurationError(f"'{value}' is not a boolean.")


def validate_config(
    config: BackfillConfig,
    require_defaults: bool = True,
    require_mapping: bool = True,
) -> None:
    """Raise ConfigurationError listing every problem with ``config``.

    Validates:
      - connection parameters present
      - default tenant / organization codes present (no implicit fallback)
      - mapping file configured
      - batch_size >= 1 and a single-character delimiter
    """
    problems: list[str] = []
    if not config.db_dsn:
        problems.append("database connection (db_dsn / DATABASE_URL) is required")
    if require_defaults:
        if not config.default_tenant_code:
            problems.append("default_tenant_code (DEFAULT_TENANT_CODE) is required")
        if not config.default_organization_code:
            problems.append(
                "default_organization_code (DEFAULT_ORGANIZATION_CODE) is required"
            )
    if require_mapping and not config.mapping_path:
        problems.append("mapping_path (TENANT_MAPPING_PATH) is required")
    if config.batch_size < 1:
        problems.append(f"batch_size must be >= 1, got {config.batch_size}")
    if len(config.mapping_delimiter) != 1:
        problems.append(
            f"mapping_delimiter must be a single character, got {config.mapping_delimiter!r}"
        )
    if problems:
        raise ConfigurationError("Invalid configuration: " + "; ".join(problems))
