from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from db_copy.errors import FatalConfigurationError

# ============================== Config model ===============================


@dataclass(frozen=True)
class CopyConfig:
    source_conn_id: str
    target_conn_id: str
    source_schema: str = "public"
    target_schema: str = "public"
    default_record_count: int = 10_000
    change_threshold_percent: float = 40.0
    excess_threshold_percent: Optional[float] = None   # None -> change_threshold_percent
    parallel_fetch: int = 4
    parallel_insert: int = 4
    batch_size: int = 10_000
    tables_to_include: Tuple[str, ...] = ("*",)
    tables_to_exclude: Tuple[str, ...] = ()
    fields_to_exclude: Tuple[str, ...] = ()            # "Field" (global) or "Table.Field"
    strategy_overrides: str = ""                       # directive lines
    row_id_column: str = "recid"
    version_column: str = "sysrowversion"
    sequence_name_template: str = "{table}_{row_id}_seq"
    flush_tokens_per_table: bool = False
    validate: bool = True
    comments: str = ""

    @property
    def pair_key(self) -> str:
        return f"{self.source_conn_id}__{self.target_conn_id}"


# ============================== Catalog helpers ===============================

def load_catalog(path: str | Path) -> Dict[str, Any]:
    path = Path(path)
    if not path.exists():
        raise FatalConfigurationError(f"Catalog file not found: {path}")
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        raise FatalConfigurationError(f"Catalog file {path} is empty")
    try:
        catalog = json.loads(raw)
    except json.JSONDecodeError as e:
        raise FatalConfigurationError(f"Invalid JSON in catalog file {path}: {e}") from e
    if not isinstance(catalog, dict):
        raise FatalConfigurationError(f"Catalog file {path} must hold a JSON object")
    return catalog


def _cfg_get(root: Dict[str, Any], pair: Dict[str, Any], key: str, default=None):
    return pair.get(key, root.get(key, default))


def _lines(value) -> Tuple[str, ...]:
    """Accept a list of strings or one newline-separated string."""
    if value is None:
        return ()
    items = value.splitlines() if isinstance(value, str) else list(value)
    return tuple(s.strip() for s in items if s and s.strip())


def _text(value) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else "\n".join(value)


def create_copy_config(root: Dict[str, Any], pair: Dict[str, Any]) -> CopyConfig:
    try:
        source_conn_id = pair["source_conn_id"]
        target_conn_id = _cfg_get(root, pair, "target_conn_id")
    except KeyError as e:
        raise FatalConfigurationError(f"Catalog pair is missing required key {e}") from e
    if not target_conn_id:
        raise FatalConfigurationError(f"Catalog pair {source_conn_id!r} has no target_conn_id")

    excess = _cfg_get(root, pair, "excess_threshold_percent")
    try:
        return CopyConfig(
            source_conn_id=source_conn_id,
            target_conn_id=target_conn_id,
            source_schema=_cfg_get(root, pair, "source_schema", "public"),
            target_schema=_cfg_get(root, pair, "target_schema", _cfg_get(root, pair, "source_schema", "public")),
            default_record_count=int(_cfg_get(root, pair, "default_record_count", 10_000)),
            change_threshold_percent=float(_cfg_get(root, pair, "change_threshold_percent", 40.0)),
            excess_threshold_percent=float(excess) if excess is not None else None,
            parallel_fetch=max(1, int(_cfg_get(root, pair, "parallel_fetch", 4))),
            parallel_insert=max(1, int(_cfg_get(root, pair, "parallel_insert", 4))),
            batch_size=int(_cfg_get(root, pair, "batch_size", 10_000)),
            tables_to_include=_lines(_cfg_get(root, pair, "tables_to_include", ["*"])),
            tables_to_exclude=_lines(_cfg_get(root, pair, "tables_to_exclude")),
            fields_to_exclude=_lines(_cfg_get(root, pair, "fields_to_exclude")),
            strategy_overrides=_text(pair.get("strategy_overrides")),
            row_id_column=_cfg_get(root, pair, "row_id_column", "recid"),
            version_column=_cfg_get(root, pair, "version_column", "sysrowversion"),
            sequence_name_template=_cfg_get(root, pair, "sequence_name_template", "{table}_{row_id}_seq"),
            flush_tokens_per_table=bool(_cfg_get(root, pair, "flush_tokens_per_table", False)),
            validate=bool(_cfg_get(root, pair, "validate", True)),
            comments=pair.get("comments", ""),
        )
    except (TypeError, ValueError) as e:
        raise FatalConfigurationError(f"Invalid value in catalog pair {source_conn_id!r}: {e}") from e


def configs_from_catalog(catalog: Dict[str, Any]):
    pairs = catalog.get("pairs")
    if not isinstance(pairs, list):
        raise FatalConfigurationError("Catalog must contain a list of copy pairs under 'pairs'.")
    return [create_copy_config(catalog, p) for p in pairs if isinstance(p, dict)]
