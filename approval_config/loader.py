"""
Configuration Loader (``approval_config.loader``).

Responsibility
--------------
Loads YAML files and parses them into the frozen dataclasses of
``approval_config.schema`` (runtime settings) and into
``TemplateDefinition`` objects (authored flow templates).  Runtime callers
go through ``approval_config.get_active_config()``; the template loader is
operator tooling consumed by ``TemplateService.load_definitions``.

Invariants enforced
-------------------
* All parse errors raise ``ValueError`` or ``KeyError`` with descriptive
  messages; no silent defaults for required fields.
* ``compute_checksum`` is deterministic for equal settings.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Missing required keys  -> ``KeyError`` propagates.
* Wrongly typed values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

import yaml

from approval_config.schema import DatabaseSettings, KernelSettings, LockingSettings
from approval_kernel.domain.approval import Priority
from approval_kernel.domain.dtos import TemplateDefinition

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping, got {type(data).__name__}")
    return data


def merge_settings(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_settings(merged[key], value)
        else:
            merged[key] = value
    return merged


def compute_checksum(data: dict[str, Any]) -> str:
    """SHA-256 over the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _as_int(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer, got {value!r}")
    return value


def parse_settings(data: dict[str, Any], source: str = "") -> KernelSettings:
    """
    Parse ``KernelSettings`` from a merged settings dict.

    Raises:
        KeyError: if ``database.url`` is missing.
        ValueError: on wrongly typed or unknown values.
    """
    db = data["database"]
    database = DatabaseSettings(
        url=str(db["url"]),
        pool_size=_as_int(db.get("pool_size", 20), "database.pool_size"),
        max_overflow=_as_int(db.get("max_overflow", 10), "database.max_overflow"),
        pool_timeout=_as_int(db.get("pool_timeout", 30), "database.pool_timeout"),
        echo=bool(db.get("echo", False)),
    )

    timeout = (data.get("locking") or {}).get("timeout_seconds", 0)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout < 0:
        raise ValueError(f"locking.timeout_seconds must be a number >= 0, got {timeout!r}")

    level = str((data.get("logging") or {}).get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {sorted(_LOG_LEVELS)}, got {level!r}")

    keywords = (data.get("approvers") or {}).get("role_keywords") or []
    if not isinstance(keywords, list):
        raise ValueError("approvers.role_keywords must be a list")

    priority = str((data.get("requests") or {}).get("default_priority", "medium"))
    Priority(priority)

    return KernelSettings(
        database=database,
        locking=LockingSettings(timeout_seconds=float(timeout)),
        log_level=level,
        approver_role_keywords=tuple(str(k) for k in keywords),
        default_priority=priority,
        source=source,
        checksum=compute_checksum(data),
    )


def parse_template_definition(data: dict[str, Any]) -> TemplateDefinition:
    """
    Parse one template definition.

    Raises:
        KeyError: if ``name``, ``nodes`` or ``edges`` is missing.
        ValueError: if nodes/edges are not lists.
    """
    nodes = data["nodes"]
    edges = data["edges"]
    if not isinstance(nodes, list) or not isinstance(edges, list):
        raise ValueError(f"template {data.get('name')!r}: nodes and edges must be lists")
    return TemplateDefinition(
        name=data["name"],
        nodes=tuple(nodes),
        edges=tuple(edges),
        description=data.get("description", ""),
        category=data.get("category", ""),
    )


def load_template_definitions(path: Path | str) -> list[TemplateDefinition]:
    """Load every definition under the ``templates`` key of a YAML file."""
    data = load_yaml_file(Path(path))
    entries = data["templates"]
    if not isinstance(entries, list):
        raise ValueError(f"{path}: 'templates' must be a list")
    return [parse_template_definition(entry) for entry in entries]
