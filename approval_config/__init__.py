"""
approval_config -- single public entrypoint for approval kernel settings.

Responsibility:
    Provides the ONLY way to obtain runtime settings through
    ``get_active_config()``.  No other component reads configuration files
    or environment variables directly.  Also exposes
    ``load_template_definitions()`` for operator tooling that seeds flow
    templates from YAML.

Architecture position:
    Configuration -- sits above ``approval_kernel``.  The kernel MUST NEVER
    import from ``approval_config``; scripts read settings here and pass
    plain values (URLs, timeouts, keyword lists) into kernel constructors.

Resolution order (later wins):
    1. ``approval_config/defaults.yaml``
    2. the file named by ``path`` or, if absent, ``APPROVAL_CONFIG_PATH``
    3. ``DATABASE_URL`` and ``APPROVAL_LOG_LEVEL`` environment variables

Failure modes:
    - ``FileNotFoundError`` -- override file does not exist.
    - ``yaml.YAMLError`` -- malformed YAML.
    - ``KeyError`` / ``ValueError`` -- schema violations.

Audit relevance:
    Every successful ``get_active_config()`` call emits an
    ``APPROVAL_CONFIG_TRACE`` log entry with the source files and the
    checksum of the merged settings.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from approval_config.loader import (
    load_template_definitions,
    load_yaml_file,
    merge_settings,
    parse_settings,
)
from approval_config.schema import DatabaseSettings, KernelSettings, LockingSettings

_logger = logging.getLogger("approval_kernel.config")

_DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

CONFIG_PATH_ENV = "APPROVAL_CONFIG_PATH"
DATABASE_URL_ENV = "DATABASE_URL"
LOG_LEVEL_ENV = "APPROVAL_LOG_LEVEL"


def get_active_config(path: Path | str | None = None) -> KernelSettings:
    """The ONLY public settings entrypoint.

    Args:
        path: Optional override file.  Defaults to ``APPROVAL_CONFIG_PATH``
            when set.

    Returns:
        Frozen ``KernelSettings``.
    """
    data = load_yaml_file(_DEFAULTS_PATH)
    sources = [str(_DEFAULTS_PATH)]

    override = path or os.environ.get(CONFIG_PATH_ENV)
    if override:
        data = merge_settings(data, load_yaml_file(Path(override)))
        sources.append(str(override))

    env_url = os.environ.get(DATABASE_URL_ENV)
    if env_url:
        data = merge_settings(data, {"database": {"url": env_url}})
        sources.append(f"env:{DATABASE_URL_ENV}")
    env_level = os.environ.get(LOG_LEVEL_ENV)
    if env_level:
        data = merge_settings(data, {"logging": {"level": env_level}})
        sources.append(f"env:{LOG_LEVEL_ENV}")

    settings = parse_settings(data, source=";".join(sources))

    _logger.info(
        "APPROVAL_CONFIG_TRACE",
        extra={
            "config_sources": sources,
            "checksum": settings.checksum,
            "lock_timeout_seconds": settings.locking.timeout_seconds,
            "approver_role_keywords": list(settings.approver_role_keywords),
        },
    )
    return settings


__all__ = [
    "DatabaseSettings",
    "KernelSettings",
    "LockingSettings",
    "get_active_config",
    "load_template_definitions",
]
