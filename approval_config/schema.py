"""
Configuration schema (``approval_config.schema``).

Frozen dataclasses describing the runtime settings of the approval kernel.
Instances are produced by ``approval_config.loader`` and handed out by
``approval_config.get_active_config()``; nothing mutates them afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class DatabaseSettings:
    url: str
    pool_size: int = 20
    max_overflow: int = 10
    pool_timeout: int = 30
    echo: bool = False


@dataclass(frozen=True)
class LockingSettings:
    # Seconds to wait for a contended instance; 0 fails fast.
    timeout_seconds: float = 0.0


@dataclass(frozen=True)
class KernelSettings:
    """Everything the kernel reads from configuration."""

    database: DatabaseSettings
    locking: LockingSettings = field(default_factory=LockingSettings)
    log_level: str = "INFO"
    approver_role_keywords: tuple[str, ...] = ()
    default_priority: str = "medium"
    source: str = ""
    checksum: str = ""
