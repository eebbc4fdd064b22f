"""
jerkyrank.config - YAML Configuration Loader
=============================================

Reads ``config.yaml`` for the engine's tunables (batching, throttles,
cache TTLs, tier thresholds, pool sizing).  Secrets such as
``DATABASE_URL`` and ``JWT_SECRET`` stay in ``.env``.

Every key is optional; a missing file yields the defaults.

Usage::

    from jerkyrank.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.batch_size)        # 10
    print(cfg.tier_thresholds)   # {"bronze": 40, ...}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from jerkyrank.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_TIER_THRESHOLDS: dict[str, int] = {
    "bronze": 40,
    "silver": 60,
    "gold": 75,
    "platinum": 90,
    "diamond": 100,
}


# ---------------------------------------------------------------------------
# Pool sizing - one entry per logical pool
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class PoolConfig:
    pool_size: int
    max_overflow: int


DEFAULT_POOLS: dict[str, PoolConfig] = {
    "interactive": PoolConfig(pool_size=10, max_overflow=10),
    "webhook": PoolConfig(pool_size=3, max_overflow=2),
    "background": PoolConfig(pool_size=5, max_overflow=5),
}


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class EngineConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # ActivityIngestor
    batch_size: int = 10
    batch_interval_seconds: float = 5.0

    # ClassificationQueue
    classification_workers: int = 4
    recalc_throttle_seconds: float = 60.0
    shutdown_grace_seconds: float = 10.0

    # CacheLayer
    leaderboard_ttl_seconds: float = 300.0
    position_ttl_seconds: float = 300.0
    profile_ttl_seconds: float = 600.0
    leaderboard_default_limit: int = 50

    # Warmer
    warm_spacing_seconds: float = 0.25
    ready_max_retries: int = 10
    ready_retry_delay_seconds: float = 1.0
    ready_timeout_seconds: float = 30.0

    # Retry policy for transient store errors
    retry_attempts: int = 3
    retry_base_delay_seconds: float = 0.1

    # Achievements
    tier_thresholds: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_TIER_THRESHOLDS)
    )
    total_rankable_products: int | None = None

    # Rankings
    forbid_rank_gaps: bool = False

    # Database
    pools: dict[str, PoolConfig] = field(default_factory=lambda: dict(DEFAULT_POOLS))
    pool_timeout_seconds: float = 10.0
    statement_timeout_ms: int = 15_000


def _validate_thresholds(raw: Any) -> dict[str, int]:
    if not isinstance(raw, dict):
        raise ValidationError("tier_thresholds must be a mapping of tier → percentage")
    merged = dict(DEFAULT_TIER_THRESHOLDS)
    for tier, value in raw.items():
        if tier not in DEFAULT_TIER_THRESHOLDS:
            raise ValidationError(f"Unknown tier in tier_thresholds: {tier!r}")
        merged[tier] = int(value)
    previous = 0
    for tier in DEFAULT_TIER_THRESHOLDS:
        value = merged[tier]
        if not 0 < value <= 100 or value <= previous:
            raise ValidationError(
                f"tier_thresholds must be strictly increasing within 1..100 (bad {tier}={value})"
            )
        previous = value
    return merged


def _parse_pools(raw: Any) -> dict[str, PoolConfig]:
    pools = dict(DEFAULT_POOLS)
    if raw is None:
        return pools
    if not isinstance(raw, dict):
        raise ValidationError("pools must be a mapping")
    for name, values in raw.items():
        if name not in DEFAULT_POOLS:
            raise ValidationError(f"Unknown pool {name!r}; expected one of {sorted(DEFAULT_POOLS)}")
        base = DEFAULT_POOLS[name]
        values = values or {}
        pools[name] = PoolConfig(
            pool_size=int(values.get("pool_size", base.pool_size)),
            max_overflow=int(values.get("max_overflow", base.max_overflow)),
        )
    return pools


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def config_from_dict(raw: dict[str, Any]) -> EngineConfig:
    """Build an :class:`EngineConfig` from an already-parsed mapping.

    Raises
    ------
    ValidationError
        If a key is unknown or a value is out of range.
    """
    known = {f.name for f in fields(EngineConfig)}
    unknown = set(raw) - known
    if unknown:
        raise ValidationError(f"Unknown config keys: {sorted(unknown)}")

    values: dict[str, Any] = {}
    for f in fields(EngineConfig):
        if f.name not in raw or raw[f.name] is None:
            continue
        value = raw[f.name]
        if f.name == "tier_thresholds":
            values[f.name] = _validate_thresholds(value)
        elif f.name == "pools":
            values[f.name] = _parse_pools(value)
        elif f.name == "total_rankable_products":
            values[f.name] = int(value)
        elif isinstance(f.default, bool):
            if not isinstance(value, bool):
                raise ValidationError(f"{f.name} must be true or false, got {value!r}")
            values[f.name] = value
        elif isinstance(f.default, int):
            values[f.name] = int(value)
        else:
            values[f.name] = float(value)

    cfg = EngineConfig(**values)
    if cfg.batch_size < 1:
        raise ValidationError("batch_size must be at least 1")
    if cfg.classification_workers < 1:
        raise ValidationError("classification_workers must be at least 1")
    if cfg.retry_attempts < 1:
        raise ValidationError("retry_attempts must be at least 1")
    return cfg


def load_config(path: str | Path = "config.yaml") -> EngineConfig:
    """Read *path* and return an :class:`EngineConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.
        A missing file is not an error: the defaults are returned.
    """
    config_path = Path(path)
    if not config_path.exists():
        logger.info("No config file at %s, using defaults", config_path.resolve())
        return EngineConfig()

    with open(config_path, encoding="utf-8") as fh:
        raw = yaml.safe_load(fh) or {}

    if not isinstance(raw, dict):
        raise ValidationError(f"{config_path} must contain a YAML mapping")
    return config_from_dict(raw)
