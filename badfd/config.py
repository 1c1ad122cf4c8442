"""Tracer configuration: an immutable snapshot built once before the hooks go live."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ._types import EVENT_SIZE
from .errors import ConfigError

logger = logging.getLogger("config")

NS_PER_MS = 1_000_000
# errors-only mode pushes the latency threshold out of reach
ERRORS_ONLY_THRESHOLD_NS = 3600 * 1000 * NS_PER_MS

FALLBACK_DEFAULTS: Dict[str, Any] = {
    "threshold_ms": 10,
    "errors_only": False,
    "pending_capacity": 10240,
    "channel_capacity": 1 << 24,
}


@dataclass(frozen=True)
class TracerConfig:
    threshold_ns: int = FALLBACK_DEFAULTS["threshold_ms"] * NS_PER_MS
    pending_capacity: int = FALLBACK_DEFAULTS["pending_capacity"]
    channel_capacity: int = FALLBACK_DEFAULTS["channel_capacity"]

    def __post_init__(self):
        if self.threshold_ns < 0:
            raise ConfigError(f"threshold must be >= 0ns, got {self.threshold_ns}")
        if self.pending_capacity < 1:
            raise ConfigError(f"pending_capacity must be >= 1, got {self.pending_capacity}")
        if self.channel_capacity < EVENT_SIZE:
            raise ConfigError(
                f"channel_capacity must hold at least one {EVENT_SIZE}-byte record, got {self.channel_capacity}"
            )

    @property
    def threshold_ms(self) -> float:
        return self.threshold_ns / NS_PER_MS

    @property
    def channel_slots(self) -> int:
        return self.channel_capacity // EVENT_SIZE


def _read_yaml(config_path: str) -> Dict[str, Any]:
    config_file = Path(config_path)
    if not config_file.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    logger.info("Loading tracer config from: %s", config_file)
    try:
        with open(config_file, "r") as f:
            user_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    if not isinstance(user_config, dict) or "badfd" not in user_config:
        logger.warning("Config file has no 'badfd' section. Using defaults.")
        return {}

    section = user_config["badfd"] or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'badfd' section in {config_path} must be a mapping")

    unknown = set(section) - set(FALLBACK_DEFAULTS)
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))

    return {k: v for k, v in section.items() if k in FALLBACK_DEFAULTS}


def load_config(
        config_path: Optional[str] = None,
        threshold_ms: Optional[int] = None,
        errors_only: Optional[bool] = None,
        pending_capacity: Optional[int] = None,
        channel_capacity: Optional[int] = None,
) -> TracerConfig:
    """
    Build the configuration snapshot.

    Precedence: explicit arguments (CLI flags) > YAML file > FALLBACK_DEFAULTS.
    """
    settings = dict(FALLBACK_DEFAULTS)
    if config_path:
        settings.update(_read_yaml(config_path))

    overrides = {
        "threshold_ms": threshold_ms,
        "errors_only": errors_only,
        "pending_capacity": pending_capacity,
        "channel_capacity": channel_capacity,
    }
    settings.update({k: v for k, v in overrides.items() if v is not None})

    try:
        ms = int(settings["threshold_ms"])
        pending = int(settings["pending_capacity"])
        capacity = int(settings["channel_capacity"])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid numeric config value: {e}") from e

    if ms < 0:
        raise ConfigError(f"threshold_ms must be >= 0, got {ms}")

    threshold_ns = ERRORS_ONLY_THRESHOLD_NS if settings["errors_only"] else ms * NS_PER_MS

    return TracerConfig(
        threshold_ns=threshold_ns,
        pending_capacity=pending,
        channel_capacity=capacity,
    )
