"""
keel.config — Global config management.

~/.keel/config.yaml:

    concurrency: 4
    retry:
      max_attempts: 5
      multiplier: 1.0
      min: 1.0
      max: 30.0
    state_dir: .keel
    backend: local
    logging:
      level: info
      format: console
    local:
      account: "000000000000"
      region: us-east-1

Environment variables override the file:
    KEEL_HOME, KEEL_CONCURRENCY, KEEL_MAX_ATTEMPTS, KEEL_STATE_DIR,
    KEEL_BACKEND, KEEL_LOG_LEVEL
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

_LOG_LEVELS = ("debug", "info", "warning", "error", "critical")
_LOG_FORMATS = ("console", "json")


class ConfigError(Exception):
    """Invalid configuration."""
    pass


@dataclass
class Settings:
    """Global keel settings."""
    concurrency: int = 4
    max_attempts: int = 5
    backoff_multiplier: float = 1.0
    backoff_min: float = 1.0
    backoff_max: float = 30.0
    state_dir: Path = field(default_factory=lambda: Path(".keel"))
    backend: str = "local"
    log_level: str = "info"
    log_format: str = "console"
    account: str = "000000000000"
    region: str = "us-east-1"

    def __post_init__(self) -> None:
        self.state_dir = Path(self.state_dir)
        if self.concurrency < 1:
            raise ConfigError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.max_attempts < 1:
            raise ConfigError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if self.backoff_min < 0 or self.backoff_max < self.backoff_min:
            raise ConfigError(
                f"Invalid backoff window: min={self.backoff_min} max={self.backoff_max}"
            )
        self.log_level = self.log_level.lower()
        if self.log_level not in _LOG_LEVELS:
            raise ConfigError(f"Unknown log level '{self.log_level}'")
        if self.log_format not in _LOG_FORMATS:
            raise ConfigError(f"Unknown log format '{self.log_format}'")

    def report_path(self, stack: str) -> Path:
        """Where the deployment report of a stack is persisted."""
        return self.state_dir / f"{stack}.report.yaml"

    def lock_path(self, stack: str) -> Path:
        return self.state_dir / "locks" / f"{stack}.lock"


def keel_home() -> Path:
    return Path(os.environ.get("KEEL_HOME") or Path.home() / ".keel")


def config_path() -> Path:
    return keel_home() / "config.yaml"


def load_settings(path: str | Path | None = None) -> Settings:
    """Read the config file, then apply environment overrides."""
    cp = Path(path) if path else config_path()
    data: dict[str, Any] = {}
    if cp.exists():
        with open(cp) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file must be a YAML mapping: {cp}")

    retry = data.get("retry", {}) or {}
    logging_cfg = data.get("logging", {}) or {}
    local = data.get("local", {}) or {}

    values: dict[str, Any] = {
        "concurrency": data.get("concurrency", 4),
        "max_attempts": retry.get("max_attempts", 5),
        "backoff_multiplier": retry.get("multiplier", 1.0),
        "backoff_min": retry.get("min", 1.0),
        "backoff_max": retry.get("max", 30.0),
        "state_dir": data.get("state_dir", ".keel"),
        "backend": data.get("backend", "local"),
        "log_level": logging_cfg.get("level", "info"),
        "log_format": logging_cfg.get("format", "console"),
        "account": str(local.get("account", "000000000000")),
        "region": local.get("region", "us-east-1"),
    }

    env_overrides = {
        "KEEL_CONCURRENCY": ("concurrency", int),
        "KEEL_MAX_ATTEMPTS": ("max_attempts", int),
        "KEEL_STATE_DIR": ("state_dir", str),
        "KEEL_BACKEND": ("backend", str),
        "KEEL_LOG_LEVEL": ("log_level", str),
    }
    for var, (key, cast) in env_overrides.items():
        raw = os.environ.get(var, "").strip()
        if not raw:
            continue
        try:
            values[key] = cast(raw)
        except ValueError as e:
            raise ConfigError(f"Invalid {var}={raw!r}: {e}") from e

    try:
        return Settings(**values)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid config in {cp}: {e}") from e
