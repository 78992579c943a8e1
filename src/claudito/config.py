"""Configuration management for the Claudito server.

Values come from dataclass defaults, then ``CLAUDITO_*`` environment
variables, then explicit overrides (usually CLI flags).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping, Optional

from .errors import ConfigError

_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class AppConfig:
    """Main configuration object."""
    host: str = "0.0.0.0"
    port: int = 3000
    data_dir: Path = field(default_factory=lambda: Path.home() / ".claudito")
    max_concurrent_agents: int = 3
    dev_mode: bool = False
    claude_path: str = "claude"
    log_level: str = "INFO"

    @property
    def pids_file(self) -> Path:
        return self.data_dir / "pids.json"


_ENV_VARS = {
    "host": "CLAUDITO_HOST",
    "port": "CLAUDITO_PORT",
    "data_dir": "CLAUDITO_DATA_DIR",
    "max_concurrent_agents": "CLAUDITO_MAX_AGENTS",
    "dev_mode": "CLAUDITO_DEV_MODE",
    "claude_path": "CLAUDITO_CLAUDE_PATH",
    "log_level": "CLAUDITO_LOG_LEVEL",
}


def _coerce(name: str, raw: Any) -> Any:
    if name in ("port", "max_concurrent_agents"):
        try:
            value = int(raw)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be an integer, got {raw!r}")
        if value < 1:
            raise ConfigError(f"{name} must be positive, got {value}")
        return value
    if name == "dev_mode":
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in _TRUE_VALUES
    if name == "data_dir":
        return Path(raw).expanduser()
    if name == "log_level":
        return str(raw).upper()
    return raw


def load_config(
    env: Optional[Mapping[str, str]] = None,
    **overrides: Any,
) -> AppConfig:
    """Load configuration with defaults.

    Args:
        env: Environment mapping to read (defaults to ``os.environ``)
        **overrides: Field values that win over the environment. ``None``
            values are ignored so argparse results can be passed directly.

    Returns:
        AppConfig with resolved values.
    """
    env = os.environ if env is None else env
    values: dict[str, Any] = {}

    for name, var in _ENV_VARS.items():
        if var in env and env[var] != "":
            values[name] = _coerce(name, env[var])

    known = {f.name for f in fields(AppConfig)}
    for name, value in overrides.items():
        if name not in known:
            raise ConfigError(f"Unknown configuration field: {name}")
        if value is not None:
            values[name] = _coerce(name, value)

    return replace(AppConfig(), **values)
