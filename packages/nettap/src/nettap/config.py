"""Configuration management for nettap.

Settings come from, lowest precedence first: built-in defaults, a
``nettap.toml`` in the current or a parent directory, ``NETTAP_*`` environment
variables, and keyword overrides passed to ``register()``.

PUBLIC API:
  - NettapConfig: Resolved settings
  - load_config: Build a NettapConfig from all sources
"""

import logging
import os
import tempfile
import tomllib
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

__all__ = ["NettapConfig", "load_config", "DEFAULT_PORT"]

logger = logging.getLogger(__name__)

DEFAULT_PORT = 9229

# camelCase names accepted for compatibility with the documented option names
_ALIASES = {
    "autoOpen": "auto_open",
    "maxBodySize": "max_body_size",
    "bodyTimeout": "body_timeout",
    "probeInterval": "probe_interval",
    "sweepInterval": "sweep_interval",
    "leaseDir": "lease_dir",
    "startupTimeout": "startup_timeout",
    "stackLimit": "stack_limit",
}

_ENV = {
    "NETTAP_PORT": ("port", int),
    "NETTAP_HOST": ("host", str),
    "NETTAP_AUTO_OPEN": ("auto_open", lambda v: v.lower() in ("1", "true", "yes", "on")),
    "NETTAP_MAX_BODY_SIZE": ("max_body_size", int),
    "NETTAP_LEASE_DIR": ("lease_dir", str),
}


@dataclass(frozen=True)
class NettapConfig:
    """Resolved nettap settings."""

    port: int = DEFAULT_PORT
    host: str = "127.0.0.1"
    auto_open: bool = False
    max_body_size: int = 10 * 1024 * 1024
    retention_count: int = 1000
    retention_age: float = 300.0
    sweep_interval: float = 5.0
    body_timeout: float = 10.0
    probe_interval: float = 2.0
    replay: bool = True
    ipc_queue_size: int = 1000
    detached: bool = False
    startup_timeout: float = 30.0
    stack_limit: int = 10
    lease_dir: str = field(default_factory=tempfile.gettempdir)

    @property
    def lease_path(self) -> Path:
        return Path(self.lease_dir) / f"nettap-{self.port}.lease"

    def with_overrides(self, **overrides: Any) -> "NettapConfig":
        """Return a copy with normalized overrides applied."""
        return replace(self, **_normalize(overrides))


def _find_config_file() -> Optional[Path]:
    """Find nettap.toml in current or parent directories."""
    current = Path.cwd()

    for parent in [current] + list(current.parents):
        config_file = parent / "nettap.toml"
        if config_file.exists():
            return config_file

    return None


def _load_file(path: Optional[Path]) -> dict:
    if path is None or not path.exists():
        return {}

    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning(f"Ignoring unreadable config {path}: {e}")
        return {}

    # Settings may live at top level or under a [nettap] table
    return data.get("nettap", data)


def _normalize(options: dict) -> dict:
    """Map aliases to field names, expand ``retention``, drop unknown keys."""
    known = {f.name for f in fields(NettapConfig)}
    result = {}
    for key, value in options.items():
        if value is None:
            continue
        if key == "retention":
            if isinstance(value, dict):
                if "count" in value:
                    result["retention_count"] = int(value["count"])
                if "age" in value:
                    result["retention_age"] = float(value["age"])
            else:
                result["retention_count"] = int(value)
            continue

        name = _ALIASES.get(key, key)
        if name not in known:
            logger.warning(f"Unknown nettap option: {key}")
            continue
        result[name] = value
    return result


def _from_env() -> dict:
    result = {}
    for var, (name, convert) in _ENV.items():
        raw = os.environ.get(var)
        if raw is None:
            continue
        try:
            result[name] = convert(raw)
        except ValueError:
            logger.warning(f"Ignoring invalid {var}={raw!r}")
    return result


def load_config(path: Optional[Path] = None, **overrides: Any) -> NettapConfig:
    """Build a NettapConfig from file, environment and overrides.

    Args:
        path: Explicit config file. Defaults to searching for nettap.toml.
        **overrides: Highest-precedence settings (field names or aliases).
    """
    options = _normalize(_load_file(path or _find_config_file()))
    options.update(_from_env())
    options.update(_normalize(overrides))
    return NettapConfig(**options)
