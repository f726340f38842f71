"""
CBS Books Configuration

Settings come from three layers, later ones winning:

    1. _DEFAULTS below (the app starts even with no settings file)
    2. config/settings.toml
    3. CBS_<SECTION>_<KEY> environment variables, e.g. CBS_REMOTE_BASE_URL

Values that would break the ledger (an unknown email transport, a negative
due-day count, a port out of range) are logged and replaced by the default.

Uses stdlib tomllib (Python 3.11+).

Usage:
    from core.config import get_config

    config = get_config()
    base = config.remote.base_url         # dot-access
    ttl  = config.cache.ttl_seconds
    config.reload()                       # re-read from disk
"""

import copy
import logging
import os
import threading
import tomllib
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

logger = logging.getLogger("cbs.config")

ENV_PREFIX = "CBS_"
DEFAULT_PATH = Path(__file__).resolve().parent.parent / "config" / "settings.toml"


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

_DEFAULTS: dict[str, Any] = {
    "remote": {
        "base_url": "http://localhost:8888/api/cbsbooks",
        "timeout": 30.0,
    },
    "cache": {
        "enabled": True,
        "dir": "data/cache",
        "ttl_seconds": 7 * 24 * 60 * 60,
    },
    "email": {
        "transport": "http",            # http | smtp
        "endpoint": "http://localhost:8888/api/cbsbooks/send-email",
        "timeout": 30.0,
    },
    "smtp": {
        "host": "",
        "port": 587,
        "user": "",
        "password": "",
        "use_tls": True,
        "from_name": "Cascade Builder Services",
    },
    "payments": {
        "enabled": True,
        "endpoint": "http://localhost:8888/api/cbsbooks/create-payment-link",
        "timeout": 30.0,
    },
    "sender": {
        "name": "Cascade Builder Services",
        "address_lines": ["3519 Fox Ct.", "Gig Harbor, WA 98335"],
        "email": "",
        "logo_path": "",
    },
    "invoices": {
        "number_prefix": "INV",
        "due_days": 30,
        "default_item_description": "Walk through and warranty management services",
    },
    "api": {
        "host": "127.0.0.1",
        "port": 8080,
        "api_key": "",
    },
    "logging": {
        "level": "info",
    },
    "events": {
        "max_events": 1000,
    },
}

# Short env names kept for deploy scripts
_ENV_ALIASES = {
    "CBS_API_KEY": ("api", "api_key"),
    "CBS_LOG_LEVEL": ("logging", "level"),
}

# dotpath → predicate a value must satisfy
_CHECKS: dict[str, Callable[[Any], bool]] = {
    "email.transport": lambda v: str(v).lower() in ("http", "smtp"),
    "cache.ttl_seconds": lambda v: v >= 0,
    "invoices.due_days": lambda v: v >= 0,
    "invoices.number_prefix": lambda v: bool(str(v).strip()),
    "api.port": lambda v: 0 < v < 65536,
    "smtp.port": lambda v: 0 < v < 65536,
    "logging.level": lambda v: str(v).lower() in ("debug", "info", "warning", "error", "critical"),
    "events.max_events": lambda v: v > 0,
}


# ---------------------------------------------------------------------------
# ConfigSection
# ---------------------------------------------------------------------------

class ConfigSection:
    """Read-only attribute view over a dict. Nested dicts become sections.

        section = ConfigSection({"port": 8080, "nested": {"key": "val"}})
        section.port        # 8080
        section.nested.key  # "val"
    """

    def __init__(self, data: dict[str, Any]):
        self._data = data

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._data:
            raise AttributeError(f"No setting '{name}' (have: {', '.join(sorted(self._data))})")
        value = self._data[name]
        return ConfigSection(value) if isinstance(value, dict) else value

    def __contains__(self, name: str) -> bool:
        return name in self._data

    def get(self, name: str, default: Any = None) -> Any:
        return getattr(self, name) if name in self._data else default

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self._data!r})"

    def to_dict(self) -> dict[str, Any]:
        """Plain nested dict copy."""
        return copy.deepcopy(self._data)


# ---------------------------------------------------------------------------
# BooksConfig
# ---------------------------------------------------------------------------

class BooksConfig(ConfigSection):
    """The merged settings tree.

    Args:
        config_path: TOML file to read; defaults to config/settings.toml at
                     the project root.
    """

    def __init__(self, config_path: str | Path | None = None):
        self.path = Path(config_path) if config_path is not None else DEFAULT_PATH
        self._lock = threading.Lock()
        self.last_loaded = ""
        super().__init__(self._read())

    def _read(self) -> dict[str, Any]:
        data = copy.deepcopy(_DEFAULTS)
        _merge(data, _read_toml(self.path))
        for (section, key), raw in _env_overrides(os.environ).items():
            default = _DEFAULTS[section][key]
            try:
                data[section][key] = _cast(raw, default)
            except ValueError as e:
                logger.warning("Ignoring %s%s_%s=%r: %s", ENV_PREFIX,
                               section.upper(), key.upper(), raw, e)
        _enforce_checks(data)
        self.last_loaded = datetime.now(timezone.utc).isoformat()
        return data

    def reload(self) -> dict[str, dict[str, Any]]:
        """Re-read every layer and report what changed.

        Returns {"section.key": {"old": ..., "new": ...}}. Components built
        from the old values (HTTP clients, the cache dir) keep them until
        restart.
        """
        with self._lock:
            before = _flatten(self._data)
            self._data = self._read()
            after = _flatten(self._data)
        changes = {
            path: {"old": before.get(path), "new": after.get(path)}
            for path in sorted(before.keys() | after.keys())
            if before.get(path) != after.get(path)
        }
        logger.info("Configuration reloaded from %s: %d change(s)", self.path, len(changes))
        return changes


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------

def _read_toml(path: Path) -> dict[str, Any]:
    if not path.exists():
        logger.warning("Config file not found at %s; using defaults", path)
        return {}
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        logger.warning("Failed to read %s: %s; using defaults", path, e)
        return {}
    logger.info("Configuration loaded from %s", path)
    return data


def _env_overrides(environ) -> dict[tuple[str, str], str]:
    """Map CBS_* variables onto (section, key) pairs that exist in _DEFAULTS."""
    found = {}
    for name, raw in environ.items():
        if name in _ENV_ALIASES:
            found[_ENV_ALIASES[name]] = raw
            continue
        if not name.startswith(ENV_PREFIX):
            continue
        rest = name[len(ENV_PREFIX):].lower()
        for section, keys in _DEFAULTS.items():
            key = rest[len(section) + 1:]
            if rest.startswith(section + "_") and key in keys:
                found[(section, key)] = raw
                break
    return found


def _cast(raw: str, default: Any) -> Any:
    """Convert an env string to the type of the default it replaces."""
    if isinstance(default, bool):
        lowered = raw.strip().lower()
        if lowered not in ("true", "false", "1", "0", "yes", "no"):
            raise ValueError("expected true or false")
        return lowered in ("true", "1", "yes")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, list):
        return [part.strip() for part in raw.split("|") if part.strip()]
    return raw


def _enforce_checks(data: dict[str, Any]):
    for dotpath, check in _CHECKS.items():
        section, key = dotpath.split(".")
        value = data[section][key]
        try:
            ok = check(value)
        except TypeError:
            ok = False
        if not ok:
            default = _DEFAULTS[section][key]
            logger.warning("Invalid %s=%r, using %r", dotpath, value, default)
            data[section][key] = default


def _merge(base: dict, override: dict):
    """Merge ``override`` into ``base`` in place, table by table."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value


def _flatten(data: dict, prefix: str = "") -> dict[str, Any]:
    flat = {}
    for key, value in data.items():
        path = f"{prefix}{key}"
        if isinstance(value, dict):
            flat.update(_flatten(value, path + "."))
        else:
            flat[path] = value
    return flat


# ---------------------------------------------------------------------------
# Process-wide instance
# ---------------------------------------------------------------------------

_instance: BooksConfig | None = None
_instance_lock = threading.Lock()


def get_config(config_path: str | Path | None = None) -> BooksConfig:
    """Return the shared BooksConfig, creating it on first use.

    ``config_path`` only matters on the first call.
    """
    global _instance
    with _instance_lock:
        if _instance is None:
            _instance = BooksConfig(config_path)
        return _instance


def reset_config():
    """Forget the shared instance so the next get_config() re-reads settings."""
    global _instance
    with _instance_lock:
        _instance = None
