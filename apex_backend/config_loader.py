# apex_backend/config_loader.py
from __future__ import annotations
"""
Unified configuration loader for the Apex lap backend.

Single source of truth:
    config/config.yaml   (override with APEX_CONFIG=/path/to/file.yaml)

Design notes
------------
- If the file is missing or broken, we raise a ConfigError that prints
  absolute paths for quick fixes.
- Unknown keys are fine; we pass the full dict through untouched.
- Helpers take an optional cfg dict so tests and the app factory can hand in
  their own view; without one they read the eager-loaded CONFIG.
- Paths are absolute (resolved against the repo root) unless already absolute.

Public API
----------
- CONFIG: dict                              # eager-loaded contents of config/config.yaml
- load_config(path: str|Path|None = None)   # explicit reload (mainly for tests/tools)
- get_db_path(cfg=None) -> pathlib.Path
- get_watch_cfg(cfg=None) -> dict
- get_watch_state_path(cfg=None) -> pathlib.Path
- get_telemetry_udp_cfg(cfg=None) -> dict
- get_cors_origins(cfg=None) -> list[str]
- get_log_level(default: str = "INFO", cfg=None) -> str
- get_server_bind(cfg=None) -> tuple[str, int]
"""

import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import ConfigError

# ---------- Files & roots ----------
PROJECT_ROOT = Path(__file__).resolve().parents[1]
CONFIG_DIR   = PROJECT_ROOT / "config"
DEFAULT_CFG  = CONFIG_DIR / "config.yaml"

DEFAULT_WATCH_STATE = "config/watch_state.yaml"


# ---------- I/O helpers ----------
def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load a YAML mapping from `path`. Human-friendly errors, strict root type."""
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        raise ConfigError(
            f"Missing configuration file: {path}\n"
            f"Expected a single-file config with an 'app:' section.\n"
            f"Repo root: {PROJECT_ROOT}"
        )
    except OSError as ex:
        raise ConfigError(f"Failed to read {path}: {type(ex).__name__}: {ex}")

    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as ex:
        raise ConfigError(f"Failed to parse YAML {path}: {type(ex).__name__}: {ex}")

    if not isinstance(data, dict):
        raise ConfigError(f"Root of {path} must be a mapping/object, not {type(data).__name__}")
    return data


def resolve_path(p: str | os.PathLike[str]) -> Path:
    """Return absolute path; resolve relative to repo root."""
    pth = Path(p)
    return pth if pth.is_absolute() else (PROJECT_ROOT / pth).resolve()


def validate_config(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Enforce the minimal structural contract. Returns cfg unchanged."""
    try:
        sqlite_path = cfg["app"]["persistence"]["sqlite_path"]
        if not isinstance(sqlite_path, (str, os.PathLike)) or not str(sqlite_path).strip():
            raise KeyError("app.persistence.sqlite_path must be a non-empty string")
    except (KeyError, TypeError) as ke:
        raise ConfigError(
            "CONFIG missing required key: app.persistence.sqlite_path\n"
            "Your config must contain a top-level 'app:' mapping with a "
            "'persistence.sqlite_path' entry. See config/config.yaml."
        ) from ke
    return cfg


# ---------- Loader ----------
def load_config(path: str | os.PathLike[str] | None = None) -> Dict[str, Any]:
    """
    Load a single YAML file (default: $APEX_CONFIG or config/config.yaml),
    validate required shape, and return the raw dict (unmodified).
    """
    if path is None:
        path = os.getenv("APEX_CONFIG") or None
    cfg_path = resolve_path(path) if path else DEFAULT_CFG
    return validate_config(_load_yaml(cfg_path))


# Eagerly load once for the app
CONFIG: Dict[str, Any] = load_config()


def _cfg(cfg: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return CONFIG if cfg is None else cfg


# ---------- Accessors ----------
def get_db_path(cfg: Optional[Dict[str, Any]] = None) -> Path:
    """Return absolute filesystem path to the SQLite database."""
    sqlite_path = (
        _cfg(cfg).get("app", {})
                 .get("persistence", {})
                 .get("sqlite_path")
    )
    if not sqlite_path:
        raise ConfigError("CONFIG missing app.persistence.sqlite_path")
    return resolve_path(sqlite_path)


def get_watch_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return the watch-folder block or {}."""
    return _cfg(cfg).get("watch", {}) or {}


def get_watch_state_path(cfg: Optional[Dict[str, Any]] = None) -> Path:
    """Where the active watch path is persisted between restarts."""
    return resolve_path(get_watch_cfg(cfg).get("state_path") or DEFAULT_WATCH_STATE)


def get_telemetry_udp_cfg(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return the telemetry.udp block (enabled/host/port) or {}."""
    return ((_cfg(cfg).get("telemetry", {}) or {}).get("udp", {}) or {})


def get_cors_origins(cfg: Optional[Dict[str, Any]] = None) -> List[str]:
    origins = ((_cfg(cfg).get("app", {}) or {}).get("cors", {}) or {}).get("allow_origins")
    if not origins:
        return ["*"]
    return [str(o) for o in origins]


def get_log_level(default: str = "INFO", cfg: Optional[Dict[str, Any]] = None) -> str:
    """Return log level as 'INFO'/'DEBUG', etc."""
    lvl = (_cfg(cfg).get("log", {}) or {}).get("level", default)
    return str(lvl).upper()


def get_server_bind(cfg: Optional[Dict[str, Any]] = None) -> Tuple[str, int]:
    """Return (host, port) for launching uvicorn from code."""
    server = (_cfg(cfg).get("app", {}).get("server", {})) or {}
    host = server.get("host")
    port = server.get("port")
    if isinstance(host, str) and isinstance(port, int):
        return host, port
    return "127.0.0.1", 3000
