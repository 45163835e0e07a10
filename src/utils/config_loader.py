from __future__ import annotations

import logging
import os
import threading
from copy import deepcopy
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_cache_lock = threading.Lock()
_cached: dict[str, Any] | None = None
_cached_path: str | None = None

# Values shipped in examples/docs that must never reach the service.
_PLACEHOLDERS = ("<put in your", "/path/to/your/")

# (environment variable, config section, key, cast)
_ENV_OVERRIDES: list[tuple[str, str, str, type]] = [
    ("TOKEN", "api", "token", str),
    ("DOMAIN", "api", "domain", str),
    ("METASYNC_REQUEST_TIMEOUT_SECONDS", "api", "request_timeout_seconds", float),
    ("ACCOUNT_ID", "account", "id", str),
    ("LOGIN", "account", "login", str),
    ("PASSWORD", "account", "password", str),
    ("SERVER", "account", "server", str),
    ("PATH_TO_BROKER_SRV", "account", "broker_srv_file", str),
    ("SYMBOL", "market_data", "symbol", str),
    ("METASYNC_CORS_ORIGINS", "live_api", "cors_origins", str),
]


def _project_root() -> Path:
    # src/utils/config_loader.py -> src/utils -> src -> project root
    return Path(__file__).resolve().parents[2]


def default_config_path() -> Path:
    return _project_root() / "config" / "config.yaml"


def _apply_env_overrides(cfg: dict[str, Any]) -> None:
    """
    Override selected YAML settings with environment variables.

    The variable names match the ones used by the driver scripts (TOKEN, LOGIN, ...).
    """
    for env_name, section, key, cast in _ENV_OVERRIDES:
        raw = os.getenv(env_name)
        if not raw:
            continue
        try:
            value = cast(raw)
        except ValueError as exc:
            raise ValueError(f"Invalid value for {env_name}: {raw!r}") from exc
        target = cfg.setdefault(section, {})
        if target is None:
            target = cfg[section] = {}
        target[key] = value


def validate_config(cfg: dict[str, Any]) -> None:
    """
    Fail fast if the configuration is missing required sections.
    Credentials are checked later, by the workflow that needs them.
    """
    required_top = ["api", "account", "streaming"]
    missing = [k for k in required_top if k not in cfg]
    if missing:
        raise ValueError(f"Missing required config sections: {', '.join(missing)}")

    api = cfg.get("api") or {}
    if not str(api.get("domain") or "").strip():
        raise ValueError("Missing api.domain in config")


def is_placeholder(value: Any) -> bool:
    text = str(value or "").strip()
    return not text or any(text.startswith(p) for p in _PLACEHOLDERS)


def require_setting(cfg: dict[str, Any], dotted_key: str) -> Any:
    """
    Return `cfg[section][key]` for a dotted key such as "api.token".

    Raises ValueError when the value is missing or still a documentation placeholder.
    """
    section, _, key = dotted_key.partition(".")
    value = (cfg.get(section) or {}).get(key)
    if is_placeholder(value):
        raise ValueError(f"Setting {dotted_key} is required (set it in config.yaml or the environment)")
    return value


def load_config(config_path: str | Path | None = None, *, force_reload: bool = False) -> dict[str, Any]:
    """
    Load the YAML config once and reuse it across the process.

    - Reads `config/config.yaml` by default.
    - Applies environment overrides (TOKEN, ACCOUNT_ID, SYMBOL, ...).
    - Returns a deep copy so callers can safely mutate local copies.
    """
    global _cached, _cached_path

    path = Path(config_path) if config_path else default_config_path()
    path_str = str(path.resolve())

    with _cache_lock:
        if not force_reload and _cached is not None and _cached_path == path_str:
            return deepcopy(_cached)

        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}

        if not isinstance(cfg, dict):
            raise ValueError(f"Config must be a YAML mapping (dict); got {type(cfg).__name__}")

        _apply_env_overrides(cfg)
        validate_config(cfg)

        _cached = cfg
        _cached_path = path_str
        logger.info("Loaded config from %s", path_str)
        return deepcopy(cfg)
