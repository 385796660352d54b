from __future__ import annotations

# signstore/config.py
import os
from typing import Any, Optional

import yaml

# DB path resolution order:
# 1) SIGNSTORE_DB_PATH env var (highest priority)
# 2) test_db_path from config.yaml (when running under tests)
# 3) db_path from config.yaml
# 4) nothing configured -> None, caller decides
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

DEFAULTS: dict[str, Any] = {
    "db_path": None,
    "test_db_path": None,
    "journal_mode": "WAL",
    "busy_timeout_ms": 5000,
    "audit_log": True,
    "log_level": "INFO",
}


def _config_path(path: Optional[str] = None) -> str:
    return path or os.environ.get("SIGNSTORE_CONFIG") or os.path.join(_PROJECT_ROOT, "config.yaml")


def read_config_yaml(path: Optional[str] = None) -> dict:
    cfg_path = _config_path(path)
    if not os.path.exists(cfg_path):
        return {}
    with open(cfg_path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    if not isinstance(cfg, dict):
        raise ValueError(f"config file {cfg_path} must contain a mapping")
    return cfg


def _as_bool(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes", "on")
    return bool(v)


def get_config(path: Optional[str] = None) -> dict:
    raw = read_config_yaml(path)

    def _str_or_none(k: str) -> Optional[str]:
        v = raw.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
        return None

    return {
        "db_path": _str_or_none("db_path"),
        "test_db_path": _str_or_none("test_db_path"),
        "journal_mode": str(raw.get("journal_mode") or DEFAULTS["journal_mode"]).upper(),
        "busy_timeout_ms": int(raw.get("busy_timeout_ms", DEFAULTS["busy_timeout_ms"])),
        "audit_log": _as_bool(raw.get("audit_log", DEFAULTS["audit_log"])),
        "log_level": str(raw.get("log_level") or DEFAULTS["log_level"]).upper(),
    }


def get_db_path(config_path: Optional[str] = None) -> Optional[str]:
    env_path = os.environ.get("SIGNSTORE_DB_PATH")
    cfg = get_config(config_path)
    is_test = (os.environ.get("APP_ENV") == "test") or (os.environ.get("PYTEST_CURRENT_TEST") is not None)

    if env_path:
        path = env_path
    elif is_test and cfg["test_db_path"]:
        path = cfg["test_db_path"]
    elif cfg["db_path"]:
        path = cfg["db_path"]
    else:
        return None

    if path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    return path
