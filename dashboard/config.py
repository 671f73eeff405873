# SPDX-License-Identifier: GPL-3.0-or-later
"""
goal: configuration loader for portsage. loads settings from a JSON file and environment
      variables, with sensible defaults. returns a frozen Config dataclass holding the knowledge
      file location, the dashboard address, the scan/cleanup intervals and the learning knobs.

      priority for every value: PORTSAGE_<KEY> environment variable > JSON file > default.
      learning settings live under "learning" in the JSON file and use PORTSAGE_LEARNING_<KEY>.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from knowledge.storage import get_knowledge_path
from knowledge.types import LearningConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "PORTSAGE_"
_TRUE = ("1", "true", "yes", "on")
_FALSE = ("0", "false", "no", "off")


# where config.json lives unless PORTSAGE_CONFIG_PATH points elsewhere
def _resolve_base_dir() -> Path:
    env = os.getenv(f"{ENV_PREFIX}BASE_DIR")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".portsage"


# frozen dataclass to hold all config values (immutable once created)
@dataclass(frozen=True)
class Config:
    base_dir: Path  # directory holding config.json
    knowledge_path: Path  # the knowledge base JSON file
    host: str  # dashboard host address
    port: int  # dashboard port number
    scan_interval_sec: float  # seconds between port scans
    cleanup_interval_sec: float  # seconds between stale pending cleanups
    docker: bool  # ask docker which container owns a port
    learning: LearningConfig = field(default_factory=LearningConfig)


def _coerce(env: str, default: Any) -> Any:
    # bool first, bool is a subclass of int
    if isinstance(default, bool):
        low = env.strip().lower()
        if low in _TRUE:
            return True
        if low in _FALSE:
            return False
        return default
    if isinstance(default, int):
        try:
            return int(env)
        except ValueError:
            return default
    if isinstance(default, float):
        try:
            return float(env)
        except ValueError:
            return default
    # strings (and None defaults) use the env var as-is
    return env


# JSON values must already have the default's type, or be a string that coerces to it
def _from_json(key: str, value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
    elif isinstance(default, (int, float)):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return type(default)(value)
    elif isinstance(value, str):
        return value  # string and None defaults
    if isinstance(value, str) and default is not None:
        return _coerce(value, default)
    logger.warning("ignoring config value %s=%r", key, value)
    return default


# get a config value with priority: environment variable > JSON file > default
def _get(obj: dict, key: str, default: Any, env_prefix: str = ENV_PREFIX) -> Any:
    env = os.getenv(f"{env_prefix}{key.upper()}")
    if env is not None:
        return _coerce(env, default)
    if key in obj:
        return _from_json(key, obj[key], default)
    return default


def _read_json(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        obj = json.loads(path.read_text(encoding="utf-8") or "{}")
    except (OSError, ValueError) as exc:
        # a broken config file means all defaults, not a crash
        logger.warning("ignoring unreadable config file %s: %s", path, exc)
        return {}
    return obj if isinstance(obj, dict) else {}


def load_learning_config(obj: dict) -> LearningConfig:
    d = LearningConfig()
    prefix = f"{ENV_PREFIX}LEARNING_"
    return LearningConfig(
        enabled=_get(obj, "enabled", d.enabled, prefix),
        min_sightings=_get(obj, "min_sightings", d.min_sightings, prefix),
        rate_limit_secs=_get(obj, "rate_limit_secs", d.rate_limit_secs, prefix),
        max_pending=_get(obj, "max_pending", d.max_pending, prefix),
        ica_url=_get(obj, "ica_url", d.ica_url, prefix),
        setec_url=_get(obj, "setec_url", d.setec_url, prefix),
        stale_pending_secs=_get(obj, "stale_pending_secs", d.stale_pending_secs, prefix),
        service_name=_get(obj, "service_name", d.service_name, prefix),
        request_timeout_secs=_get(obj, "request_timeout_secs", d.request_timeout_secs, prefix),
        service_key=_get(obj, "service_key", d.service_key, prefix),
    )


# load configuration from JSON file and environment variables
def load_config() -> Config:
    base = _resolve_base_dir()
    cfg_file = Path(os.getenv(f"{ENV_PREFIX}CONFIG_PATH") or base / "config.json")
    obj = _read_json(cfg_file)

    learning_obj = obj.get("learning")
    if not isinstance(learning_obj, dict):
        learning_obj = {}

    knowledge = _get(obj, "knowledge_path", None)
    if knowledge:
        knowledge_path = Path(knowledge).expanduser()
        if not knowledge_path.is_absolute():
            knowledge_path = base / knowledge_path
    else:
        knowledge_path = get_knowledge_path()

    return Config(
        base_dir=base,
        knowledge_path=knowledge_path,
        host=_get(obj, "host", "127.0.0.1"),
        port=_get(obj, "port", 8766),
        scan_interval_sec=_get(obj, "scan_interval_sec", 5.0),
        cleanup_interval_sec=_get(obj, "cleanup_interval_sec", 300.0),
        docker=_get(obj, "docker", True),
        learning=load_learning_config(learning_obj),
    )
