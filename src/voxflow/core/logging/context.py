"""
Request Context and Configuration State for Logging.

The request id lives in a ContextVar so concurrent pipeline calls on
different threads keep their own correlation id. Level and handler
configuration are process-wide module state.

Environment Variables:
    - VOXFLOW_SETTINGS: Settings file consulted for a `logging:` section
    - VOXFLOW_LOG_LEVEL: Override log level (1-4 or name)
    - VOXFLOW_LOG_DIR: Directory for the JSONL log file
    - VOXFLOW_JSONL_FILE: JSONL filename
"""
from __future__ import annotations

import os
from contextvars import ContextVar
from typing import Any, Dict

import yaml

from .levels import LEVEL_NAMES, LogLevel

# "-" marks log lines emitted outside a request
_request_id: ContextVar[str] = ContextVar("request_id", default="-")

_configured: bool = False
_log_config: Dict[str, Any] = {}
_current_level: LogLevel = LogLevel.NORMAL


def get_request_id() -> str:
    """Request id for the current context, or "-" if unset."""
    return _request_id.get()


def set_request_id(rid: str) -> None:
    """Set the request id for log correlation in the current context."""
    _request_id.set(rid)


def get_level() -> LogLevel:
    return _current_level


def set_level(level: LogLevel) -> None:
    global _current_level
    _current_level = level


def get_level_name() -> str:
    """Current level as "MINIMAL", "NORMAL", "VERBOSE" or "DEBUG"."""
    return LEVEL_NAMES.get(_current_level, "NORMAL")


def is_configured() -> bool:
    return _configured


def set_configured(value: bool) -> None:
    global _configured
    _configured = value


def get_log_config() -> Dict[str, Any]:
    return _log_config


def set_log_config(config: Dict[str, Any]) -> None:
    global _log_config
    _log_config = config


def read_logging_config() -> Dict[str, Any]:
    """
    Resolve logging configuration from the settings file and environment.

    Priority (highest first): VOXFLOW_* environment variables, the
    settings file `logging:` section, built-in defaults. A missing or
    malformed settings file is treated as empty.
    """
    from voxflow.core.config import ConfigValidationError, load_settings

    cfg: Dict[str, Any] = {}

    settings_path = os.getenv("VOXFLOW_SETTINGS", "config/settings.yaml")
    try:
        settings = load_settings(settings_path)
        cfg.update(settings.raw.get("logging", {}) or {})
    except (OSError, yaml.YAMLError, ConfigValidationError):
        pass

    if os.getenv("VOXFLOW_LOG_LEVEL"):
        cfg["level"] = os.environ["VOXFLOW_LOG_LEVEL"]
    if os.getenv("VOXFLOW_LOG_DIR"):
        cfg["log_dir"] = os.environ["VOXFLOW_LOG_DIR"]
    if os.getenv("VOXFLOW_JSONL_FILE"):
        cfg["jsonl_file"] = os.environ["VOXFLOW_JSONL_FILE"]

    return cfg
