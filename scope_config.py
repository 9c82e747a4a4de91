#!/usr/bin/env python3
"""
ScopeDesk configuration and logging setup.

Reads a JSON settings file (missing keys fall back to DEFAULTS) and
configures a size-rolled log file.
"""
from __future__ import annotations

import copy
import json
import logging
import logging.handlers
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from scope_desk import (
    DEFAULT_DRIVER_IDS,
    AddressScheme,
    ConnectionManager,
    ScopeConfigurationError,
)

__all__ = [
    "DEFAULTS",
    "LOG_FORMAT",
    "ScopeSettings",
    "load_config",
    "settings_from_config",
    "expand_path",
    "parse_log_level",
    "setup_logging",
    "build_connection",
]

DEFAULTS: dict[str, Any] = {
    "connection": {
        "default_ip": "192.168.0.100",
        "address_scheme": "IP",
        "driver_ids": list(DEFAULT_DRIVER_IDS),
    },
    "logging": {
        "level": "Information",
        "file": {
            "path": "%LOCALAPPDATA%/ScopeDesk/logs/scope.log",
            "file_size_limit_bytes": 5_242_880,
            "retained_file_count_limit": 10,
            "roll_on_file_size_limit": True,
        },
    },
}

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Serilog-style names used in older settings files, plus Python names
_LEVELS = {
    "verbose": logging.DEBUG,
    "debug": logging.DEBUG,
    "information": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
}


@dataclass
class ScopeSettings:
    """Resolved settings handed to the core."""
    default_ip: str
    address_scheme: AddressScheme
    driver_ids: tuple[str, ...]
    log_path: Path
    log_level: int = logging.INFO
    file_size_limit_bytes: int = 5_242_880
    retained_file_count_limit: int = 10
    roll_on_file_size_limit: bool = True


def _merge(defaults: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Merge overrides into a copy of defaults, dict by dict."""
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: str | Path | None = None) -> dict[str, Any]:
    """Load a JSON settings file merged over DEFAULTS.

    A missing file (or path=None) yields the defaults.
    """
    if path is None:
        return copy.deepcopy(DEFAULTS)
    path = Path(path)
    if not path.exists():
        logging.getLogger("scope_config").debug(f"No settings file at {path}, using defaults")
        return copy.deepcopy(DEFAULTS)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ScopeConfigurationError(f"Cannot read settings file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ScopeConfigurationError(f"Settings file {path} must contain a JSON object")
    return _merge(DEFAULTS, data)


def expand_path(text: str) -> Path:
    """Expand %VAR%, $VAR and ~ in a path.

    %LOCALAPPDATA% falls back to ~/.local/share where it is not set.
    """
    def windows_var(match: re.Match) -> str:
        name = match.group(1)
        value = os.environ.get(name)
        if value is None and name.upper() == "LOCALAPPDATA":
            value = str(Path.home() / ".local" / "share")
        return value if value is not None else match.group(0)

    expanded = re.sub(r"%([^%]+)%", windows_var, text)
    return Path(os.path.expanduser(os.path.expandvars(expanded)))


def parse_log_level(name: str | int | None) -> int:
    """Map a level name to a logging level; unknown names give INFO."""
    if isinstance(name, int):
        return name
    return _LEVELS.get(str(name or "").strip().lower(), logging.INFO)


def settings_from_config(cfg: dict[str, Any]) -> ScopeSettings:
    """Resolve a loaded config dict into ScopeSettings."""
    conn = cfg.get("connection", {}) or {}
    log = cfg.get("logging", {}) or {}
    log_file = log.get("file", {}) or {}

    scheme_text = str(conn.get("address_scheme", "IP")).strip().upper().rstrip(":")
    try:
        scheme = AddressScheme(scheme_text)
    except ValueError as e:
        valid = ", ".join(s.value for s in AddressScheme)
        raise ScopeConfigurationError(
            f"Invalid address_scheme: {conn.get('address_scheme')!r} (expected one of {valid})"
        ) from e

    driver_ids = conn.get("driver_ids", list(DEFAULT_DRIVER_IDS))
    if isinstance(driver_ids, str) or not all(isinstance(d, str) for d in driver_ids):
        raise ScopeConfigurationError("driver_ids must be a list of strings")

    try:
        size_limit = int(log_file.get("file_size_limit_bytes", 5_242_880))
        retain = int(log_file.get("retained_file_count_limit", 10))
    except (TypeError, ValueError) as e:
        raise ScopeConfigurationError(f"Invalid log file limits: {e}") from e

    return ScopeSettings(
        default_ip=str(conn.get("default_ip", "")).strip(),
        address_scheme=scheme,
        driver_ids=tuple(driver_ids),
        log_path=expand_path(str(log_file.get("path", DEFAULTS["logging"]["file"]["path"]))),
        log_level=parse_log_level(log.get("level")),
        file_size_limit_bytes=size_limit,
        retained_file_count_limit=retain,
        roll_on_file_size_limit=bool(log_file.get("roll_on_file_size_limit", True)),
    )


def setup_logging(settings: ScopeSettings, console: bool = False) -> Path:
    """Attach a rolling file handler (and optionally stderr) to the root logger.

    Returns:
        Path of the log file.
    """
    log_path = settings.log_path
    log_path.parent.mkdir(parents=True, exist_ok=True)

    max_bytes = settings.file_size_limit_bytes if settings.roll_on_file_size_limit else 0
    handler = logging.handlers.RotatingFileHandler(
        log_path,
        maxBytes=max_bytes,
        backupCount=max(settings.retained_file_count_limit - 1, 0),
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger()
    root.setLevel(settings.log_level)
    root.addHandler(handler)

    if console:
        stream = logging.StreamHandler()
        stream.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
        root.addHandler(stream)

    # Suppress pyvisa logging
    logging.getLogger("pyvisa").setLevel(logging.WARNING)
    return log_path


def build_connection(settings: ScopeSettings) -> ConnectionManager:
    """ConnectionManager configured from settings."""
    return ConnectionManager(
        driver_ids=settings.driver_ids,
        scheme=settings.address_scheme,
    )
