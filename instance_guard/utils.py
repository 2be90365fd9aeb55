#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
instance_guard/utils.py
=======================

Shared utilities for the instance_guard package.

Key responsibilities
--------------------
- Load and normalize YAML settings (guard knobs, logs dir, logging levels).
- Resolve the runtime directory that holds the per-identifier lock file and
  socket file, and derive the namespaced artifact names from an identifier.
- Provide logging helpers (rotating file + console), with a live-level refresher.

Notes
-----
This file avoids any dependency beyond the Python stdlib and PyYAML. It is safe
to import from any module in the package.

Conventions
-----------
- All "paths" are absolute (resolved relative to the settings file if the user
  provides relative paths).
- `settings['_meta']['settings_dir']` is injected by load_settings() so other
  helpers can resolve relative paths consistently.
"""

from __future__ import annotations

import os
import hashlib
import logging
import tempfile
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, List, Optional

import yaml

from instance_guard.errors import SettingsError

# Prefix of every OS-global name we create (lock file, socket file, mutex).
ARTIFACT_PREFIX = "instance-guard-"
RUNTIME_DIR_ENV = "SINGLE_INSTANCE_RUNTIME_DIR"

LIBRARY_LOGGER = "instance_guard"


# -----------------------------------------------------------------------------
# Settings loading / normalization
# -----------------------------------------------------------------------------

def _abspath_relative_to(base_dir: str, maybe_path: Optional[str]) -> Optional[str]:
    """Return absolute path given a base directory."""
    if not maybe_path:
        return None
    p = str(maybe_path).strip()
    if not p:
        return None
    if os.path.isabs(p):
        return p
    return os.path.abspath(os.path.join(base_dir, p))


def load_settings(path: str) -> Dict[str, Any]:
    """
    Load YAML settings and inject a `_meta` section with:
      - settings_file (abs path)
      - settings_dir  (dir of the file)

    Also normalizes `paths.*` and `guard.runtime_dir` to absolute paths.
    Raises SettingsError when the file is missing or is not a YAML mapping.
    """
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise SettingsError(f"Settings file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise SettingsError(f"Cannot parse settings file {path}: {e}") from e

    if not isinstance(data, dict):
        raise SettingsError(f"Settings file {path} must contain a mapping at top level")

    settings_dir = os.path.dirname(path)
    data.setdefault("_meta", {})
    data["_meta"]["settings_file"] = path
    data["_meta"]["settings_dir"] = settings_dir

    if isinstance(data.get("paths"), dict):
        for k, v in list(data["paths"].items()):
            if isinstance(v, str):
                data["paths"][k] = _abspath_relative_to(settings_dir, v)

    guard = data.get("guard")
    if isinstance(guard, dict) and isinstance(guard.get("runtime_dir"), str):
        guard["runtime_dir"] = _abspath_relative_to(settings_dir, guard["runtime_dir"])

    return data


def default_runtime_dir() -> str:
    """
    Directory holding the lock file and socket file.

    Order of resolution:
      1) $SINGLE_INSTANCE_RUNTIME_DIR
      2) $XDG_RUNTIME_DIR (per-user, tmpfs on most Linux desktops)
      3) tempfile.gettempdir()
    """
    for var in (RUNTIME_DIR_ENV, "XDG_RUNTIME_DIR"):
        p = os.environ.get(var, "").strip()
        if p:
            return os.path.abspath(p)
    return tempfile.gettempdir()


def artifact_name(identifier: str) -> str:
    """
    Namespaced, filesystem-safe base name for an identifier.

    Identifiers are opaque (may contain braces, slashes, spaces...), so we
    hash them; 20 hex chars keep AF_UNIX paths well under the sun_path limit.
    """
    digest = hashlib.sha1(identifier.encode("utf-8")).hexdigest()[:20]
    return f"{ARTIFACT_PREFIX}{digest}"


@dataclass
class GuardSettings:
    runtime_dir: Optional[str] = None
    connect_timeout: float = 1.0
    poll_interval: float = 0.25
    backlog: int = 64

    def resolved_runtime_dir(self) -> str:
        return self.runtime_dir or default_runtime_dir()

    @classmethod
    def from_settings(cls, settings: Optional[Dict[str, Any]],
                      logger: Optional[logging.Logger] = None) -> "GuardSettings":
        """Build from the `guard:` section of a load_settings() dict; bad values keep defaults."""
        logger = logger or logging.getLogger(LIBRARY_LOGGER)
        out = cls()
        cfg = ((settings or {}).get("guard") or {})
        if not isinstance(cfg, dict):
            logger.warning("'guard' settings section is not a mapping; using defaults")
            return out

        rd = cfg.get("runtime_dir")
        if rd:
            out.runtime_dir = str(rd)

        for key, conv in (("connect_timeout", float), ("poll_interval", float), ("backlog", int)):
            if key not in cfg:
                continue
            try:
                value = conv(cfg[key])
                if value <= 0:
                    raise ValueError("must be positive")
            except (TypeError, ValueError) as e:
                logger.warning(f"Invalid guard.{key}={cfg[key]!r} ({e}); keeping {getattr(out, key)}")
                continue
            setattr(out, key, value)

        logger.debug(
            f"guard settings: runtime_dir={out.resolved_runtime_dir()}, "
            f"connect_timeout={out.connect_timeout}, "
            f"poll_interval={out.poll_interval}, backlog={out.backlog}"
        )
        return out


# -----------------------------------------------------------------------------
# Logging helpers
# -----------------------------------------------------------------------------

def _level_from_name(name: str, default=logging.INFO) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default


def setup_logger(
    name: str,
    settings: Optional[Dict[str, Any]] = None,
    *,
    level_override: Optional[str] = None,
    to_console: bool = True,
    to_file: bool = True,
    logfile_path: Optional[str] = None,
    max_bytes: int = 5 * 1024 * 1024,
    backup_count: int = 3,
    auto_refresh: bool = True,
) -> logging.Logger:
    """
    Create or reuse a configured logger.

    Parameters
    ----------
    name : str
        Logger name; also used to lookup per-logger level in YAML under
        `logging_levels.<name>` (falls back to `logging_levels.default`).
    settings : dict
        Settings dict loaded via load_settings(), or None.
    level_override : str
        Force a level (e.g., "DEBUG") ignoring YAML.
    to_console : bool
        Attach a stream handler to stderr.
    to_file : bool
        Attach a RotatingFileHandler under `paths.logs_dir`.
    logfile_path : str
        Full path to a logfile; overrides the default derived from logs_dir/name.
    max_bytes : int
        RotatingFileHandler maxBytes.
    backup_count : int
        RotatingFileHandler backupCount.
    auto_refresh : bool
        If True, also push `logging_levels` to the other loggers named there
        (e.g. "instance_guard.cli"), so child loggers follow the YAML too.
    """
    logger = logging.getLogger(name)

    default_level = logging.INFO
    if settings:
        levels = settings.get("logging_levels", {}) or {}
        level_name = levels.get(name, levels.get("default", "INFO"))
        default_level = _level_from_name(level_name, logging.INFO)

    if level_override:
        default_level = _level_from_name(level_override, default_level)

    logger.setLevel(default_level)

    # Idempotent handler attachment
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    if to_console and not any(type(h) is logging.StreamHandler for h in logger.handlers):
        sh = logging.StreamHandler()
        sh.setFormatter(fmt)
        sh.setLevel(default_level)
        logger.addHandler(sh)

    if to_file:
        if not logfile_path:
            logs_dir = (settings.get("paths", {}) or {}).get("logs_dir") if settings else None
            logs_dir = logs_dir or os.path.abspath("logs")
            logfile_path = os.path.join(logs_dir, f"{name}.log")

        if not any(isinstance(h, RotatingFileHandler) and getattr(h, "baseFilename", None) == logfile_path
                   for h in logger.handlers):
            os.makedirs(os.path.dirname(logfile_path), exist_ok=True)
            fh = RotatingFileHandler(logfile_path, maxBytes=max_bytes, backupCount=backup_count)
            fh.setFormatter(fmt)
            fh.setLevel(default_level)
            logger.addHandler(fh)

    if auto_refresh and settings:
        levels = settings.get("logging_levels", {}) or {}
        # `name` itself was set above and may carry level_override.
        others = [n for n in levels if n not in ("default", name)]
        if others:
            refresh_logger_levels(settings, names=others)

    return logger


def refresh_logger_levels(settings: Dict[str, Any], names: Optional[List[str]] = None) -> None:
    """
    Refresh levels for registered loggers according to `logging_levels`.

    When `names` is None every logger known to the logging manager is refreshed.
    """
    levels = settings.get("logging_levels", {}) or {}

    def get_level(name: str) -> int:
        v = levels.get(name, levels.get("default", "INFO"))
        return _level_from_name(v, logging.INFO)

    targets = names if names is not None else list(logging.Logger.manager.loggerDict.keys())
    for name in targets:
        level = get_level(name)
        lg = logging.getLogger(name)
        lg.setLevel(level)
        for h in lg.handlers:
            h.setLevel(level)

        if lg.isEnabledFor(logging.DEBUG):
            lg.debug(f"Logger '{name}' level refreshed to {logging.getLevelName(level)}")
