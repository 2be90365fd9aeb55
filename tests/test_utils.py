#!/usr/bin/env python3
"""
Test settings and logging helpers
"""

import os
import logging
import uuid
from logging.handlers import RotatingFileHandler

import pytest

from instance_guard.errors import SettingsError
from instance_guard.utils import (
    ARTIFACT_PREFIX,
    GuardSettings,
    artifact_name,
    default_runtime_dir,
    load_settings,
    refresh_logger_levels,
    setup_logger,
)


def _write(path, text):
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
    return str(path)


class TestLoadSettings:
    """Test YAML settings loading"""

    def test_missing_file(self, tmp_path):
        """Test that a missing file raises SettingsError"""
        with pytest.raises(SettingsError, match="not found"):
            load_settings(str(tmp_path / "nope.yaml"))

    def test_not_a_mapping(self, tmp_path):
        """Test that a YAML list at top level is rejected"""
        path = _write(tmp_path / "list.yaml", "- a\n- b\n")
        with pytest.raises(SettingsError, match="mapping"):
            load_settings(path)

    def test_malformed_yaml(self, tmp_path):
        """Test that unparsable YAML is reported as SettingsError"""
        path = _write(tmp_path / "bad.yaml", "guard: [unclosed\n")
        with pytest.raises(SettingsError, match="Cannot parse"):
            load_settings(path)

    def test_meta_and_relative_paths(self, tmp_path):
        """Test that _meta is injected and relative paths are resolved"""
        path = _write(tmp_path / "s.yaml",
                      "guard:\n  runtime_dir: run\npaths:\n  logs_dir: logs\n")
        settings = load_settings(path)
        assert settings["_meta"]["settings_dir"] == str(tmp_path)
        assert settings["guard"]["runtime_dir"] == str(tmp_path / "run")
        assert settings["paths"]["logs_dir"] == str(tmp_path / "logs")

    def test_empty_file(self, tmp_path):
        """Test that an empty file loads as empty settings"""
        settings = load_settings(_write(tmp_path / "empty.yaml", ""))
        assert set(settings) == {"_meta"}


class TestGuardSettings:
    """Test GuardSettings.from_settings"""

    def test_defaults(self):
        """Test defaults without a guard section"""
        gs = GuardSettings.from_settings({})
        assert gs.runtime_dir is None
        assert gs.connect_timeout == 1.0
        assert gs.poll_interval == 0.25
        assert gs.backlog == 64

    def test_custom_values(self):
        """Test that guard values are applied"""
        gs = GuardSettings.from_settings({"guard": {
            "runtime_dir": "/run/x", "connect_timeout": "2.5",
            "poll_interval": 0.1, "backlog": 8,
        }})
        assert gs.resolved_runtime_dir() == "/run/x"
        assert gs.connect_timeout == 2.5
        assert gs.poll_interval == 0.1
        assert gs.backlog == 8

    def test_invalid_values_keep_defaults(self, caplog):
        """Test that bad values are ignored with a warning"""
        with caplog.at_level(logging.WARNING, logger="instance_guard"):
            gs = GuardSettings.from_settings({"guard": {"connect_timeout": "soon", "backlog": 0}})
        assert gs.connect_timeout == 1.0
        assert gs.backlog == 64
        assert "guard.connect_timeout" in caplog.text
        assert "guard.backlog" in caplog.text

    def test_guard_not_a_mapping(self):
        """Test that a scalar guard section falls back to defaults"""
        assert GuardSettings.from_settings({"guard": "yes"}) == GuardSettings()


class TestRuntimeDir:
    """Test runtime directory resolution"""

    def test_env_override(self, monkeypatch, tmp_path):
        """Test that SINGLE_INSTANCE_RUNTIME_DIR wins"""
        monkeypatch.setenv("SINGLE_INSTANCE_RUNTIME_DIR", str(tmp_path))
        monkeypatch.setenv("XDG_RUNTIME_DIR", "/elsewhere")
        assert default_runtime_dir() == str(tmp_path)

    def test_xdg_runtime_dir(self, monkeypatch, tmp_path):
        """Test that XDG_RUNTIME_DIR is used next"""
        monkeypatch.delenv("SINGLE_INSTANCE_RUNTIME_DIR", raising=False)
        monkeypatch.setenv("XDG_RUNTIME_DIR", str(tmp_path))
        assert default_runtime_dir() == str(tmp_path)

    def test_settings_value_beats_default(self, monkeypatch, tmp_path):
        """Test that an explicit runtime_dir ignores the environment"""
        monkeypatch.setenv("SINGLE_INSTANCE_RUNTIME_DIR", "/ignored")
        assert GuardSettings(runtime_dir=str(tmp_path)).resolved_runtime_dir() == str(tmp_path)


class TestArtifactName:
    """Test identifier namespacing"""

    def test_prefix_and_stability(self):
        """Test that names are prefixed and deterministic"""
        assert artifact_name("app-42").startswith(ARTIFACT_PREFIX)
        assert artifact_name("app-42") == artifact_name("app-42")

    def test_opaque_identifiers_are_safe(self):
        """Test that separators in identifiers never reach the file name"""
        name = artifact_name("../../etc/passwd {x}")
        assert os.sep not in name
        assert " " not in name

    def test_distinct(self):
        """Test that distinct identifiers get distinct names"""
        assert artifact_name("a") != artifact_name("b")


class TestLogging:
    """Test setup_logger / refresh_logger_levels"""

    def test_handlers_are_idempotent(self, tmp_path):
        """Test that repeated setup does not stack handlers"""
        name = f"ig-test-{uuid.uuid4().hex[:8]}"
        logfile = str(tmp_path / "logs" / "guard.log")
        first = setup_logger(name, logfile_path=logfile)
        second = setup_logger(name, logfile_path=logfile)
        assert first is second
        assert sum(isinstance(h, RotatingFileHandler) for h in first.handlers) == 1
        assert sum(type(h) is logging.StreamHandler for h in first.handlers) == 1
        assert os.path.isdir(tmp_path / "logs")

    def test_levels_from_settings(self, tmp_path):
        """Test per-logger levels with default fallback and override"""
        name = f"ig-test-{uuid.uuid4().hex[:8]}"
        settings = {"logging_levels": {"default": "WARNING", name: "DEBUG"},
                    "paths": {"logs_dir": str(tmp_path)}}
        lg = setup_logger(name, settings, to_console=False)
        assert lg.level == logging.DEBUG
        assert os.path.isfile(tmp_path / f"{name}.log")

        other = setup_logger(name + "-x", settings, to_console=False, to_file=False)
        assert other.level == logging.WARNING

        forced = setup_logger(name + "-y", settings, level_override="error", to_file=False)
        assert forced.level == logging.ERROR

    def test_refresh(self):
        """Test that refresh pushes new levels to live loggers"""
        name = f"ig-test-{uuid.uuid4().hex[:8]}"
        lg = setup_logger(name, to_file=False)
        assert lg.level == logging.INFO
        refresh_logger_levels({"logging_levels": {name: "ERROR"}}, names=[name])
        assert lg.level == logging.ERROR
        assert all(h.level == logging.ERROR for h in lg.handlers)

    def test_setup_applies_levels_to_other_named_loggers(self):
        """Test that setup_logger also sets loggers listed in logging_levels"""
        name = f"ig-test-{uuid.uuid4().hex[:8]}"
        child = logging.getLogger(f"{name}.child")
        settings = {"logging_levels": {"default": "INFO", f"{name}.child": "WARNING"}}
        setup_logger(name, settings, level_override="DEBUG", to_console=False, to_file=False)
        assert child.level == logging.WARNING
        assert logging.getLogger(name).level == logging.DEBUG

    def test_auto_refresh_off(self):
        """Test that auto_refresh=False leaves other loggers untouched"""
        name = f"ig-test-{uuid.uuid4().hex[:8]}"
        child = logging.getLogger(f"{name}.child")
        settings = {"logging_levels": {f"{name}.child": "ERROR"}}
        setup_logger(name, settings, to_console=False, to_file=False, auto_refresh=False)
        assert child.level == logging.NOTSET
