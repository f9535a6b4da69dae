"""Unit tests for Config and related Pydantic models (preview_orchestrator.config).

Tests cover:
- MaterializerConfig / BuildConfig / SupervisorConfig / ProxyConfig defaults
- Field validation
- Config defaults, app_dir, save/load, from_env
- Config.ensure_directories
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from preview_orchestrator.config import (
    BuildConfig,
    Config,
    MaterializerConfig,
    ProxyConfig,
    SupervisorConfig,
)
from preview_orchestrator.models import ProjectKind


# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------


class TestMaterializerConfig:
    @pytest.mark.unit
    def test_defaults(self):
        cfg = MaterializerConfig()
        assert cfg.project_kind is None
        assert ".tsx" in cfg.component_extensions
        assert "from 'react'" in cfg.component_markers
        assert cfg.conflicting_dependencies == ["react-scripts", "parcel"]

    @pytest.mark.unit
    def test_project_kind_from_string(self):
        cfg = MaterializerConfig(project_kind="static_markup")
        assert cfg.project_kind is ProjectKind.STATIC_MARKUP


class TestBuildConfig:
    @pytest.mark.unit
    def test_defaults(self):
        cfg = BuildConfig()
        assert cfg.install_command == ["npm", "install"]
        assert cfg.build_command == ["npm", "run", "build"]
        assert cfg.install_timeout == 300
        assert cfg.build_timeout == 180
        assert cfg.build_output_dir == "dist"

    @pytest.mark.unit
    def test_timeout_must_be_positive(self):
        with pytest.raises(ValidationError):
            BuildConfig(build_timeout=0)


class TestSupervisorConfig:
    @pytest.mark.unit
    def test_defaults(self):
        cfg = SupervisorConfig()
        assert cfg.serve_command == ["npx", "serve", "{root}", "-p", "{port}", "-s"]
        assert cfg.host == "localhost"
        assert cfg.spawn_attempts == 3
        assert cfg.stop_grace_period == 3.0

    @pytest.mark.unit
    def test_spawn_attempts_at_least_one(self):
        with pytest.raises(ValidationError):
            SupervisorConfig(spawn_attempts=0)

    @pytest.mark.unit
    def test_ready_timeout_zero_allowed(self):
        assert SupervisorConfig(ready_timeout=0).ready_timeout == 0


class TestProxyConfig:
    @pytest.mark.unit
    def test_defaults(self):
        cfg = ProxyConfig()
        assert cfg.listen_host == "localhost"
        assert cfg.allowed_origin == "http://localhost:3000"
        assert cfg.inject_debug_script is True
        assert cfg.python_executable is None


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class TestConfig:
    @pytest.mark.unit
    def test_defaults(self):
        cfg = Config()
        assert cfg.temp_root == Path("./temp/apps")
        assert cfg.max_error_output == 4000
        assert isinstance(cfg.build, BuildConfig)
        assert isinstance(cfg.supervisor, SupervisorConfig)

    @pytest.mark.unit
    def test_app_dir(self, tmp_path: Path):
        cfg = Config(temp_root=tmp_path)
        assert cfg.app_dir("demo") == tmp_path / "demo"

    @pytest.mark.unit
    def test_save_and_load(self, tmp_path: Path):
        cfg = Config(temp_root=tmp_path / "apps", max_error_output=123)
        cfg.supervisor.spawn_attempts = 5
        path = cfg.save(tmp_path / "config.json")

        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["max_error_output"] == 123

        loaded = Config.load(path)
        assert loaded.max_error_output == 123
        assert loaded.supervisor.spawn_attempts == 5
        assert loaded.temp_root == tmp_path / "apps"

    @pytest.mark.unit
    def test_save_default_location(self, tmp_path: Path):
        cfg = Config(temp_root=tmp_path / "apps")
        path = cfg.save()
        assert path == tmp_path / "apps" / "config.json"
        assert path.exists()

    @pytest.mark.unit
    def test_from_env_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            cfg = Config.from_env()
        assert cfg.temp_root == Path("./temp/apps")
        assert cfg.materializer.project_kind is None

    @pytest.mark.unit
    def test_from_env_overrides(self, tmp_path: Path):
        env = {
            "PREVIEW_TEMP_ROOT": str(tmp_path),
            "PREVIEW_MAX_ERROR_OUTPUT": "500",
            "PREVIEW_PROJECT_KIND": "static_markup",
            "PREVIEW_INSTALL_TIMEOUT": "12",
            "PREVIEW_BUILD_TIMEOUT": "34",
            "PREVIEW_STOP_GRACE_PERIOD": "1.5",
            "PREVIEW_READY_TIMEOUT": "0",
            "PREVIEW_SPAWN_ATTEMPTS": "2",
            "PREVIEW_PROXY_START_TIMEOUT": "7",
            "PREVIEW_PROXY_ALLOWED_ORIGIN": "http://localhost:8080",
        }
        with patch.dict(os.environ, env, clear=True):
            cfg = Config.from_env()
        assert cfg.temp_root == tmp_path
        assert cfg.max_error_output == 500
        assert cfg.materializer.project_kind is ProjectKind.STATIC_MARKUP
        assert cfg.build.install_timeout == 12
        assert cfg.build.build_timeout == 34
        assert cfg.supervisor.stop_grace_period == 1.5
        assert cfg.supervisor.ready_timeout == 0
        assert cfg.supervisor.spawn_attempts == 2
        assert cfg.proxy.start_timeout == 7
        assert cfg.proxy.allowed_origin == "http://localhost:8080"

    @pytest.mark.unit
    def test_from_env_invalid_kind(self):
        with patch.dict(os.environ, {"PREVIEW_PROJECT_KIND": "spa"}, clear=True):
            with pytest.raises(ValueError):
                Config.from_env()

    @pytest.mark.unit
    def test_ensure_directories(self, tmp_path: Path):
        cfg = Config(temp_root=tmp_path / "nested" / "apps")
        cfg.ensure_directories()
        assert cfg.temp_root.is_dir()
