"""Preview orchestrator configuration.

Centralised, typed configuration for materialization, building, process
supervision and the reverse proxy.  All settings use Pydantic v2 models so they
can be validated at construction time and serialised to/from JSON or
environment variables without boiler-plate.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from .models import ProjectKind


class MaterializerConfig(BaseModel):
    """Knobs for project-kind detection and manifest patching.

    The component/static decision is a heuristic; it can be tuned here or
    bypassed entirely with ``project_kind``.
    """

    project_kind: ProjectKind | None = Field(
        default=None, description="Force a project kind instead of sniffing files"
    )
    component_extensions: list[str] = Field(default=[".tsx", ".jsx", ".ts"])
    component_markers: list[str] = Field(
        default=[
            "from 'react'",
            'from "react"',
            "require('react')",
            'require("react")',
            "React.",
        ]
    )
    conflicting_dependencies: list[str] = Field(default=["react-scripts", "parcel"])
    app_title: str = Field(default="Preview App")


class BuildConfig(BaseModel):
    """Install/build commands and their time bounds."""

    install_command: list[str] = Field(default=["npm", "install"])
    build_command: list[str] = Field(default=["npm", "run", "build"])
    install_timeout: float = Field(default=300.0, gt=0, description="Seconds")
    build_timeout: float = Field(default=180.0, gt=0, description="Seconds")
    build_output_dir: str = Field(default="dist")


class SupervisorConfig(BaseModel):
    """Server spawning, readiness and teardown settings.

    ``serve_command`` is an argv template; ``{root}`` and ``{port}`` are
    substituted at spawn time.
    """

    serve_command: list[str] = Field(
        default=["npx", "serve", "{root}", "-p", "{port}", "-s"]
    )
    host: str = Field(default="localhost")
    spawn_attempts: int = Field(default=3, ge=1)
    ready_timeout: float = Field(default=30.0, ge=0, description="0 disables the readiness check")
    ready_interval: float = Field(default=0.25, gt=0)
    stop_grace_period: float = Field(default=3.0, ge=0)
    exit_history_size: int = Field(default=100, ge=1)


class ProxyConfig(BaseModel):
    """Reverse proxy worker settings."""

    listen_host: str = Field(default="localhost")
    start_timeout: float = Field(default=15.0, gt=0)
    stop_timeout: float = Field(default=5.0, ge=0)
    allowed_origin: str = Field(
        default="http://localhost:3000",
        description="Origin allowed by the CORS headers the proxy adds",
    )
    inject_debug_script: bool = Field(default=True)
    python_executable: str | None = Field(
        default=None, description="Interpreter for the worker; defaults to sys.executable"
    )


class Config(BaseModel):
    """Global preview orchestrator configuration.

    Instances are typically created once by the embedding service or the CLI
    entry point and then passed to ``ProcessSupervisor`` and ``ProxyManager``.
    """

    temp_root: Path = Field(default=Path("./temp/apps"))
    max_error_output: int = Field(
        default=4000, ge=0, description="Characters of build output surfaced to users"
    )
    materializer: MaterializerConfig = Field(default_factory=MaterializerConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)

    # ------------------------------------------------------------------
    # Derived paths
    # ------------------------------------------------------------------

    def app_dir(self, app_id: str) -> Path:
        """Working directory that belongs to *app_id*."""
        return self.temp_root / app_id

    # ------------------------------------------------------------------
    # Serialisation helpers
    # ------------------------------------------------------------------

    def save(self, path: Path | None = None) -> Path:
        """Persist the configuration to a JSON file.

        Args:
            path: Destination file. Defaults to ``<temp_root>/config.json``.

        Returns:
            The path where the file was written.
        """
        target = path or (self.temp_root / "config.json")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.model_dump_json(indent=2), encoding="utf-8")
        return target

    @classmethod
    def load(cls, path: Path) -> "Config":
        """Load a previously-saved configuration from JSON."""
        raw = Path(path).read_text(encoding="utf-8")
        return cls.model_validate_json(raw)

    @classmethod
    def from_env(cls) -> "Config":
        """Build a ``Config`` from environment variables.

        Recognised variables (all optional):
            PREVIEW_TEMP_ROOT, PREVIEW_MAX_ERROR_OUTPUT, PREVIEW_PROJECT_KIND,
            PREVIEW_INSTALL_TIMEOUT, PREVIEW_BUILD_TIMEOUT,
            PREVIEW_STOP_GRACE_PERIOD, PREVIEW_READY_TIMEOUT,
            PREVIEW_SPAWN_ATTEMPTS, PREVIEW_PROXY_START_TIMEOUT,
            PREVIEW_PROXY_ALLOWED_ORIGIN.
        """
        materializer_kwargs: dict[str, Any] = {}
        if os.environ.get("PREVIEW_PROJECT_KIND"):
            materializer_kwargs["project_kind"] = ProjectKind(os.environ["PREVIEW_PROJECT_KIND"])

        build_kwargs: dict[str, Any] = {}
        if os.environ.get("PREVIEW_INSTALL_TIMEOUT"):
            build_kwargs["install_timeout"] = float(os.environ["PREVIEW_INSTALL_TIMEOUT"])
        if os.environ.get("PREVIEW_BUILD_TIMEOUT"):
            build_kwargs["build_timeout"] = float(os.environ["PREVIEW_BUILD_TIMEOUT"])

        supervisor_kwargs: dict[str, Any] = {}
        if os.environ.get("PREVIEW_STOP_GRACE_PERIOD"):
            supervisor_kwargs["stop_grace_period"] = float(os.environ["PREVIEW_STOP_GRACE_PERIOD"])
        if os.environ.get("PREVIEW_READY_TIMEOUT"):
            supervisor_kwargs["ready_timeout"] = float(os.environ["PREVIEW_READY_TIMEOUT"])
        if os.environ.get("PREVIEW_SPAWN_ATTEMPTS"):
            supervisor_kwargs["spawn_attempts"] = int(os.environ["PREVIEW_SPAWN_ATTEMPTS"])

        proxy_kwargs: dict[str, Any] = {}
        if os.environ.get("PREVIEW_PROXY_START_TIMEOUT"):
            proxy_kwargs["start_timeout"] = float(os.environ["PREVIEW_PROXY_START_TIMEOUT"])
        if os.environ.get("PREVIEW_PROXY_ALLOWED_ORIGIN"):
            proxy_kwargs["allowed_origin"] = os.environ["PREVIEW_PROXY_ALLOWED_ORIGIN"]

        kwargs: dict[str, Any] = {}
        if os.environ.get("PREVIEW_MAX_ERROR_OUTPUT"):
            kwargs["max_error_output"] = int(os.environ["PREVIEW_MAX_ERROR_OUTPUT"])

        return cls(
            temp_root=Path(os.environ.get("PREVIEW_TEMP_ROOT", "./temp/apps")),
            materializer=MaterializerConfig(**materializer_kwargs),
            build=BuildConfig(**build_kwargs),
            supervisor=SupervisorConfig(**supervisor_kwargs),
            proxy=ProxyConfig(**proxy_kwargs),
            **kwargs,
        )

    def ensure_directories(self) -> None:
        """Create the temp root so per-app directories can be made under it."""
        self.temp_root.mkdir(parents=True, exist_ok=True)
