"""Project materialization: generated files -> isolated, buildable directory.

Creates ``<temp_root>/<app_id>/``, decides whether the file set is a
component-framework project or plain static markup, writes the toolchain files
that kind needs, merges any caller manifest, and finally writes the generated
files verbatim.
"""

from __future__ import annotations

import asyncio
import json
import posixpath
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Iterable

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from ..config import Config
from ..errors import MaterializationError
from ..models import GeneratedFile, ProjectKind, coerce_files
from .manifest import (
    MANIFEST_NAME,
    ManifestPatch,
    dump_manifest,
    find_caller_manifest,
    log_patch,
    merge_manifests,
    patch_caller_manifest,
    toolchain_manifest,
)
from .templates import TemplateRenderer, write_text_file

console = Console()

_APP_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")


def is_safe_app_id(app_id: str) -> bool:
    """Whether *app_id* can be used as a single directory name under the temp root."""
    return bool(_APP_ID_RE.match(app_id)) and app_id not in (".", "..")


_ROOT_COMPONENT_NAMES = ("App.tsx", "App.jsx", "App.ts", "App.js")

_TSCONFIG: dict[str, Any] = {
    "compilerOptions": {
        "target": "ES2020",
        "useDefineForClassFields": True,
        "lib": ["ES2020", "DOM", "DOM.Iterable"],
        "module": "ESNext",
        "skipLibCheck": True,
        "moduleResolution": "bundler",
        "allowImportingTsExtensions": True,
        "resolveJsonModule": True,
        "isolatedModules": True,
        "noEmit": True,
        "jsx": "react-jsx",
        "strict": False,
        "noFallthroughCasesInSwitch": True,
    },
    "include": ["src"],
    "references": [{"path": "./tsconfig.node.json"}],
}

_TSCONFIG_NODE: dict[str, Any] = {
    "compilerOptions": {
        "composite": True,
        "skipLibCheck": True,
        "module": "ESNext",
        "moduleResolution": "bundler",
        "allowSyntheticDefaultImports": True,
    },
    "include": ["vite.config.ts"],
}


@dataclass
class MaterializedProject:
    """Everything the materializer decided and wrote for one app."""

    app_id: str
    path: Path
    kind: ProjectKind
    files_written: list[str] = field(default_factory=list)
    manifest_patch: ManifestPatch | None = None
    dropped_files: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify_project(
    files: Iterable[GeneratedFile],
    component_extensions: Iterable[str],
    component_markers: Iterable[str],
) -> ProjectKind:
    """Decide the project kind from file extensions and content markers.

    This is a heuristic: any file with a component extension, or any content
    containing one of the import markers, makes it a component project.
    """
    extensions = tuple(ext.lower() for ext in component_extensions)
    markers = tuple(component_markers)
    for f in files:
        if extensions and f.path.lower().endswith(extensions):
            return ProjectKind.COMPONENT_FRAMEWORK
        if any(marker in f.content for marker in markers):
            return ProjectKind.COMPONENT_FRAMEWORK
    return ProjectKind.STATIC_MARKUP


def find_root_component(files: Iterable[GeneratedFile]) -> tuple[str, str]:
    """Return ``(component_name, import_path)`` for ``src/main.tsx``.

    Prefers ``src/App.*``, then any ``App.*`` elsewhere.  When none exists the
    import still points at ``./App`` so the healer can fill it in.
    """
    paths = [_normalise(f.path) for f in files]
    for name in _ROOT_COMPONENT_NAMES:
        if f"src/{name}" in paths:
            return "App", f"./{name}"
    for path in sorted(paths, key=lambda p: p.count("/")):
        if PurePosixPath(path).name in _ROOT_COMPONENT_NAMES:
            rel = posixpath.relpath(path, "src")
            if not rel.startswith("."):
                rel = f"./{rel}"
            return "App", rel
    return "App", "./App"


def _normalise(path: str) -> str:
    return posixpath.normpath(path.replace("\\", "/")).lstrip("/")


# ---------------------------------------------------------------------------
# Materializer
# ---------------------------------------------------------------------------

class ProjectMaterializer:
    """Writes generated files into a fresh per-app working directory."""

    def __init__(self, config: Config | None = None, renderer: TemplateRenderer | None = None):
        self.config = config or Config()
        self.renderer = renderer or TemplateRenderer()

    def classify(self, files: Iterable[GeneratedFile]) -> ProjectKind:
        settings = self.config.materializer
        if settings.project_kind is not None:
            return settings.project_kind
        return classify_project(files, settings.component_extensions, settings.component_markers)

    async def materialize(
        self,
        app_id: str,
        files: Iterable[GeneratedFile | dict[str, Any]],
        kind: ProjectKind | None = None,
    ) -> Path:
        """Materialize *files* for *app_id* and return the working directory.

        Raises:
            MaterializationError: On an unsafe app id or path, an existing
                directory, or any filesystem failure.
        """
        project = await self.materialize_project(app_id, files, kind=kind)
        return project.path

    async def materialize_project(
        self,
        app_id: str,
        files: Iterable[GeneratedFile | dict[str, Any]],
        kind: ProjectKind | None = None,
    ) -> MaterializedProject:
        """Like :meth:`materialize` but returns the full decision record."""
        if not is_safe_app_id(app_id):
            raise MaterializationError(f"Unsafe application id: {app_id!r}")

        generated = coerce_files(files)
        app_path = self.config.app_dir(app_id).resolve()
        planned = [(f, self._target_path(app_path, f)) for f in generated]

        try:
            await asyncio.to_thread(app_path.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(app_path.mkdir)
        except FileExistsError as exc:
            raise MaterializationError(
                f"Working directory already exists for app {app_id}: {app_path}. "
                "Call cleanup() before starting it again.",
                path=app_path,
                existed=True,
            ) from exc
        except OSError as exc:
            raise MaterializationError(
                f"Failed to create working directory {app_path}: {exc}", path=app_path
            ) from exc

        project_kind = kind or self.classify(generated)
        project = MaterializedProject(app_id=app_id, path=app_path, kind=project_kind)

        try:
            if project_kind == ProjectKind.COMPONENT_FRAMEWORK:
                await self._write_component_toolchain(project, generated)
            else:
                await self._write_static_toolchain(project, generated)

            await self._write_manifest(project, generated)

            caller = find_caller_manifest(generated)
            for f, target in planned:
                if f.basename == MANIFEST_NAME:
                    if f is not caller:
                        project.dropped_files.append(_normalise(f.path))
                        console.print(
                            f"[yellow][App {escape(app_id)}][/yellow] Dropped nested manifest "
                            f"{escape(f.path)}; only the root package.json is merged"
                        )
                    continue
                await asyncio.to_thread(write_text_file, target, f.content)
                project.files_written.append(_normalise(f.path))
        except OSError as exc:
            raise MaterializationError(
                f"Failed to write project files for app {app_id}: {exc}", path=app_path
            ) from exc

        console.print(
            Panel(
                f"[green]Project materialized[/green]\n"
                f"  App:   {escape(app_id)}\n"
                f"  Kind:  {project_kind.value}\n"
                f"  Path:  {escape(str(app_path))}\n"
                f"  Files: {len(project.files_written)} generated",
                title="Materializer",
                border_style="green",
            )
        )
        return project

    # -- Toolchain writers -------------------------------------------------

    async def _write_component_toolchain(
        self, project: MaterializedProject, files: list[GeneratedFile]
    ) -> None:
        root_component, root_import = find_root_component(files)
        context = {
            "app_id": project.app_id,
            "title": self.config.materializer.app_title,
            "output_dir": self.config.build.build_output_dir,
            "root_component": root_component,
            "root_import": root_import,
        }
        written = await self.renderer.render_tree("component", project.path, context)
        project.files_written.extend(p.relative_to(project.path).as_posix() for p in written)

        for name, data in (("tsconfig.json", _TSCONFIG), ("tsconfig.node.json", _TSCONFIG_NODE)):
            await asyncio.to_thread(
                write_text_file, project.path / name, json.dumps(data, indent=2) + "\n"
            )
            project.files_written.append(name)

    async def _write_static_toolchain(
        self, project: MaterializedProject, files: list[GeneratedFile]
    ) -> None:
        entry = next((f for f in files if f.path.lower().endswith(".html")), None)
        index_path = project.path / "index.html"
        if entry is not None:
            await asyncio.to_thread(write_text_file, index_path, entry.content)
            console.print(
                f"[cyan][App {escape(project.app_id)}][/cyan] Using {escape(entry.path)} as entry point"
            )
        else:
            await self.renderer.render_to_file(
                "static/index.html.j2",
                index_path,
                {"title": self.config.materializer.app_title},
            )
            console.print(
                f"[yellow][App {escape(project.app_id)}][/yellow] No HTML file generated; "
                "synthesized index.html"
            )
        project.files_written.append("index.html")

    async def _write_manifest(
        self, project: MaterializedProject, files: list[GeneratedFile]
    ) -> None:
        manifest = toolchain_manifest(project.app_id, project.kind)
        caller = find_caller_manifest(files)
        if caller is not None:
            patch = patch_caller_manifest(
                caller, project.kind, self.config.materializer.conflicting_dependencies
            )
            log_patch(project.app_id, patch)
            project.manifest_patch = patch
            if patch.valid:
                manifest = merge_manifests(manifest, patch.manifest)
        await asyncio.to_thread(
            write_text_file, project.path / MANIFEST_NAME, dump_manifest(manifest)
        )
        project.files_written.append(MANIFEST_NAME)

    # -- Helpers -------------------------------------------------------------

    @staticmethod
    def _target_path(app_path: Path, file: GeneratedFile) -> Path:
        rel = file.path.replace("\\", "/")
        if rel.startswith("/") or re.match(r"^[A-Za-z]:", rel):
            raise MaterializationError(f"Generated file path must be relative: {file.path!r}")
        target = (app_path / rel).resolve()
        if target == app_path or app_path not in target.parents:
            raise MaterializationError(
                f"Generated file path escapes the project directory: {file.path!r}"
            )
        return target
