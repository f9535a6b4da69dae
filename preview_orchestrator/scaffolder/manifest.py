"""Build-manifest (``package.json``) generation and caller-manifest patching.

The toolchain manifest is always generated by the orchestrator.  When the
generated files include their own ``package.json`` it is parsed, patched so it
cannot fight the chosen toolchain, and merged underneath the generated one;
the caller's original text is never written to disk.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from rich.console import Console
from rich.markup import escape

from ..models import GeneratedFile, ProjectKind

console = Console()

MANIFEST_NAME = "package.json"

_COMPONENT_SCRIPTS: dict[str, str] = {
    "dev": "vite",
    "build": "vite build",
    "preview": "serve dist -s",
}

_STATIC_SCRIPTS: dict[str, str] = {
    "dev": "serve . -s",
    "build": 'echo "No build step needed for static HTML"',
    "preview": "serve . -s",
}

_COMPONENT_DEPENDENCIES: dict[str, str] = {
    "react": "^18.2.0",
    "react-dom": "^18.2.0",
}

_COMPONENT_DEV_DEPENDENCIES: dict[str, str] = {
    "@types/react": "^18.2.0",
    "@types/react-dom": "^18.2.0",
    "@vitejs/plugin-react": "^4.2.0",
    "vite": "^5.0.0",
    "typescript": "^5.0.0",
    "tailwindcss": "^3.3.0",
    "autoprefixer": "^10.4.0",
    "postcss": "^8.4.0",
    "@types/node": "^20.0.0",
    "serve": "^14.2.0",
}

_STATIC_DEV_DEPENDENCIES: dict[str, str] = {
    "serve": "^14.2.0",
}

_DEPENDENCY_SECTIONS = ("dependencies", "devDependencies")


@dataclass
class ManifestPatch:
    """Result of patching a caller-supplied manifest."""

    source_path: str
    manifest: dict[str, Any] = field(default_factory=dict)
    applied: list[str] = field(default_factory=list)
    valid: bool = True


def toolchain_manifest(app_id: str, kind: ProjectKind) -> dict[str, Any]:
    """Return the minimal manifest needed to build and serve *kind*."""
    manifest: dict[str, Any] = {
        "name": f"preview-app-{app_id}".lower(),
        "version": "1.0.0",
        "private": True,
    }
    if kind == ProjectKind.COMPONENT_FRAMEWORK:
        manifest["type"] = "module"
        manifest["scripts"] = dict(_COMPONENT_SCRIPTS)
        manifest["dependencies"] = dict(_COMPONENT_DEPENDENCIES)
        manifest["devDependencies"] = dict(_COMPONENT_DEV_DEPENDENCIES)
    else:
        manifest["scripts"] = dict(_STATIC_SCRIPTS)
        manifest["devDependencies"] = dict(_STATIC_DEV_DEPENDENCIES)
    return manifest


def find_caller_manifest(files: list[GeneratedFile]) -> GeneratedFile | None:
    """Locate a generated ``package.json``, preferring the project root."""
    candidates = [f for f in files if f.basename == MANIFEST_NAME]
    if not candidates:
        return None
    candidates.sort(key=lambda f: f.path.replace("\\", "/").lstrip("./").count("/"))
    return candidates[0]


def patch_caller_manifest(
    file: GeneratedFile,
    kind: ProjectKind,
    conflicting: list[str],
) -> ManifestPatch:
    """Parse and patch a caller manifest without touching the original value.

    * The ``build``/``dev``/``preview`` scripts are forced to the toolchain's.
    * Every dependency named in *conflicting* is removed from
      ``dependencies`` and ``devDependencies``.

    A manifest that is not a JSON object is reported with ``valid=False`` and
    an empty ``manifest``.
    """
    result = ManifestPatch(source_path=file.path)
    try:
        data = json.loads(file.content)
    except json.JSONDecodeError as exc:
        result.valid = False
        result.applied.append(f"ignored malformed manifest ({exc.msg} at line {exc.lineno})")
        return result
    if not isinstance(data, dict):
        result.valid = False
        result.applied.append("ignored manifest that is not a JSON object")
        return result

    scripts = data.get("scripts")
    if not isinstance(scripts, dict):
        scripts = {}
        data["scripts"] = scripts

    wanted = _COMPONENT_SCRIPTS if kind == ProjectKind.COMPONENT_FRAMEWORK else _STATIC_SCRIPTS
    for name, command in wanted.items():
        if scripts.get(name) != command:
            scripts[name] = command
            result.applied.append(f'set script "{name}" to "{command}"')

    for section in _DEPENDENCY_SECTIONS:
        deps = data.get(section)
        if not isinstance(deps, dict):
            continue
        for dep in conflicting:
            if dep in deps:
                del deps[dep]
                result.applied.append(f'removed conflicting {section} entry "{dep}"')

    result.manifest = data
    return result


def merge_manifests(base: dict[str, Any], caller: dict[str, Any]) -> dict[str, Any]:
    """Merge caller dependencies under the toolchain manifest.

    Toolchain scripts, metadata and dependency versions always win; the caller
    only contributes dependencies the toolchain does not declare.
    """
    merged = json.loads(json.dumps(base))
    for section in _DEPENDENCY_SECTIONS:
        extra = caller.get(section)
        if not isinstance(extra, dict):
            continue
        target = merged.setdefault(section, {})
        for name, version in extra.items():
            if name not in target and not _declared_elsewhere(merged, name, section):
                target[name] = version
    return merged


def _declared_elsewhere(manifest: dict[str, Any], name: str, section: str) -> bool:
    return any(
        name in manifest.get(other, {})
        for other in _DEPENDENCY_SECTIONS
        if other != section
    )


def log_patch(app_id: str, patch: ManifestPatch) -> None:
    """Print every patch applied to a caller manifest."""
    if not patch.applied:
        console.print(f"[dim][App {escape(app_id)}] {escape(patch.source_path)} needed no patches[/dim]")
        return
    colour = "yellow" if patch.valid else "red"
    for entry in patch.applied:
        console.print(
            f"[{colour}][App {escape(app_id)}] Patched {escape(patch.source_path)}:[/{colour}] "
            f"{escape(entry)}"
        )


def dump_manifest(manifest: dict[str, Any]) -> str:
    return json.dumps(manifest, indent=2) + "\n"
