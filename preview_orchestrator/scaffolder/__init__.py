"""Project materialization for previews.

Turns a list of generated files into an isolated project directory with the
toolchain configuration its kind needs.

Quick usage::

    from preview_orchestrator.scaffolder import ProjectMaterializer

    materializer = ProjectMaterializer(config)
    path = await materializer.materialize("app-1", files)
"""

from .manifest import ManifestPatch, patch_caller_manifest, toolchain_manifest
from .materializer import (
    MaterializedProject,
    ProjectMaterializer,
    classify_project,
    find_root_component,
    is_safe_app_id,
)
from .templates import TemplateRenderer

__all__ = [
    "ProjectMaterializer",
    "MaterializedProject",
    "classify_project",
    "find_root_component",
    "is_safe_app_id",
    "ManifestPatch",
    "patch_caller_manifest",
    "toolchain_manifest",
    "TemplateRenderer",
]
