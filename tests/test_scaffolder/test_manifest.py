"""Unit tests for manifest generation and patching (preview_orchestrator.scaffolder.manifest).

Tests cover:
- toolchain_manifest for both project kinds
- find_caller_manifest root preference
- patch_caller_manifest (scripts, conflicting deps, malformed input)
- merge_manifests precedence
"""

from __future__ import annotations

import json

import pytest

from preview_orchestrator.models import GeneratedFile, ProjectKind
from preview_orchestrator.scaffolder.manifest import (
    dump_manifest,
    find_caller_manifest,
    log_patch,
    merge_manifests,
    patch_caller_manifest,
    toolchain_manifest,
)

CONFLICTING = ["react-scripts", "parcel"]


class TestToolchainManifest:
    @pytest.mark.unit
    def test_component_manifest(self):
        manifest = toolchain_manifest("Demo", ProjectKind.COMPONENT_FRAMEWORK)
        assert manifest["name"] == "preview-app-demo"
        assert manifest["scripts"]["build"] == "vite build"
        assert manifest["scripts"]["dev"] == "vite"
        assert "react" in manifest["dependencies"]
        assert "vite" in manifest["devDependencies"]

    @pytest.mark.unit
    def test_static_manifest(self):
        manifest = toolchain_manifest("demo", ProjectKind.STATIC_MARKUP)
        assert "dependencies" not in manifest
        assert manifest["scripts"]["build"].startswith("echo")
        assert "serve" in manifest["devDependencies"]

    @pytest.mark.unit
    def test_returns_independent_copies(self):
        first = toolchain_manifest("a", ProjectKind.COMPONENT_FRAMEWORK)
        first["scripts"]["build"] = "changed"
        assert toolchain_manifest("a", ProjectKind.COMPONENT_FRAMEWORK)["scripts"]["build"] == "vite build"


class TestFindCallerManifest:
    @pytest.mark.unit
    def test_none_when_absent(self):
        assert find_caller_manifest([GeneratedFile(path="src/App.tsx")]) is None

    @pytest.mark.unit
    def test_prefers_root(self):
        files = [
            GeneratedFile(path="packages/ui/package.json", content="{}"),
            GeneratedFile(path="package.json", content="{}"),
        ]
        assert find_caller_manifest(files).path == "package.json"


class TestPatchCallerManifest:
    @pytest.mark.unit
    def test_forces_scripts_and_removes_conflicts(self):
        caller = GeneratedFile(
            path="package.json",
            content=json.dumps({
                "scripts": {"dev": "react-scripts start", "build": "react-scripts build", "test": "jest"},
                "dependencies": {"react-scripts": "5.0.1", "lodash": "^4.17.21"},
                "devDependencies": {"parcel": "^2.0.0"},
            }),
        )
        patch = patch_caller_manifest(caller, ProjectKind.COMPONENT_FRAMEWORK, CONFLICTING)

        assert patch.valid is True
        assert patch.manifest["scripts"]["dev"] == "vite"
        assert patch.manifest["scripts"]["build"] == "vite build"
        assert patch.manifest["scripts"]["test"] == "jest"
        assert "react-scripts" not in patch.manifest["dependencies"]
        assert "parcel" not in patch.manifest["devDependencies"]
        assert patch.manifest["dependencies"]["lodash"] == "^4.17.21"
        assert any("react-scripts" in entry for entry in patch.applied)

    @pytest.mark.unit
    def test_original_content_untouched(self):
        content = json.dumps({"dependencies": {"react-scripts": "5.0.1"}})
        caller = GeneratedFile(path="package.json", content=content)
        patch_caller_manifest(caller, ProjectKind.COMPONENT_FRAMEWORK, CONFLICTING)
        assert caller.content == content

    @pytest.mark.unit
    def test_malformed_json(self):
        patch = patch_caller_manifest(
            GeneratedFile(path="package.json", content="{not json"),
            ProjectKind.COMPONENT_FRAMEWORK,
            CONFLICTING,
        )
        assert patch.valid is False
        assert patch.manifest == {}
        assert "malformed" in patch.applied[0]

    @pytest.mark.unit
    def test_non_object_json(self):
        patch = patch_caller_manifest(
            GeneratedFile(path="package.json", content="[1, 2]"),
            ProjectKind.STATIC_MARKUP,
            CONFLICTING,
        )
        assert patch.valid is False

    @pytest.mark.unit
    def test_log_patch_does_not_raise(self):
        patch = patch_caller_manifest(
            GeneratedFile(path="package.json", content="{}"), ProjectKind.STATIC_MARKUP, CONFLICTING
        )
        log_patch("demo", patch)


class TestMergeManifests:
    @pytest.mark.unit
    def test_toolchain_versions_win(self):
        base = toolchain_manifest("demo", ProjectKind.COMPONENT_FRAMEWORK)
        caller = {
            "name": "caller-name",
            "scripts": {"build": "something else"},
            "dependencies": {"react": "^17.0.0", "zustand": "^4.0.0"},
            "devDependencies": {"vite": "^2.0.0", "eslint": "^8.0.0"},
        }
        merged = merge_manifests(base, caller)

        assert merged["name"] == "preview-app-demo"
        assert merged["scripts"]["build"] == "vite build"
        assert merged["dependencies"]["react"] == base["dependencies"]["react"]
        assert merged["dependencies"]["zustand"] == "^4.0.0"
        assert merged["devDependencies"]["vite"] == base["devDependencies"]["vite"]
        assert merged["devDependencies"]["eslint"] == "^8.0.0"

    @pytest.mark.unit
    def test_no_duplicate_across_sections(self):
        base = toolchain_manifest("demo", ProjectKind.COMPONENT_FRAMEWORK)
        merged = merge_manifests(base, {"dependencies": {"vite": "^5.0.0"}})
        assert "vite" not in merged["dependencies"]

    @pytest.mark.unit
    def test_base_not_mutated(self):
        base = toolchain_manifest("demo", ProjectKind.STATIC_MARKUP)
        merge_manifests(base, {"dependencies": {"alpinejs": "^3.0.0"}})
        assert "dependencies" not in base

    @pytest.mark.unit
    def test_dump_manifest(self):
        text = dump_manifest({"name": "x"})
        assert text.endswith("\n")
        assert json.loads(text) == {"name": "x"}
