"""Deterministic repair of unresolved local imports after a failed build.

Supported error grammar (exactly one shape, matched case-insensitively)::

    could not resolve "<specifier>" from "<importing file>"

Either quote character may be used.  Every occurrence in the build output is
healed in a single pass: each missing local module gets a minimal placeholder
module that renders a labelled block.  No AI call is involved and the healer
never rebuilds; the caller rebuilds exactly once.
"""

from __future__ import annotations

import asyncio
import posixpath
import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from rich.console import Console
from rich.markup import escape

from ..errors import NotHealable
from ..scaffolder.templates import TemplateRenderer, pascal_case, write_text_file
from ..utils import strip_ansi

console = Console()

UNRESOLVED_IMPORT_RE = re.compile(
    r"""could\s+not\s+resolve\s+(["'])(?P<specifier>[^"'\r\n]+)\1\s+from\s+(["'])(?P<importer>[^"'\r\n]+)\3""",
    re.IGNORECASE,
)

DEFAULT_EXTENSION = ".tsx"

_PLACEHOLDER_TEMPLATES: dict[str, str] = {
    ".tsx": "placeholders/component.tsx.j2",
    ".jsx": "placeholders/component.tsx.j2",
    ".ts": "placeholders/component_plain.ts.j2",
    ".js": "placeholders/component_plain.ts.j2",
    ".mjs": "placeholders/component_plain.ts.j2",
    ".css": "placeholders/stylesheet.css.j2",
}

RECOGNIZED_EXTENSIONS = frozenset(_PLACEHOLDER_TEMPLATES)


@dataclass(frozen=True)
class UnresolvedImport:
    """One ``could not resolve`` report from the build tool."""

    specifier: str
    importer: str

    @property
    def is_local(self) -> bool:
        return self.specifier.startswith(("./", "../", "/")) or self.specifier in (".", "..")


def find_unresolved_imports(error_text: str) -> list[UnresolvedImport]:
    """Return every distinct unresolved import in *error_text*, in order."""
    seen: dict[tuple[str, str], UnresolvedImport] = {}
    for match in UNRESOLVED_IMPORT_RE.finditer(strip_ansi(error_text)):
        item = UnresolvedImport(
            specifier=match.group("specifier").strip(),
            importer=match.group("importer").strip(),
        )
        seen.setdefault((item.specifier, item.importer), item)
    return list(seen.values())


def resolve_missing_path(workdir: Path, item: UnresolvedImport) -> Path | None:
    """Map an unresolved import to the file that should exist.

    Returns ``None`` when the target would fall outside *workdir*.
    """
    root = workdir.resolve()
    importer = item.importer.replace("\\", "/")
    importer_path = Path(importer)
    if importer_path.is_absolute():
        try:
            importer = importer_path.resolve().relative_to(root).as_posix()
        except ValueError:
            return None

    if item.specifier.startswith("/"):
        rel = posixpath.normpath(item.specifier.lstrip("/"))
    else:
        rel = posixpath.normpath(
            posixpath.join(posixpath.dirname(importer), item.specifier)
        )

    if PurePosixPath(rel).suffix.lower() not in RECOGNIZED_EXTENSIONS:
        rel += DEFAULT_EXTENSION

    target = (root / rel).resolve()
    if root not in target.parents:
        return None
    return target


def placeholder_label(path: Path) -> str:
    """Human-readable base name of the missing module, safe to embed in source."""
    name = path.name
    for ext in sorted(RECOGNIZED_EXTENSIONS, key=len, reverse=True):
        if name.lower().endswith(ext):
            name = name[: -len(ext)]
            break
    return re.sub(r"[^A-Za-z0-9 ._-]", "", name) or "Placeholder"


class BuildHealer:
    """Writes placeholder modules for unresolved local imports."""

    def __init__(self, renderer: TemplateRenderer | None = None):
        self.renderer = renderer or TemplateRenderer()

    async def heal(self, workdir: str | Path, error_text: str) -> int:
        """Heal every unresolved local import in *error_text*.

        Returns:
            The number of placeholder files created.

        Raises:
            NotHealable: If the text matches no supported pattern, or every
                match was skipped (non-local, outside the project, or the file
                already exists), so a rebuild could not change the outcome.
        """
        created = await self.heal_files(workdir, error_text)
        return len(created)

    async def heal_files(self, workdir: str | Path, error_text: str) -> list[Path]:
        """Like :meth:`heal` but returns the created paths."""
        root = Path(workdir)
        reports = find_unresolved_imports(error_text)
        if not reports:
            raise NotHealable("Build output contains no unresolved local imports")

        console.print(f"[cyan]Healing:[/cyan] detected {len(reports)} unresolved import(s)")

        created: list[Path] = []
        targets: set[Path] = set()
        for item in reports:
            if not item.is_local:
                console.print(
                    f"  [dim]skipping package import {escape(item.specifier)} "
                    f"from {escape(item.importer)}[/dim]"
                )
                continue

            target = resolve_missing_path(root, item)
            if target is None:
                console.print(
                    f"  [yellow]skipping {escape(item.specifier)}: resolves outside the project[/yellow]"
                )
                continue
            if target in targets:
                continue
            targets.add(target)

            if target.exists():
                console.print(
                    f"  [dim]{escape(str(target))} already exists; failure has another cause[/dim]"
                )
                continue

            await self._write_placeholder(target)
            created.append(target)
            console.print(
                f"  [green]+[/green] placeholder for '{escape(item.specifier)}' "
                f"(from {escape(item.importer)}) at {escape(str(target))}"
            )

        if not created:
            raise NotHealable("No placeholder could be created for the unresolved imports")
        return created

    async def _write_placeholder(self, target: Path) -> None:
        template = _PLACEHOLDER_TEMPLATES[target.suffix.lower()]
        label = placeholder_label(target)
        content = self.renderer.render(
            template,
            {"component_name": pascal_case(label), "label": label},
        )
        await asyncio.to_thread(write_text_file, target, content)
