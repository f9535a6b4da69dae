"""Command-line entry point.

Usage::

    python -m preview_orchestrator.cli serve ./generated --app-id demo
    python -m preview_orchestrator.cli serve files.json --app-id demo --proxy
    python -m preview_orchestrator.cli proxy http://localhost:5173
"""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path

from .config import Config
from .errors import BuildError, MaterializationError, PreviewError
from .models import GeneratedFile, ProjectKind, coerce_files
from .proxy import ProxyManager
from .supervisor import ProcessSupervisor
from .utils import console, print_error, print_success, print_summary_table, print_warning

SKIPPED_DIRS = frozenset({"node_modules", ".git", "dist", "__pycache__"})


def load_source(source: Path) -> list[GeneratedFile]:
    """Read generated files from a directory tree or a JSON list of records."""
    if source.is_dir():
        files: list[GeneratedFile] = []
        for path in sorted(source.rglob("*")):
            rel = path.relative_to(source)
            if not path.is_file() or SKIPPED_DIRS.intersection(rel.parts):
                continue
            try:
                content = path.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                print_warning(f"Skipping non-text file {rel.as_posix()}")
                continue
            files.append(GeneratedFile(path=rel.as_posix(), content=content))
        return files

    records = json.loads(source.read_text(encoding="utf-8"))
    if isinstance(records, dict):
        records = records.get("files", [])
    return coerce_files(records)


async def _wait_for_interrupt() -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    try:
        await stop.wait()
    finally:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)


async def _serve(
    config: Config,
    app_id: str,
    files: list[GeneratedFile],
    kind: ProjectKind | None,
    use_proxy: bool,
) -> int:
    supervisor = ProcessSupervisor(config)
    try:
        info = await supervisor.start(app_id, files, kind=kind, use_proxy=use_proxy)
    except BuildError as exc:
        print_error(f"{exc.step.capitalize()} failed{' after healing' if exc.healed else ''}:")
        console.print(exc.user_message(config.max_error_output), markup=False, highlight=False)
        await supervisor.cleanup(app_id)
        return 1
    except MaterializationError as exc:
        print_error(str(exc))
        if not exc.existed:
            await supervisor.cleanup(app_id)
        return 1
    except PreviewError as exc:
        print_error(str(exc))
        await supervisor.cleanup(app_id)
        return 1

    print_summary_table(
        {
            "App": info.app_id,
            "URL": info.front_door_url,
            "Port": str(info.port),
            "Process": f"#{info.process_sequence_id}",
        },
        title="Preview",
    )
    console.print("[dim]Press Ctrl-C to stop.[/dim]")
    try:
        await _wait_for_interrupt()
    finally:
        await supervisor.shutdown()
    print_success("Preview stopped and cleaned up.")
    return 0


async def _proxy(config: Config, target: str) -> int:
    manager = ProxyManager(config.proxy)
    try:
        info = await manager.start_proxy(target)
    except PreviewError as exc:
        print_error(str(exc))
        return 1

    print_summary_table({"Proxy": info.proxy_url, "Target": info.target_origin}, title="Proxy")
    console.print("[dim]Press Ctrl-C to stop.[/dim]")
    try:
        await _wait_for_interrupt()
    finally:
        await manager.cleanup()
    return 0


def main(argv: list[str] | None = None) -> None:
    """CLI entry point for ``preview-orchestrator``."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Ephemeral build & preview orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  preview-orchestrator serve ./generated --app-id demo\n"
            "  preview-orchestrator serve files.json --app-id demo --proxy\n"
            "  preview-orchestrator proxy http://localhost:5173\n"
        ),
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Build and serve a set of generated files")
    serve.add_argument("source", help="Directory of files, or a JSON list of {path, content} records")
    serve.add_argument("--app-id", required=True, help="Application id (directory name under the temp root)")
    serve.add_argument("--proxy", action="store_true", help="Front the server with a reverse proxy")
    serve.add_argument(
        "--kind",
        choices=[k.value for k in ProjectKind],
        default=None,
        help="Force the project kind instead of detecting it",
    )
    serve.add_argument("--temp-root", default=None, help="Root directory for app working directories")

    proxy = sub.add_parser("proxy", help="Run a standalone reverse proxy")
    proxy.add_argument("target", help="Upstream origin, e.g. http://localhost:5173")

    args = parser.parse_args(argv)
    config = Config.from_env()

    if args.command == "serve":
        source = Path(args.source)
        if not source.exists():
            console.print(f"[bold red]Error:[/bold red] Source not found: {source}")
            sys.exit(1)
        if args.temp_root:
            config.temp_root = Path(args.temp_root)
        try:
            files = load_source(source)
        except (OSError, ValueError) as exc:
            console.print(f"[bold red]Error:[/bold red] Could not read {source}: {exc}")
            sys.exit(1)
        kind = ProjectKind(args.kind) if args.kind else None
        code = asyncio.run(_serve(config, args.app_id, files, kind, args.proxy))
    else:
        code = asyncio.run(_proxy(config, args.target))

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
