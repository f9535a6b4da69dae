"""Per-process output and exit monitoring.

Each spawned server gets one background task that drains stdout and stderr
line by line, refines the registered port when the server announces its own
bind address, and deregisters the entry when the process exits.  An optional
callback runs after unexpected exits so the owner can release resources tied
to the dead server, such as its proxy.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Awaitable, Callable

from rich.console import Console
from rich.markup import escape

from ..models import AppState, ManagedApplication, ProcessExit
from ..utils import describe_returncode, strip_ansi
from .registry import AppRegistry

console = Console()

_URL_PORT_RE = re.compile(r"https?://[^\s/:]+:(\d{2,5})\b")
_HOST_PORT_RE = re.compile(r"\b(?:localhost|127\.0\.0\.1|0\.0\.0\.0):(\d{2,5})\b")
_ANNOUNCE_MARKERS = ("Local:", "localhost:", "://")


def parse_announced_port(line: str) -> int | None:
    """Extract the port from a server's "listening on" line, if it is one.

    Recognises lines such as ``Local:   http://localhost:5173/`` and
    ``Accepting connections at http://localhost:41234``.
    """
    text = strip_ansi(line)
    if not any(marker in text for marker in _ANNOUNCE_MARKERS):
        return None
    match = _URL_PORT_RE.search(text) or _HOST_PORT_RE.search(text)
    if not match:
        return None
    port = int(match.group(1))
    if 0 < port < 65536:
        return port
    return None


class ProcessMonitor:
    """Watches server processes on behalf of one registry."""

    def __init__(
        self,
        registry: AppRegistry,
        host: str = "localhost",
        drain_timeout: float = 1.0,
        on_unexpected_exit: Callable[[ManagedApplication], Awaitable[None]] | None = None,
    ) -> None:
        self.registry = registry
        self.host = host
        self.drain_timeout = drain_timeout
        self.on_unexpected_exit = on_unexpected_exit

    def watch(self, app: ManagedApplication) -> asyncio.Task:
        """Start the monitor task for *app* and attach it to the record."""
        task = asyncio.create_task(
            self._run(app), name=f"monitor-{app.app_id}-{app.process_sequence_id}"
        )
        app.monitor_task = task
        return task

    async def _run(self, app: ManagedApplication) -> ProcessExit:
        pumps = asyncio.gather(
            self._pump(app, app.process.stdout, is_stderr=False),
            self._pump(app, app.process.stderr, is_stderr=True),
        )
        returncode = await app.process.wait()
        # Grandchildren may keep the pipes open after the leader exits.
        try:
            await asyncio.wait_for(pumps, timeout=self.drain_timeout)
        except asyncio.TimeoutError:
            pass
        return await self._handle_exit(app, returncode)

    async def _pump(
        self,
        app: ManagedApplication,
        stream: asyncio.StreamReader | None,
        is_stderr: bool,
    ) -> None:
        if stream is None:
            return
        tag = escape(f"[App {app.app_id}]")
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; the oversized chunk is dropped.
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            if is_stderr:
                console.print(f"[yellow]{tag}[/yellow] {escape(line)}")
            else:
                console.print(f"[dim]{tag}[/dim] {escape(line)}")
                await self._refine_port(app, line)

    async def _refine_port(self, app: ManagedApplication, line: str) -> None:
        port = parse_announced_port(line)
        if port is None or port == app.port:
            return
        requested = app.port
        url = None if app.proxy_url else f"http://{self.host}:{port}"
        if await self.registry.update_port(app.app_id, app.process_sequence_id, port, url):
            console.print(
                f"[cyan][App {escape(app.app_id)}][/cyan] server announced port {port} "
                f"(requested {requested})"
            )

    async def _handle_exit(self, app: ManagedApplication, returncode: int | None) -> ProcessExit:
        exit_code, signal_name = describe_returncode(returncode)
        expected = app.state == AppState.STOPPING
        record = ProcessExit(
            app_id=app.app_id,
            process_sequence_id=app.process_sequence_id,
            returncode=exit_code,
            signal_name=signal_name,
            expected=expected,
        )
        self.registry.record_exit(record)
        removed = await self.registry.remove(app.app_id, app.process_sequence_id)

        detail = f"code {exit_code}" if signal_name is None else f"signal {signal_name}"
        if expected:
            console.print(f"[dim][App {escape(app.app_id)}] Process exited ({detail})[/dim]")
        elif removed is not None or app.state == AppState.STARTING:
            console.print(
                f"[red][App {escape(app.app_id)}] Process #{app.process_sequence_id} "
                f"exited unexpectedly ({detail})[/red]"
            )
            if removed is not None and self.on_unexpected_exit is not None:
                try:
                    await self.on_unexpected_exit(app)
                except Exception as exc:
                    console.print(
                        f"[red][App {escape(app.app_id)}] Error releasing resources after exit: "
                        f"{escape(str(exc))}[/red]"
                    )
        return record
