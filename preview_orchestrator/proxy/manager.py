"""Reverse proxy lifecycle management.

Each proxy is a separate worker process (see :mod:`.worker`) forwarding to one
fixed upstream origin.  The manager resolves ``start_proxy`` only after the
worker reports ``{"type": "started"}`` on stdout, and keeps a background task
per worker that logs its messages and deregisters it on exit.
"""

from __future__ import annotations

import asyncio
import json
import re
import signal
import sys
from collections.abc import Callable
from urllib.parse import urlsplit

from rich.console import Console
from rich.markup import escape

from ..config import ProxyConfig
from ..errors import SpawnError, ValidationError
from ..models import ProxyInfo, ReverseProxyInstance
from ..utils import allocate_port, describe_returncode, signal_process_group

console = Console()

WORKER_MODULE = "preview_orchestrator.proxy.worker"

_ORIGIN_RE = re.compile(r"^https?://", re.IGNORECASE)


def validate_target_origin(target_origin: str) -> str:
    """Return the ``scheme://host[:port]`` origin of *target_origin*.

    Raises:
        ValidationError: Unless it is an absolute http/https URL with a host.
    """
    if not isinstance(target_origin, str) or not _ORIGIN_RE.match(target_origin):
        raise ValidationError(
            f"Proxy target origin must be an absolute http/https URL, got {target_origin!r}"
        )
    parts = urlsplit(target_origin)
    if not parts.hostname:
        raise ValidationError(f"Proxy target origin has no host: {target_origin!r}")
    return f"{parts.scheme.lower()}://{parts.netloc}"


def parse_worker_message(line: str) -> dict | None:
    """Decode one JSON message line from a worker; ``None`` for plain text."""
    try:
        message = json.loads(line)
    except json.JSONDecodeError:
        return None
    if isinstance(message, dict) and isinstance(message.get("type"), str):
        return message
    return None


class ProxyManager:
    """Starts and stops reverse proxy workers, keyed by proxy URL."""

    def __init__(
        self,
        config: ProxyConfig | None = None,
        port_allocator: Callable[[], int] = allocate_port,
    ) -> None:
        self.config = config or ProxyConfig()
        self.port_allocator = port_allocator
        self._proxies: dict[str, ReverseProxyInstance] = {}

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def _worker_argv(self, origin: str, port: int) -> list[str]:
        argv = [
            self.config.python_executable or sys.executable,
            "-m",
            WORKER_MODULE,
            "--target",
            origin,
            "--port",
            str(port),
            "--host",
            self.config.listen_host,
            "--allowed-origin",
            self.config.allowed_origin,
        ]
        if not self.config.inject_debug_script:
            argv.append("--no-inject")
        return argv

    async def start_proxy(self, target_origin: str) -> ProxyInfo:
        """Spawn a worker forwarding to *target_origin* and wait until it listens.

        Raises:
            ValidationError: *target_origin* is not an absolute http/https URL;
                nothing is spawned.
            AllocationError: No port could be allocated.
            SpawnError: The worker could not be created, exited before
                confirming, or did not confirm within ``start_timeout``.
        """
        origin = validate_target_origin(target_origin)
        port = self.port_allocator()
        tag = f"[Proxy {port}]"
        console.print(f"[cyan]{escape(tag)}[/cyan] Starting proxy for {escape(origin)}")

        try:
            worker = await asyncio.create_subprocess_exec(
                *self._worker_argv(origin, port),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise SpawnError(f"Could not start proxy worker: {exc}") from exc

        stderr_task = asyncio.create_task(self._pump_stderr(worker, port))
        try:
            url = await asyncio.wait_for(
                self._wait_for_started(worker, port), timeout=self.config.start_timeout
            )
        except asyncio.TimeoutError:
            await self._terminate(worker)
            stderr_task.cancel()
            raise SpawnError(
                f"Proxy worker on port {port} did not start within {self.config.start_timeout}s"
            ) from None
        except BaseException:
            await self._terminate(worker)
            stderr_task.cancel()
            raise

        if url is None:
            returncode = await worker.wait()
            stderr_task.cancel()
            code, sig = describe_returncode(returncode)
            raise SpawnError(
                f"Proxy worker on port {port} exited before starting "
                f"({'signal ' + sig if sig else f'code {code}'})"
            )

        instance = ReverseProxyInstance(
            proxy_url=url, target_origin=origin, port=port, worker=worker
        )
        self._proxies[url] = instance
        instance.watch_task = asyncio.create_task(self._watch(instance, stderr_task))
        console.print(f"[green]{escape(tag)} Proxy running at {escape(url)}[/green]")
        return instance.info()

    async def _wait_for_started(self, worker: asyncio.subprocess.Process, port: int) -> str | None:
        """Read worker stdout until ``started``; ``None`` if it closes first."""
        assert worker.stdout is not None
        while True:
            raw = await worker.stdout.readline()
            if not raw:
                return None
            line = raw.decode("utf-8", errors="replace").strip()
            message = parse_worker_message(line)
            if message is not None and message["type"] == "started":
                url = message.get("url")
                if isinstance(url, str) and url:
                    return url
            self._handle_line(port, line, message)

    # ------------------------------------------------------------------
    # Watching
    # ------------------------------------------------------------------

    def _handle_line(self, port: int, line: str, message: dict | None) -> None:
        if not line:
            return
        tag = escape(f"[Proxy {port}]")
        if message is None:
            console.print(f"[dim]{tag}[/dim] {escape(line)}")
        elif message["type"] == "unhandled_error":
            detail = message.get("detail")
            text = str(message.get("message", ""))
            if detail:
                text = f"{text}: {detail}"
            console.print(f"[red]{tag} Unhandled error in worker: {escape(text)}[/red]")
        else:
            console.print(f"[dim]{tag}[/dim] {escape(str(message.get('message', line)))}")

    async def _pump_stderr(self, worker: asyncio.subprocess.Process, port: int) -> None:
        if worker.stderr is None:
            return
        tag = escape(f"[Proxy {port}]")
        while True:
            raw = await worker.stderr.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                console.print(f"[yellow]{tag}[/yellow] {escape(line)}")

    async def _watch(self, instance: ReverseProxyInstance, stderr_task: asyncio.Task) -> None:
        worker = instance.worker
        assert worker.stdout is not None
        while True:
            raw = await worker.stdout.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").strip()
            self._handle_line(instance.port, line, parse_worker_message(line))

        returncode = await worker.wait()
        try:
            await asyncio.wait_for(stderr_task, timeout=1.0)
        except asyncio.TimeoutError:
            pass

        if self._proxies.get(instance.proxy_url) is instance:
            del self._proxies[instance.proxy_url]
        code, sig = describe_returncode(returncode)
        console.print(
            f"[dim][Proxy {instance.port}] Worker exited "
            f"({'signal ' + sig if sig else f'code {code}'})[/dim]"
        )

    # ------------------------------------------------------------------
    # Stop
    # ------------------------------------------------------------------

    async def _terminate(self, worker: asyncio.subprocess.Process) -> None:
        if worker.returncode is None and signal_process_group(worker, signal.SIGTERM):
            try:
                await asyncio.wait_for(worker.wait(), timeout=self.config.stop_timeout)
            except asyncio.TimeoutError:
                signal_process_group(worker, signal.SIGKILL)
                await worker.wait()

    async def stop_proxy(self, proxy_url: str) -> None:
        """Stop the worker listening on *proxy_url*.  Unknown URLs are a no-op."""
        instance = self._proxies.get(proxy_url)
        if instance is None:
            console.print(f"[yellow]Proxy server {escape(proxy_url)} is not running[/yellow]")
            return

        try:
            await self._terminate(instance.worker)
            task = instance.watch_task
            if task is not None and not task.done():
                done, _ = await asyncio.wait({task}, timeout=self.config.stop_timeout or 1.0)
                if not done:
                    task.cancel()
        except Exception as exc:
            console.print(f"[red]Failed to stop proxy server {escape(proxy_url)}: {escape(str(exc))}[/red]")
        finally:
            if self._proxies.get(proxy_url) is instance:
                del self._proxies[proxy_url]
        console.print(f"[green]Stopped proxy server {escape(proxy_url)}[/green]")

    async def cleanup(self) -> None:
        """Stop every active proxy."""
        await asyncio.gather(*(self.stop_proxy(url) for url in list(self._proxies)))
        console.print("[dim]Cleaned up all proxy servers[/dim]")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_active(self) -> list[ProxyInfo]:
        return [instance.info() for instance in list(self._proxies.values())]

    def is_running(self, proxy_url: str) -> bool:
        return proxy_url in self._proxies
