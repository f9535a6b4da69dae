"""Preview process supervisor.

Drives one application id through its lifecycle::

    absent -> starting -> running -> stopping -> absent
                            |
                            +-- crash (monitor) --> absent

``start`` materializes the generated files, installs and builds (healing
unresolved local imports and rebuilding exactly once), serves the build output
on an OS-allocated port in its own process group, waits for the server to
answer HTTP, and optionally fronts it with a reverse proxy.

Usage::

    supervisor = ProcessSupervisor(Config.from_env())
    info = await supervisor.start("demo", files, use_proxy=True)
    ...
    await supervisor.cleanup("demo")
"""

from __future__ import annotations

import asyncio
import shutil
import signal
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Iterable, NoReturn

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from ..builder import BuildHealer, BuildRunner
from ..config import Config
from ..errors import BuildError, NotHealable, PreviewError, SpawnError
from ..models import (
    AppConnectionInfo,
    AppState,
    BuildOutcome,
    GeneratedFile,
    ManagedApplication,
    ProcessExit,
    ProjectKind,
)
from ..proxy import ProxyManager
from ..scaffolder import MaterializedProject, ProjectMaterializer, is_safe_app_id
from ..utils import allocate_port, format_duration, signal_process_group, wait_for_health
from .monitor import ProcessMonitor
from .registry import AppRegistry

console = Console()


class ProcessSupervisor:
    """Starts, tracks and tears down preview servers.

    Every collaborator is injectable so tests (and embedding services) can
    substitute their own: the materializer, build runner, healer, registry,
    proxy manager and the port allocator.

    Attributes:
        config: Global orchestrator configuration.
        registry: The ``app_id -> ManagedApplication`` map owned by this
            supervisor.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        materializer: ProjectMaterializer | None = None,
        runner: BuildRunner | None = None,
        healer: BuildHealer | None = None,
        registry: AppRegistry | None = None,
        proxy_manager: ProxyManager | None = None,
        port_allocator: Callable[[], int] = allocate_port,
    ) -> None:
        self.config = config or Config()
        self.materializer = materializer or ProjectMaterializer(self.config)
        self.runner = runner or BuildRunner(self.config.build)
        self.healer = healer or BuildHealer(self.materializer.renderer)
        self.registry = (
            registry if registry is not None else AppRegistry(self.config.supervisor.exit_history_size)
        )
        self.port_allocator = port_allocator
        self.monitor = ProcessMonitor(
            self.registry,
            self.config.supervisor.host,
            on_unexpected_exit=self._release_after_crash,
        )
        self._proxy_manager = proxy_manager

    @property
    def proxy_manager(self) -> ProxyManager:
        """The proxy manager, created on first use."""
        if self._proxy_manager is None:
            self._proxy_manager = ProxyManager(self.config.proxy)
        return self._proxy_manager

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start(
        self,
        app_id: str,
        files: Iterable[GeneratedFile | dict[str, Any]],
        *,
        kind: ProjectKind | None = None,
        use_proxy: bool = False,
    ) -> AppConnectionInfo:
        """Bring *app_id* up and return how to reach it.

        Starting an id that is already running returns its current connection
        info and spawns nothing.  Concurrent starts of the same id are
        serialized; distinct ids proceed concurrently.

        Raises:
            MaterializationError: The project directory could not be written
                (including when it is left over from an earlier attempt).
            BuildError: Install or build failed; for build failures that
                survived one heal-and-rebuild, ``healed`` is set.
            AllocationError: No port could be allocated.
            SpawnError: The server (or its proxy) could not be started.
        """
        async with self.registry.start_lock(app_id):
            existing = self.registry.get(app_id)
            if existing is not None and existing.state == AppState.RUNNING:
                console.print(
                    f"[dim][App {escape(app_id)}] Already running at "
                    f"{escape(existing.front_door_url)}[/dim]"
                )
                return existing.connection_info()

            await self.registry.mark_starting(app_id)
            try:
                return await self._start(app_id, files, kind, use_proxy)
            finally:
                await self.registry.clear_starting(app_id)

    async def _start(
        self,
        app_id: str,
        files: Iterable[GeneratedFile | dict[str, Any]],
        kind: ProjectKind | None,
        use_proxy: bool,
    ) -> AppConnectionInfo:
        started = time.monotonic()
        console.print(f"[bold cyan]Starting preview[/bold cyan] {escape(app_id)}")

        project = await self.materializer.materialize_project(app_id, files, kind=kind)
        outcome = await self._build(project)
        app = await self._spawn_until_ready(project, outcome.output_dir)

        if use_proxy:
            await self._attach_proxy(app)
        if self.registry.stop_requested(app_id):
            await self._abandon(app)

        await self.registry.set_state(app_id, AppState.RUNNING)

        healed = f"{len(outcome.healed_files)} placeholder(s)" if outcome.healed else "no"
        console.print(
            Panel(
                f"[green]Preview running[/green]\n"
                f"  App:     {escape(app_id)}\n"
                f"  URL:     {escape(app.front_door_url)}\n"
                f"  Port:    {app.port}\n"
                f"  PID:     {app.pid}\n"
                f"  Healed:  {healed}\n"
                f"  Elapsed: {format_duration(time.monotonic() - started)}",
                title="Supervisor",
                border_style="green",
            )
        )
        return app.connection_info()

    # ------------------------------------------------------------------
    # Build (with one heal-and-rebuild)
    # ------------------------------------------------------------------

    async def _build(self, project: MaterializedProject) -> BuildOutcome:
        """Install, build, and on a healable failure heal then rebuild once."""
        started = time.monotonic()
        workdir = project.path

        await self.runner.install(workdir)
        healed_files: list[Path] = []
        try:
            await self.runner.build(workdir)
        except BuildError as exc:
            if exc.timed_out:
                raise
            try:
                healed_files = await self.healer.heal_files(workdir, exc.output)
            except NotHealable as reason:
                console.print(f"[yellow][App {escape(project.app_id)}] {escape(str(reason))}[/yellow]")
                raise exc from None

            console.print(
                f"[cyan][App {escape(project.app_id)}][/cyan] Rebuilding once after "
                f"writing {len(healed_files)} placeholder(s)"
            )
            try:
                await self.runner.build(workdir)
            except BuildError as retry_exc:
                retry_exc.healed = True
                raise

        return BuildOutcome(
            output_dir=self.runner.output_dir(workdir, project.kind),
            healed_files=healed_files,
            duration_seconds=time.monotonic() - started,
        )

    # ------------------------------------------------------------------
    # Spawn
    # ------------------------------------------------------------------

    async def _spawn_until_ready(
        self, project: MaterializedProject, output_dir: Path
    ) -> ManagedApplication:
        """Spawn the server, retrying on a fresh port when it exits during startup."""
        settings = self.config.supervisor
        app_id = project.app_id

        for attempt in range(1, settings.spawn_attempts + 1):
            if self.registry.stop_requested(app_id):
                raise self._cancelled(app_id)
            port = self.port_allocator()
            app = await self._spawn(project, output_dir, port)
            try:
                ready = await self._wait_until_ready(app)
            except BaseException:
                await self._discard(app)
                raise

            if self.registry.stop_requested(app_id):
                await self._abandon(app)

            if ready:
                return app

            if app.process.returncode is None:
                await self._discard(app)
                raise SpawnError(
                    f"Server for app {app_id} did not answer on port {app.port} "
                    f"within {settings.ready_timeout}s"
                )

            await self._discard(app)
            console.print(
                f"[yellow][App {escape(app_id)}] Server exited during startup "
                f"(attempt {attempt}/{settings.spawn_attempts}); retrying on a new port[/yellow]"
            )

        raise SpawnError(
            f"Server for app {app_id} exited during startup "
            f"{settings.spawn_attempts} time(s)"
        )

    def _serve_argv(self, output_dir: Path, port: int) -> list[str]:
        return [
            part.replace("{root}", str(output_dir)).replace("{port}", str(port))
            for part in self.config.supervisor.serve_command
        ]

    async def _spawn(
        self, project: MaterializedProject, output_dir: Path, port: int
    ) -> ManagedApplication:
        argv = self._serve_argv(output_dir, port)
        console.print(
            f"[cyan][App {escape(project.app_id)}][/cyan] Serving on port {port}: "
            f"{escape(' '.join(argv))}"
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(project.path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as exc:
            raise SpawnError(
                f"Could not start server for app {project.app_id}: {exc}"
            ) from exc

        app = ManagedApplication(
            app_id=project.app_id,
            working_directory=project.path,
            project_kind=project.kind,
            process=process,
            process_sequence_id=self.registry.next_sequence_id(),
            port=port,
            front_door_url=f"http://{self.config.supervisor.host}:{port}",
        )
        await self.registry.register(app)
        self.monitor.watch(app)
        return app

    async def _wait_until_ready(self, app: ManagedApplication) -> bool:
        """Poll the server until it answers HTTP or its process exits."""
        settings = self.config.supervisor
        if settings.ready_timeout <= 0:
            await asyncio.sleep(0)
            return app.process.returncode is None

        return await wait_for_health(
            f"http://{settings.host}:{app.port}/",
            timeout=settings.ready_timeout,
            interval=settings.ready_interval,
            abort=lambda: app.process.returncode is not None,
        )

    async def _attach_proxy(self, app: ManagedApplication) -> None:
        target = f"http://{self.config.supervisor.host}:{app.port}"
        try:
            info = await self.proxy_manager.start_proxy(target)
        except BaseException:
            await self._discard(app)
            raise
        app.proxy_url = info.proxy_url
        app.front_door_url = info.proxy_url
        self.registry.link_proxy(app.app_id, info.proxy_url)

    async def _discard(self, app: ManagedApplication) -> None:
        """Tear down a server that never reached ``running``."""
        if app.process.returncode is None:
            await self.registry.set_state(app.app_id, AppState.STOPPING)
        await self._terminate(app)
        await self.registry.remove(app.app_id, app.process_sequence_id)

    @staticmethod
    def _cancelled(app_id: str) -> SpawnError:
        return SpawnError(f"Start of app {app_id} was cancelled by a stop request")

    async def _abandon(self, app: ManagedApplication) -> NoReturn:
        """Tear down a half-started app whose start was cancelled, then raise."""
        console.print(
            f"[yellow][App {escape(app.app_id)}] Stop requested during start; abandoning[/yellow]"
        )
        await self._discard(app)
        proxy_url = self.registry.unlink_proxy(app.app_id)
        if proxy_url:
            await self._release_proxy(app.app_id, proxy_url)
        raise self._cancelled(app.app_id)

    async def _release_proxy(self, app_id: str, proxy_url: str) -> None:
        try:
            await self.proxy_manager.stop_proxy(proxy_url)
        except Exception as exc:
            console.print(
                f"[red][App {escape(app_id)}] Error stopping proxy {escape(proxy_url)}: "
                f"{escape(str(exc))}[/red]"
            )

    async def _release_after_crash(self, app: ManagedApplication) -> None:
        """Stop the proxy of a server that exited on its own."""
        if not app.proxy_url:
            return
        proxy_url = self.registry.unlink_proxy(app.app_id, app.proxy_url)
        if proxy_url:
            console.print(
                f"[yellow][App {escape(app.app_id)}] Stopping orphaned proxy "
                f"{escape(proxy_url)}[/yellow]"
            )
            await self._release_proxy(app.app_id, proxy_url)

    # ------------------------------------------------------------------
    # Stop / cleanup
    # ------------------------------------------------------------------

    async def _terminate(self, app: ManagedApplication) -> None:
        """SIGTERM the process group, wait the grace period, then SIGKILL."""
        grace = self.config.supervisor.stop_grace_period
        process = app.process

        if process.returncode is None and signal_process_group(process, signal.SIGTERM):
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                console.print(
                    f"[yellow][App {escape(app.app_id)}] No exit after {grace}s; "
                    f"sending SIGKILL[/yellow]"
                )
                signal_process_group(process, signal.SIGKILL)
                await process.wait()

        # Sweep anything the leader left behind in its group.
        signal_process_group(process, signal.SIGKILL)

        task = app.monitor_task
        if task is not None and not task.done():
            done, _ = await asyncio.wait({task}, timeout=max(grace, 1.0))
            if not done:
                task.cancel()

    async def stop(self, app_id: str) -> None:
        """Stop *app_id*'s server and proxy.  Never raises.

        A start still in progress for *app_id* is cancelled: it tears down
        whatever it spawned and raises ``SpawnError`` instead of reaching
        ``running``.
        """
        await self._stop(app_id, warn_if_absent=True)

    async def _stop(self, app_id: str, warn_if_absent: bool) -> None:
        starting = await self.registry.request_stop(app_id)
        app = self.registry.get(app_id)
        proxy_url = self.registry.unlink_proxy(app_id)
        if app is None:
            if proxy_url:
                await self._release_proxy(app_id, proxy_url)
            elif starting:
                console.print(
                    f"[cyan][App {escape(app_id)}][/cyan] Stop requested while starting; "
                    f"the start will be abandoned"
                )
            elif warn_if_absent:
                console.print(f"[yellow]App {escape(app_id)} is not running[/yellow]")
            return
        proxy_url = proxy_url or app.proxy_url

        console.print(f"[cyan][App {escape(app_id)}][/cyan] Stopping (pid {app.pid})")
        try:
            await self.registry.set_state(app_id, AppState.STOPPING)
            await self._terminate(app)
            if proxy_url:
                await self.proxy_manager.stop_proxy(proxy_url)
        except Exception as exc:
            console.print(f"[red][App {escape(app_id)}] Error while stopping: {escape(str(exc))}[/red]")
        finally:
            await self.registry.remove(app_id, app.process_sequence_id)
        console.print(f"[green][App {escape(app_id)}] Stopped[/green]")

    async def cleanup(self, app_id: str) -> None:
        """Stop *app_id* and delete its working directory.  Never raises."""
        await self._stop(app_id, warn_if_absent=False)

        if not is_safe_app_id(app_id):
            console.print(f"[red]Refusing to remove directory for unsafe app id {escape(app_id)!r}[/red]")
            return

        app_dir = self.config.app_dir(app_id)
        try:
            await asyncio.to_thread(shutil.rmtree, app_dir)
            console.print(f"[green][App {escape(app_id)}] Removed {escape(str(app_dir))}[/green]")
        except FileNotFoundError:
            pass
        except OSError as exc:
            console.print(
                f"[red][App {escape(app_id)}] Failed to remove {escape(str(app_dir))}: "
                f"{escape(str(exc))}[/red]"
            )

    async def shutdown(self) -> None:
        """Clean up every registered app and every proxy.  Never raises."""
        app_ids = self.registry.app_ids()
        if app_ids:
            console.print(f"[cyan]Shutting down {len(app_ids)} preview(s)[/cyan]")
        await asyncio.gather(*(self.cleanup(app_id) for app_id in app_ids))
        if self._proxy_manager is not None:
            try:
                await self._proxy_manager.cleanup()
            except PreviewError as exc:
                console.print(f"[red]Error while stopping proxies: {escape(str(exc))}[/red]")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_running(self) -> list[AppConnectionInfo]:
        return self.registry.running()

    def is_running(self, app_id: str) -> bool:
        return self.registry.is_running(app_id)

    def state(self, app_id: str) -> AppState:
        return self.registry.state(app_id)

    def get_app_info(self, app_id: str) -> AppConnectionInfo | None:
        """Connection info for a running app, or ``None``."""
        app = self.registry.get(app_id)
        if app is None or app.state != AppState.RUNNING:
            return None
        return app.connection_info()

    def last_exit(self, app_id: str) -> ProcessExit | None:
        """Most recent recorded process exit for *app_id*, expected or not."""
        return self.registry.last_exit(app_id)
