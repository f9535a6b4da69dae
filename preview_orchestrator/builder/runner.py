"""Dependency install and build execution.

Runs the package manager's install step and the build step inside a
materialized project, each as an awaited child process with combined output
and its own time bound.  A failing step raises :class:`BuildError` carrying
that step's output only.
"""

from __future__ import annotations

from pathlib import Path

from rich.console import Console
from rich.markup import escape

from ..config import BuildConfig
from ..errors import BuildError
from ..models import ProjectKind
from ..utils import CommandResult, format_duration, run_command

console = Console()


class BuildRunner:
    """Executes install/build commands for a working directory.

    Commands are argv lists taken from :class:`BuildConfig`, so tests and
    deployments can substitute a different package manager or a stub.
    """

    def __init__(self, config: BuildConfig | None = None):
        self.config = config or BuildConfig()

    async def install(self, workdir: str | Path) -> CommandResult:
        """Install dependencies.

        Raises:
            BuildError: With ``step="install"`` on non-zero exit or timeout.
        """
        return await self._run_step(
            "install", self.config.install_command, workdir, self.config.install_timeout
        )

    async def build(self, workdir: str | Path) -> CommandResult:
        """Run the build script with ``NODE_ENV=production``.

        Raises:
            BuildError: With ``step="build"`` on non-zero exit or timeout.
        """
        return await self._run_step(
            "build",
            self.config.build_command,
            workdir,
            self.config.build_timeout,
            env={"NODE_ENV": "production"},
        )

    async def install_and_build(
        self,
        workdir: str | Path,
        kind: ProjectKind = ProjectKind.COMPONENT_FRAMEWORK,
    ) -> Path:
        """Install then build, strictly in order.

        Returns:
            The directory the server should serve: ``<workdir>/dist`` for
            component projects, the working directory itself for static ones.
        """
        await self.install(workdir)
        await self.build(workdir)
        return self.output_dir(workdir, kind)

    def output_dir(self, workdir: str | Path, kind: ProjectKind) -> Path:
        root = Path(workdir)
        if kind == ProjectKind.COMPONENT_FRAMEWORK:
            return root / self.config.build_output_dir
        return root

    async def _run_step(
        self,
        step: str,
        command: list[str],
        workdir: str | Path,
        timeout: float,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        cmd_str = " ".join(command)
        console.print(f"[cyan]Running {step}:[/cyan] {escape(cmd_str)} [dim](in {escape(str(workdir))})[/dim]")

        try:
            result = await run_command(command, cwd=workdir, timeout=timeout, env=env)
        except (FileNotFoundError, PermissionError) as exc:
            raise BuildError(
                f"Could not execute {step} command '{cmd_str}': {exc}",
                step=step,
                output=str(exc),
                command=cmd_str,
            ) from exc

        if result.timed_out:
            console.print(f"[red]{step.capitalize()} timed out after {timeout}s[/red]")
            raise BuildError(
                f"{step.capitalize()} step timed out after {timeout}s",
                step=step,
                output=result.output,
                returncode=result.returncode,
                timed_out=True,
                command=cmd_str,
            )

        if result.returncode != 0:
            console.print(
                f"[red]{step.capitalize()} failed (exit {result.returncode}) "
                f"after {format_duration(result.duration_seconds)}[/red]"
            )
            raise BuildError(
                f"{step.capitalize()} step failed with exit code {result.returncode}",
                step=step,
                output=result.output,
                returncode=result.returncode,
                command=cmd_str,
            )

        console.print(
            f"[green]{step.capitalize()} completed[/green] in {format_duration(result.duration_seconds)}"
        )
        return result
