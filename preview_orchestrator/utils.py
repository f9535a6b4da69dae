"""Shared utility functions for the preview orchestrator.

Provides async command execution, ephemeral port allocation, HTTP readiness
polling, process-group signalling, and Rich-based console helpers.
"""

from __future__ import annotations

import asyncio
import os
import re
import signal
import socket
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import httpx
from rich.console import Console
from rich.table import Table

from .errors import AllocationError

console = Console()

# ---------------------------------------------------------------------------
# Async command execution
# ---------------------------------------------------------------------------


@dataclass
class CommandResult:
    """Outcome of a bounded child-process invocation."""

    returncode: int
    output: str
    timed_out: bool = False
    duration_seconds: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out


async def run_command(
    cmd: list[str],
    cwd: str | Path | None = None,
    timeout: float = 120,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run a command to completion with stdout and stderr merged.

    Args:
        cmd: Argument list; no shell is involved.
        cwd: Working directory for the child process.
        timeout: Maximum wall-clock seconds before the process is killed.
        env: Optional extra environment variables merged on top of ``os.environ``.

    Returns:
        A :class:`CommandResult`.  On timeout the process group is killed,
        ``returncode`` is ``-1`` and ``timed_out`` is set; whatever output was
        produced before the kill is not available.

    Raises:
        FileNotFoundError / PermissionError: If the executable cannot be run.
    """
    merged_env: dict[str, str] | None = None
    if env:
        merged_env = {**os.environ, **env}

    start = time.monotonic()
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        cwd=str(cwd) if cwd else None,
        env=merged_env,
        start_new_session=True,
    )

    try:
        stdout_bytes, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        # Grandchildren share the output pipe; the whole group must go.
        signal_process_group(process, signal.SIGKILL)
        await process.wait()
        return CommandResult(
            returncode=-1,
            output=f"Command timed out after {timeout}s: {' '.join(cmd)}",
            timed_out=True,
            duration_seconds=time.monotonic() - start,
        )

    output = (stdout_bytes or b"").decode("utf-8", errors="replace").strip()
    return CommandResult(
        returncode=process.returncode if process.returncode is not None else -1,
        output=output,
        duration_seconds=time.monotonic() - start,
    )


# ---------------------------------------------------------------------------
# Port helpers
# ---------------------------------------------------------------------------


def allocate_port(host: str = "127.0.0.1") -> int:
    """Ask the OS for a free TCP port.

    Binds to port 0, reads back the assigned port and releases the socket
    immediately.  The port was free at the instant of the check only; a
    concurrent bind by another process can still win the race.

    Raises:
        AllocationError: If the OS refuses the bind.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.bind((host, 0))
        return sock.getsockname()[1]
    except OSError as exc:
        raise AllocationError(f"Could not allocate an ephemeral port on {host}: {exc}") from exc
    finally:
        sock.close()


# ---------------------------------------------------------------------------
# Readiness polling
# ---------------------------------------------------------------------------


async def wait_for_health(
    url: str,
    timeout: float = 60,
    interval: float = 2,
    abort: Callable[[], bool] | None = None,
) -> bool:
    """Poll *url* until the server answers with any HTTP response.

    Any status code counts: the point is that something accepted the
    connection and spoke HTTP.

    Args:
        url: Fully-qualified URL (e.g. ``http://localhost:41234/``).
        timeout: Maximum seconds to wait.
        interval: Seconds between attempts.
        abort: Optional callable checked before each attempt; returning ``True``
            stops polling early (e.g. the server process already exited).

    Returns:
        ``True`` if a response arrived within the timeout window.
    """
    deadline = time.monotonic() + timeout

    async with httpx.AsyncClient(timeout=httpx.Timeout(5.0, connect=2.0)) as client:
        while time.monotonic() < deadline:
            if abort is not None and abort():
                return False
            try:
                await client.get(url)
                return True
            except httpx.HTTPError:
                pass

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(interval, remaining))

    return False


# ---------------------------------------------------------------------------
# Process helpers
# ---------------------------------------------------------------------------


def signal_process_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> bool:
    """Send *sig* to the process group led by *process*.

    Servers and proxy workers are spawned as session leaders, so their pid is
    also their process-group id and the group covers grandchildren such as the
    node process behind ``npx``, even after the leader itself has exited.
    Falls back to signalling the process alone when no such group exists.

    Returns:
        ``False`` if neither the group nor the process could be signalled.
    """
    try:
        os.killpg(process.pid, sig)
        return True
    except (ProcessLookupError, PermissionError):
        pass
    if process.returncode is not None:
        return False
    try:
        process.send_signal(sig)
        return True
    except ProcessLookupError:
        return False


def describe_returncode(returncode: int | None) -> tuple[int | None, str | None]:
    """Split an asyncio returncode into ``(exit_code, signal_name)``."""
    if returncode is None or returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"signal {-returncode}"


_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")


def strip_ansi(text: str) -> str:
    """Remove terminal colour/cursor escape sequences."""
    return _ANSI_RE.sub("", text)


# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Examples::

        format_duration(3.7)    -> "3.7s"
        format_duration(65.2)   -> "1m 5s"
    """
    if seconds < 0:
        return "0.0s"

    minutes = int(seconds // 60)
    secs = seconds % 60
    if minutes > 0:
        return f"{minutes}m {int(secs)}s"
    return f"{secs:.1f}s"


# ---------------------------------------------------------------------------
# Rich output helpers
# ---------------------------------------------------------------------------


def print_summary_table(data: dict[str, str], title: str = "Summary") -> None:
    """Print a two-column key/value summary table."""
    table = Table(title=title, show_header=True, header_style="bold cyan")
    table.add_column("Item", style="dim", no_wrap=True)
    table.add_column("Value")

    for key, value in data.items():
        table.add_row(key, str(value))

    console.print(table)
    console.print()


def print_success(message: str) -> None:
    """Print a green success message."""
    console.print(f"[bold green]{message}[/bold green]")


def print_error(message: str) -> None:
    """Print a red error message."""
    console.print(f"[bold red]{message}[/bold red]")


def print_warning(message: str) -> None:
    """Print a yellow warning message."""
    console.print(f"[bold yellow]{message}[/bold yellow]")
