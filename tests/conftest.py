"""Shared pytest fixtures for the preview orchestrator test suite.

Provides reusable fixtures for:
- Temporary temp-root directories and fast test configurations
- Sample generated file sets (component and static projects)
- A fake bundler script and ``http.server`` serve command for real processes
- Mock subprocess helpers
"""

from __future__ import annotations

import asyncio
import sys
import textwrap
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from preview_orchestrator.config import (
    BuildConfig,
    Config,
    ProxyConfig,
    SupervisorConfig,
)

FIXTURES_DIR = Path(__file__).parent / "fixtures"


# ---------------------------------------------------------------------------
# Paths & configuration
# ---------------------------------------------------------------------------

@pytest.fixture
def temp_root(tmp_path: Path) -> Path:
    """Root directory for per-app working directories (auto-cleanup)."""
    root = tmp_path / "apps"
    root.mkdir()
    yield root


@pytest.fixture
def config(temp_root: Path) -> Config:
    """Configuration with short time bounds, pointed at ``temp_root``."""
    return Config(
        temp_root=temp_root,
        supervisor=SupervisorConfig(
            host="127.0.0.1",
            ready_timeout=2.0,
            ready_interval=0.05,
            stop_grace_period=0.5,
        ),
        proxy=ProxyConfig(listen_host="127.0.0.1", start_timeout=2.0, stop_timeout=0.5),
    )


@pytest.fixture
def fake_bundler() -> Path:
    """Path to the fake bundler script used instead of ``npm run build``."""
    path = FIXTURES_DIR / "fake_bundler.py"
    assert path.exists(), f"Fake bundler fixture not found at {path}"
    return path


@pytest.fixture
def process_config(temp_root: Path, fake_bundler: Path) -> Config:
    """Configuration that only spawns real Python processes.

    * install: a no-op interpreter call
    * build:   ``fake_bundler.py`` (reports unresolved imports like a bundler)
    * serve:   ``python -m http.server`` bound to 127.0.0.1
    """
    return Config(
        temp_root=temp_root,
        build=BuildConfig(
            install_command=[sys.executable, "-c", "pass"],
            build_command=[sys.executable, str(fake_bundler)],
            install_timeout=30,
            build_timeout=30,
        ),
        supervisor=SupervisorConfig(
            serve_command=[
                sys.executable, "-m", "http.server", "{port}",
                "--bind", "127.0.0.1", "--directory", "{root}",
            ],
            host="127.0.0.1",
            ready_timeout=15.0,
            ready_interval=0.1,
            stop_grace_period=2.0,
        ),
        proxy=ProxyConfig(listen_host="127.0.0.1", start_timeout=20.0, stop_timeout=2.0),
    )


# ---------------------------------------------------------------------------
# Sample generated files
# ---------------------------------------------------------------------------

@pytest.fixture
def component_files() -> list[dict[str, Any]]:
    """A small React project whose App imports a Header component."""
    return [
        {
            "path": "src/App.tsx",
            "content": textwrap.dedent("""\
                import React from 'react';
                import Header from './components/Header';

                export default function App() {
                  return <div><Header /><p>Hello preview</p></div>;
                }
            """),
            "language": "typescript",
        },
        {
            "path": "src/components/Header.tsx",
            "content": textwrap.dedent("""\
                import React from 'react';

                export default function Header() {
                  return <h1>Header</h1>;
                }
            """),
            "language": "typescript",
        },
    ]


@pytest.fixture
def component_files_missing_import() -> list[dict[str, Any]]:
    """A React project whose App imports a component that was never generated."""
    return [
        {
            "path": "src/App.tsx",
            "content": textwrap.dedent("""\
                import React from 'react';
                import Sidebar from './components/Sidebar';

                export default function App() {
                  return <div><Sidebar /><p>Hello preview</p></div>;
                }
            """),
            "language": "typescript",
        },
    ]


@pytest.fixture
def static_files() -> list[dict[str, Any]]:
    """A plain HTML page with a stylesheet."""
    return [
        {
            "path": "index.html",
            "content": textwrap.dedent("""\
                <!DOCTYPE html>
                <html>
                  <head><link rel="stylesheet" href="style.css"></head>
                  <body><h1>Static preview</h1></body>
                </html>
            """),
            "language": "html",
        },
        {
            "path": "style.css",
            "content": "h1 { color: teal; }\n",
            "language": "css",
        },
    ]


# ---------------------------------------------------------------------------
# Mock subprocess helpers
# ---------------------------------------------------------------------------

def _stream(data: bytes) -> asyncio.StreamReader:
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    reader.feed_eof()
    return reader


@pytest.fixture
def mock_subprocess():
    """Mock asyncio subprocess for testing command execution.

    Returns a factory that creates mock subprocess instances with configurable
    stdout, stderr, and return codes.  ``stdout``/``stderr`` are exposed both
    through ``communicate()`` and as already-closed ``StreamReader`` objects,
    so line-reading monitors see the text and then EOF.

    Must be called from inside a running event loop.

    Usage:
        async def test_command(mock_subprocess):
            proc = mock_subprocess(stdout="output", returncode=0)
            with patch("asyncio.create_subprocess_exec", return_value=proc):
                ...
    """
    def factory(
        stdout: str = "",
        stderr: str = "",
        returncode: int | None = 0,
        pid: int = 99999,
    ) -> AsyncMock:
        mock_proc = AsyncMock()
        mock_proc.communicate = AsyncMock(
            return_value=(stdout.encode("utf-8"), stderr.encode("utf-8"))
        )
        mock_proc.stdout = _stream(stdout.encode("utf-8"))
        mock_proc.stderr = _stream(stderr.encode("utf-8"))
        mock_proc.returncode = returncode
        mock_proc.pid = pid
        mock_proc.kill = MagicMock()
        mock_proc.send_signal = MagicMock()
        mock_proc.wait = AsyncMock(return_value=returncode)
        return mock_proc

    return factory


@pytest.fixture
def long_running_process():
    """Factory for a mock server process that runs until it is signalled.

    ``wait()`` blocks until ``finish(returncode)`` is called; the helper is
    attached to the mock as ``proc.finish``.  stdout/stderr stay open until
    then, like a real server's pipes.
    """
    def factory(pid: int = 4242, stdout: str = "") -> AsyncMock:
        done = asyncio.Event()
        proc = AsyncMock()
        proc.pid = pid
        proc.returncode = None
        proc.stdout = asyncio.StreamReader()
        proc.stderr = asyncio.StreamReader()
        if stdout:
            proc.stdout.feed_data(stdout.encode("utf-8"))

        async def wait() -> int | None:
            await done.wait()
            return proc.returncode

        def finish(returncode: int = 0) -> None:
            if done.is_set():
                return
            proc.returncode = returncode
            proc.stdout.feed_eof()
            proc.stderr.feed_eof()
            done.set()

        proc.wait = AsyncMock(side_effect=wait)
        proc.finish = finish
        proc.kill = MagicMock(side_effect=lambda: finish(-9))
        proc.send_signal = MagicMock()
        return proc

    return factory
