"""Ephemeral build & preview orchestrator.

Turns a list of generated source files into a running, network-reachable
preview: materialize the project, install and build it (healing unresolved
local imports once), serve the output on an OS-allocated port, and optionally
front it with a reverse proxy.

Quick usage::

    from preview_orchestrator import Config, ProcessSupervisor

    supervisor = ProcessSupervisor(Config())
    info = await supervisor.start("demo", [{"path": "src/App.tsx", "content": "..."}])
    print(info.front_door_url)
    await supervisor.cleanup("demo")
"""

from .config import Config
from .errors import (
    AllocationError,
    BuildError,
    MaterializationError,
    NotHealable,
    PreviewError,
    SpawnError,
    ValidationError,
)
from .models import AppConnectionInfo, GeneratedFile, ProjectKind, ProxyInfo
from .proxy import ProxyManager
from .supervisor import ProcessSupervisor

__all__ = [
    "Config",
    "ProcessSupervisor",
    "ProxyManager",
    # Models
    "AppConnectionInfo",
    "GeneratedFile",
    "ProjectKind",
    "ProxyInfo",
    # Errors
    "PreviewError",
    "AllocationError",
    "MaterializationError",
    "BuildError",
    "NotHealable",
    "SpawnError",
    "ValidationError",
]
