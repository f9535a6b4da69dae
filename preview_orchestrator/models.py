"""Data model for managed preview applications and proxy instances.

Value objects that cross the public API (``GeneratedFile``,
``AppConnectionInfo``, ``ProxyInfo``) are Pydantic v2 models.  Records that
own live OS resources (process handles, monitor tasks) are plain dataclasses
held only inside the registries.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class ProjectKind(str, Enum):
    """How a materialized project is built and served."""
    COMPONENT_FRAMEWORK = "component_framework"
    STATIC_MARKUP = "static_markup"


class AppState(str, Enum):
    """Lifecycle state of an application id inside a supervisor."""
    ABSENT = "absent"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


# ---------------------------------------------------------------------------
# Inbound values
# ---------------------------------------------------------------------------

class GeneratedFile(BaseModel):
    """A single generated source file handed to the orchestrator."""

    model_config = ConfigDict(frozen=True)

    path: str = Field(..., min_length=1, description="Relative path inside the project")
    content: str = Field(default="", description="UTF-8 text content")
    language: str = Field(default="", description="Language hint from the generator")

    @property
    def basename(self) -> str:
        return self.path.replace("\\", "/").rsplit("/", 1)[-1]


def coerce_files(files: Iterable[GeneratedFile | dict[str, Any]]) -> list[GeneratedFile]:
    """Accept ``GeneratedFile`` instances or plain ``{path, content}`` dicts."""
    return [
        f if isinstance(f, GeneratedFile) else GeneratedFile.model_validate(f)
        for f in files
    ]


# ---------------------------------------------------------------------------
# Outbound values
# ---------------------------------------------------------------------------

class AppConnectionInfo(BaseModel):
    """What callers need to reach a running preview."""

    app_id: str
    port: int
    front_door_url: str
    process_sequence_id: int


class ProxyInfo(BaseModel):
    """Public description of an active reverse proxy."""

    proxy_url: str
    target_origin: str
    port: int


# ---------------------------------------------------------------------------
# Registry records
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ManagedApplication:
    """A running preview server and everything it exclusively owns."""

    app_id: str
    working_directory: Path
    project_kind: ProjectKind
    process: asyncio.subprocess.Process
    process_sequence_id: int
    port: int
    front_door_url: str
    created_at: datetime = field(default_factory=_utcnow)
    state: AppState = AppState.STARTING
    proxy_url: str | None = None
    monitor_task: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self.process.pid

    def connection_info(self) -> AppConnectionInfo:
        return AppConnectionInfo(
            app_id=self.app_id,
            port=self.port,
            front_door_url=self.front_door_url,
            process_sequence_id=self.process_sequence_id,
        )


@dataclass
class ReverseProxyInstance:
    """A forwarding worker process keyed by the URL it listens on."""

    proxy_url: str
    target_origin: str
    port: int
    worker: asyncio.subprocess.Process
    started_at: datetime = field(default_factory=_utcnow)
    watch_task: asyncio.Task | None = None

    def info(self) -> ProxyInfo:
        return ProxyInfo(
            proxy_url=self.proxy_url,
            target_origin=self.target_origin,
            port=self.port,
        )


@dataclass
class ProcessExit:
    """Post-hoc record of a server process ending, expected or not."""

    app_id: str
    process_sequence_id: int
    returncode: int | None
    signal_name: str | None = None
    expected: bool = False
    exited_at: datetime = field(default_factory=_utcnow)

    @property
    def crashed(self) -> bool:
        return not self.expected


@dataclass
class BuildOutcome:
    """Result of a successful install/build chain."""

    output_dir: Path
    healed_files: list[Path] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def healed(self) -> bool:
        return bool(self.healed_files)
