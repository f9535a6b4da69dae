"""Process supervision for preview servers.

Key classes:
    ProcessSupervisor - Start/stop/cleanup lifecycle for one app id at a time
    AppRegistry       - In-memory app map with per-id start locks
    ProcessMonitor    - Output logging, port refinement and exit tracking
"""

from .monitor import ProcessMonitor, parse_announced_port
from .registry import AppRegistry
from .supervisor import ProcessSupervisor

__all__ = [
    "ProcessSupervisor",
    "AppRegistry",
    "ProcessMonitor",
    "parse_announced_port",
]
