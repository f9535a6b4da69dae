"""Reverse proxy in front of preview servers.

Key classes:
    ProxyManager - Spawns/stops worker processes and tracks them by URL

The worker itself lives in :mod:`preview_orchestrator.proxy.worker` and is only
imported inside the worker process.
"""

from .injection import DEBUG_SCRIPT, inject_html, needs_injection
from .manager import ProxyManager, parse_worker_message, validate_target_origin

__all__ = [
    "ProxyManager",
    "validate_target_origin",
    "parse_worker_message",
    "DEBUG_SCRIPT",
    "inject_html",
    "needs_injection",
]
