"""In-memory registry of managed applications.

One registry is owned by one supervisor; it is never a module-level
singleton.  Mutations go through an ``asyncio.Lock``.  A second, per-app-id
lock serializes ``start`` calls for the same id while distinct ids proceed
concurrently.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator

from ..models import AppConnectionInfo, AppState, ManagedApplication, ProcessExit


@dataclass
class _StartLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class AppRegistry:
    """``app_id -> ManagedApplication`` map plus lifecycle bookkeeping."""

    def __init__(self, exit_history_size: int = 100) -> None:
        self._apps: dict[str, ManagedApplication] = {}
        self._lock = asyncio.Lock()
        self._start_locks: dict[str, _StartLock] = {}
        self._starting: set[str] = set()
        self._stop_requests: set[str] = set()
        self._proxy_links: dict[str, str] = {}
        self._sequence = itertools.count(1)
        self._exits: deque[ProcessExit] = deque(maxlen=exit_history_size)

    # -- Locks -----------------------------------------------------------

    @asynccontextmanager
    async def start_lock(self, app_id: str) -> AsyncIterator[None]:
        """Hold the lock guarding duplicate starts of *app_id*.

        The entry is dropped once no caller holds or waits on it, so ids that
        are never started again do not accumulate.
        """
        entry = self._start_locks.get(app_id)
        if entry is None:
            entry = self._start_locks[app_id] = _StartLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._start_locks.get(app_id) is entry:
                del self._start_locks[app_id]

    def pending_start_locks(self) -> int:
        return len(self._start_locks)

    def next_sequence_id(self) -> int:
        return next(self._sequence)

    # -- Mutations -------------------------------------------------------

    async def mark_starting(self, app_id: str) -> None:
        async with self._lock:
            self._starting.add(app_id)
            self._stop_requests.discard(app_id)

    async def clear_starting(self, app_id: str) -> None:
        async with self._lock:
            self._starting.discard(app_id)
            self._stop_requests.discard(app_id)

    async def request_stop(self, app_id: str) -> bool:
        """Ask an in-progress start of *app_id* to abort; ``False`` if none is running."""
        async with self._lock:
            if app_id not in self._starting:
                return False
            self._stop_requests.add(app_id)
            return True

    def stop_requested(self, app_id: str) -> bool:
        return app_id in self._stop_requests

    def link_proxy(self, app_id: str, proxy_url: str) -> None:
        self._proxy_links[app_id] = proxy_url

    def unlink_proxy(self, app_id: str, proxy_url: str | None = None) -> str | None:
        """Forget the proxy of *app_id*; with *proxy_url*, only if it still matches."""
        current = self._proxy_links.get(app_id)
        if current is None or (proxy_url is not None and current != proxy_url):
            return None
        del self._proxy_links[app_id]
        return current

    async def register(self, app: ManagedApplication) -> None:
        async with self._lock:
            self._apps[app.app_id] = app

    async def set_state(self, app_id: str, state: AppState) -> ManagedApplication | None:
        async with self._lock:
            app = self._apps.get(app_id)
            if app is not None:
                app.state = state
            return app

    async def update_port(self, app_id: str, sequence_id: int, port: int, url: str | None) -> bool:
        """Refine the port (and URL) of the entry owned by *sequence_id*."""
        async with self._lock:
            app = self._apps.get(app_id)
            if app is None or app.process_sequence_id != sequence_id:
                return False
            app.port = port
            if url is not None:
                app.front_door_url = url
            return True

    async def remove(self, app_id: str, sequence_id: int | None = None) -> ManagedApplication | None:
        """Remove *app_id*; with *sequence_id*, only if that process still owns it."""
        async with self._lock:
            app = self._apps.get(app_id)
            if app is None:
                return None
            if sequence_id is not None and app.process_sequence_id != sequence_id:
                return None
            del self._apps[app_id]
            return app

    def record_exit(self, record: ProcessExit) -> None:
        self._exits.append(record)

    # -- Reads (snapshots) -------------------------------------------------

    def get(self, app_id: str) -> ManagedApplication | None:
        return self._apps.get(app_id)

    def state(self, app_id: str) -> AppState:
        app = self._apps.get(app_id)
        if app is not None:
            return app.state
        if app_id in self._starting:
            return AppState.STARTING
        return AppState.ABSENT

    def is_running(self, app_id: str) -> bool:
        app = self._apps.get(app_id)
        return app is not None and app.state == AppState.RUNNING

    def running(self) -> list[AppConnectionInfo]:
        return [
            app.connection_info()
            for app in list(self._apps.values())
            if app.state == AppState.RUNNING
        ]

    def app_ids(self) -> list[str]:
        return list(self._apps)

    def last_exit(self, app_id: str) -> ProcessExit | None:
        for record in reversed(self._exits):
            if record.app_id == app_id:
                return record
        return None

    def __len__(self) -> int:
        return len(self._apps)
