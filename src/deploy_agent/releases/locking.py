"""Per-target activation locks."""

from __future__ import annotations

import threading
from typing import Dict


class LockRegistry:
    """Hands out one re-entrant lock per target name.

    `enter`/`exit` count how deep the owning thread holds the lock so the
    remote lock directory is only created by the outermost holder.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._depth: Dict[str, int] = {}

    def for_target(self, name: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.RLock()
                self._locks[name] = lock
                self._depth[name] = 0
            return lock

    def acquire(self, name: str, timeout: float) -> bool:
        lock = self.for_target(name)
        if timeout > 0:
            return lock.acquire(timeout=timeout)
        return lock.acquire(blocking=False)

    def enter(self, name: str) -> int:
        # caller holds the target lock
        self._depth[name] += 1
        return self._depth[name]

    def exit(self, name: str) -> None:
        self._depth[name] -= 1
        self._locks[name].release()


DEFAULT_LOCKS = LockRegistry()
