"""In-process mutual exclusion per (user, strategy, symbol).

Only one exit decision may be in flight per key. Waiting is bounded: a
holder that never releases makes later callers fail with ``LockTimeout``
instead of blocking forever. This does not coordinate separate worker
processes.
"""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .errors import LockTimeout

DEFAULT_LOCK_TIMEOUT = 30.0


class SymbolLocks:
    def __init__(self, timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.timeout = timeout
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def locked(self, key: str) -> bool:
        with self._guard:
            lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None) -> Iterator[None]:
        wait = self.timeout if timeout is None else timeout
        lock = self._lock_for(key)
        if not lock.acquire(timeout=wait):
            logging.warning("Lock on %s still held after %.1fs; skipping cycle", key, wait)
            raise LockTimeout(key, wait)
        try:
            yield
        finally:
            lock.release()


__all__ = ["DEFAULT_LOCK_TIMEOUT", "SymbolLocks"]
