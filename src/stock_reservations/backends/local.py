import threading
from collections import defaultdict


class LocalLockBackend:
    """
    In-process lock backend keyed by string.

    Only excludes threads of the same process, so it is meant for SQLite
    development setups and tests. Multi-process deployments use the
    PostgreSQL backend.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = defaultdict(threading.Lock)

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            return self._locks[key]

    def acquire(self, key: str, timeout: float | None) -> bool:
        key_lock = self._lock_for(key)
        if timeout is None:
            return key_lock.acquire()
        if timeout <= 0:
            return key_lock.acquire(blocking=False)
        return key_lock.acquire(timeout=timeout)

    def release(self, key: str) -> None:
        key_lock = self._lock_for(key)
        if key_lock.locked():
            key_lock.release()


# Shared by every caller in the process so locks actually exclude each other.
local_backend = LocalLockBackend()
