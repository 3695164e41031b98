from __future__ import annotations

import logging
from contextlib import ExitStack, contextmanager
from functools import wraps
from typing import Any, Callable, Iterator, Protocol

from .exceptions import LockAcquireTimeout

logger = logging.getLogger(__name__)


class LockBackend(Protocol):
    """
    Minimal interface every lock backend implements.

    `acquire` returns False when the timeout expires; `release` must be safe
    to call from a finally block.
    """
    def acquire(self, key: str, timeout: float | None) -> bool: ...
    def release(self, key: str) -> None: ...


_backend_override: LockBackend | None = None


def set_default_backend(backend: LockBackend | None) -> None:
    """Force the backend used when none is passed (None restores auto-selection)."""
    global _backend_override
    _backend_override = backend


def get_default_backend() -> LockBackend:
    """
    Resolve the backend from the LOCK_BACKEND setting.

    "auto" picks PostgreSQL advisory locks when the default connection is
    PostgreSQL and an in-process backend otherwise.
    """
    if _backend_override is not None:
        return _backend_override

    from django.db import connection

    from . import conf
    from .backends.local import local_backend
    from .backends.postgres import PostgresAdvisoryLockBackend

    choice = conf.get("LOCK_BACKEND")
    if choice == "auto":
        choice = "postgres" if connection.vendor == "postgresql" else "local"
    if choice == "postgres":
        return PostgresAdvisoryLockBackend()
    if choice == "local":
        return local_backend
    raise ValueError(f"Unknown LOCK_BACKEND {choice!r}")


@contextmanager
def lock(
    key: str,
    timeout: float | None = 3.0,
    backend: LockBackend | None = None,
) -> Iterator[None]:
    """
    Hold a business-key lock for the duration of the block.

    Parameters
    ----------
    key : str
        Lock identifier derived from business context,
        e.g. "stock-reservations:expiry-sweep".

    timeout : float | None, default=3.0
        Seconds to wait. None blocks indefinitely; 0 makes a single attempt.

    backend : LockBackend | None
        Optional backend override.

    Raises
    ------
    LockAcquireTimeout
        If the lock cannot be acquired within the timeout.
    """
    be = backend or get_default_backend()

    if not be.acquire(key, timeout):
        raise LockAcquireTimeout(
            f"Failed to acquire lock for key='{key}' within timeout={timeout}s"
        )

    try:
        yield
    finally:
        be.release(key)


def exclusive(*, key: str, timeout: float | None = 0):
    """
    Run the decorated function in at most one worker at a time.

    A caller that cannot take the lock within `timeout` skips the call and
    gets None back. Only the acquisition is treated as a conflict: a
    LockAcquireTimeout raised by the function itself propagates.

    Example
    -------
    @exclusive(key="stock-reservations:expiry-sweep")
    def run(self, now=None):
        ...
    """
    def decorator(fn: Callable[..., Any]):
        @wraps(fn)
        def wrapper(*args: Any, **kwargs: Any):
            with ExitStack() as stack:
                try:
                    stack.enter_context(lock(key, timeout=timeout))
                except LockAcquireTimeout:
                    logger.info(f"Skipped {fn.__qualname__}: {key} is held by another worker")
                    return None
                return fn(*args, **kwargs)

        return wrapper

    return decorator
