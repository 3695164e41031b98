import hashlib
import time

from django.db import connection

POLL_INTERVAL = 0.05


def advisory_key(key: str) -> int:
    """
    Map a string lock key onto PostgreSQL's signed BIGINT advisory-lock space.

    BLAKE2b with an 8-byte digest gives a value that is stable across
    processes and Python versions; the unsigned result is shifted into the
    signed int64 range pg_advisory_lock expects.
    """
    digest = hashlib.blake2b(key.encode("utf-8"), digest_size=8).digest()
    value = int.from_bytes(digest, byteorder="big", signed=False)
    if value >= 2**63:
        value -= 2**64
    return value


class PostgresAdvisoryLockBackend:
    """
    Session-level PostgreSQL advisory locks.

    The lock belongs to the current database connection: a crashed worker
    loses its connection and PostgreSQL drops the lock with it. Advisory locks
    are independent of transactions, so a sweep holding one does not keep a
    transaction open.

    Timeout behavior
    ----------------
    - timeout=None: pg_advisory_lock, blocks until acquired.
    - timeout=float: polls pg_try_advisory_lock until the deadline. At least
      one attempt is always made, so timeout=0 means "try once".
    """

    def acquire(self, key: str, timeout: float | None) -> bool:
        lock_id = advisory_key(key)

        if timeout is None:
            with connection.cursor() as cursor:
                cursor.execute("SELECT pg_advisory_lock(%s);", [lock_id])
            return True

        deadline = time.monotonic() + timeout

        while True:
            with connection.cursor() as cursor:
                cursor.execute("SELECT pg_try_advisory_lock(%s);", [lock_id])
                acquired = cursor.fetchone()[0]

            if acquired:
                return True
            if time.monotonic() >= deadline:
                return False

            time.sleep(POLL_INTERVAL)

    def release(self, key: str) -> None:
        """
        Release the advisory lock for the key.

        PostgreSQL ignores unlock requests for locks this connection does not
        hold, so this is safe in finally blocks.
        """
        with connection.cursor() as cursor:
            cursor.execute("SELECT pg_advisory_unlock(%s);", [advisory_key(key)])
