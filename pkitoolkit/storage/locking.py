"""Directory-scoped locks: mkdir is atomic, so the lock directory doubles as the mutex."""

import os
import time
import logging
import threading
from contextlib import contextmanager

from pkitoolkit.common.errors import LockTimeout, StorageError

LOGGER = logging.getLogger(__name__)

POLL_INTERVAL = 0.05

# per-thread hold counts, so a thread may re-enter a lock it already owns
_held = threading.local()


def _counts() -> dict:
    if not hasattr(_held, "counts"):
        _held.counts = {}
    return _held.counts


@contextmanager
def authority_lock(lock_dir: str, timeout: float = 10.0):
    """Hold lock_dir for the duration of the block, waiting at most `timeout` seconds."""
    lock_dir = os.path.abspath(lock_dir)
    counts = _counts()
    if counts.get(lock_dir):
        counts[lock_dir] += 1
        try:
            yield lock_dir
        finally:
            counts[lock_dir] -= 1
        return

    try:
        os.makedirs(os.path.dirname(lock_dir), exist_ok=True)
    except OSError as e:
        raise StorageError(f"Cannot create lock directory parent for {lock_dir}: {e}", value=lock_dir) from e

    deadline = time.monotonic() + timeout
    while True:
        try:
            os.mkdir(lock_dir)
            break
        except FileExistsError:
            if time.monotonic() >= deadline:
                raise LockTimeout(
                    f"Unable to acquire lock {lock_dir} within {timeout}s "
                    f"(remove it if no other process is running)",
                    value=lock_dir,
                ) from None
            time.sleep(POLL_INTERVAL)
        except OSError as e:
            raise StorageError(f"Cannot create lock {lock_dir}: {e}", value=lock_dir) from e

    LOGGER.debug("Acquired lock %s", lock_dir)
    counts[lock_dir] = 1
    try:
        yield lock_dir
    finally:
        counts.pop(lock_dir, None)
        try:
            os.rmdir(lock_dir)
        except OSError:
            LOGGER.warning("Could not release lock %s", lock_dir)
        else:
            LOGGER.debug("Released lock %s", lock_dir)
