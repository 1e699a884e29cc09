"""Cross-platform file locking for the durable state file.

Several strata processes (a provisioning run and an autoscaling loop, say)
may share one state file. Every read-modify-write of that file happens while
holding an exclusive lock on a sibling ``.lock`` file.

Public API:
    acquire_file_lock: Context manager holding an exclusive lock on a path
    LockTimeoutError: Raised when the lock cannot be acquired within timeout

Example:
    >>> from pathlib import Path
    >>> with acquire_file_lock(Path("state.json.lock"), timeout=5.0, operation="state write"):
    ...     ...  # only this process touches state.json here

Contention is handled with exponential backoff: 0.05s -> 0.1s -> 0.2s ... capped at 1s.
"""

import logging
import platform
import time
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO, TextIO

from strata.errors import StrataError

_system = platform.system()
if TYPE_CHECKING or _system == "Windows":
    import msvcrt  # type: ignore[import-not-found]
if TYPE_CHECKING or _system != "Windows":
    import fcntl  # type: ignore[import-not-found]

logger = logging.getLogger(__name__)

__all__ = ["LockTimeoutError", "acquire_file_lock"]

INITIAL_BACKOFF = 0.05
MAX_BACKOFF = 1.0


class LockTimeoutError(StrataError):
    """Raised when file lock cannot be acquired within timeout period."""


@contextmanager
def acquire_file_lock(
    lock_path: Path,
    timeout: float = 10.0,
    operation: str = "state access",
) -> Generator[None, None, None]:
    """Hold an exclusive lock on ``lock_path`` for the duration of the block.

    The lock file is created if missing. Unix uses fcntl.flock (advisory,
    whole file); Windows uses msvcrt.locking on the first byte.

    Args:
        lock_path: Path of the lock file
        timeout: Maximum seconds to wait for the lock
        operation: Description used in error messages

    Raises:
        LockTimeoutError: If the lock is still held elsewhere after timeout
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a") as handle:
        _acquire_with_backoff(handle, lock_path, timeout, operation)
        try:
            yield
        finally:
            _release(handle)


def _acquire_with_backoff(
    handle: TextIO | BinaryIO,
    lock_path: Path,
    timeout: float,
    operation: str,
) -> None:
    deadline = time.monotonic() + timeout
    delay = INITIAL_BACKOFF

    while True:
        try:
            if _system == "Windows":
                msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)  # type: ignore[attr-defined]
            else:
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            return
        except (BlockingIOError, PermissionError):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LockTimeoutError(
                    f"Failed to acquire lock for {operation} after {timeout} seconds. "
                    f"Lock file: {lock_path}. Another process may be holding it."
                ) from None
            time.sleep(min(delay, remaining))
            delay = min(delay * 2, MAX_BACKOFF)


def _release(handle: TextIO | BinaryIO) -> None:
    try:
        if _system == "Windows":
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)  # type: ignore[attr-defined]
        else:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
    except OSError as e:
        # Closing the handle releases the lock anyway.
        logger.debug(f"Error during lock cleanup: {e}")
