"""Run lock and interrupt handling.

This module handles:
- An advisory file lock that prevents concurrent invocations against the
  same state and working directories
- Turning SIGINT/SIGTERM into an exception so that every scoped resource
  (swap, mounts, the run lock) is released before the process exits
"""

from __future__ import annotations

import fcntl
import logging
import os
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from types import FrameType

logger = logging.getLogger(__name__)


class RunLockError(Exception):
    """Raised when another invocation holds the run lock."""

    def __init__(self, lock_path: Path, code: str = "run_locked") -> None:
        super().__init__(
            f"Another build is already running (lock held on {lock_path})"
        )
        self.lock_path = lock_path
        self.code = code


class PipelineInterrupted(Exception):
    """Raised inside the pipeline when the process receives a signal."""

    def __init__(self, signum: int, code: str = "interrupted") -> None:
        super().__init__(f"Interrupted by {signal.Signals(signum).name}")
        self.signum = signum
        self.code = code


@contextmanager
def run_lock(lock_path: Path, timeout: float = 0.0) -> Iterator[None]:
    """Hold the advisory run lock for the duration of the block.

    Args:
        lock_path: Lock file.
        timeout: Seconds to wait for the lock (0 = fail immediately).

    Yields:
        None when the lock is acquired.

    Raises:
        RunLockError: If the lock is held by another process.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        start = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                lock_acquired = True
                break
            except BlockingIOError:
                if time.monotonic() - start >= timeout:
                    raise RunLockError(lock_path) from None
                time.sleep(0.1)

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        logger.debug("Run lock acquired: %s", lock_path)
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Run lock released: %s", lock_path)
        os.close(fd)


@contextmanager
def interrupt_guard(
    signals: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM),
) -> Iterator[None]:
    """Raise PipelineInterrupted on the given signals within the block.

    Previous handlers are restored on exit. Outside the main thread signal
    handlers cannot be installed and the block runs unguarded.

    Yields:
        None.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, frame: FrameType | None) -> None:
        raise PipelineInterrupted(signum)

    previous = {sig: signal.signal(sig, _handler) for sig in signals}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


__all__ = ["PipelineInterrupted", "RunLockError", "interrupt_guard", "run_lock"]
