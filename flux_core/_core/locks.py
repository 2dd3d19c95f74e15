"""
Host-wide advisory locks for install/upgrade workflows.

Each ``LockName`` is backed by ``<core-root>/locks/<name>.lock`` and an
exclusive ``flock``. Locks are cooperative: they only exclude other
participants that take the same lock.

Usage:
    manager = LockManager(store.locks_dir)

    async with manager.hold(LockName.UPGRADE):
        ...  # at most one upgrade runs on this host

    held = manager.try_acquire(LockName.INSTALL)
    if held is None:
        ...  # someone else is installing
    else:
        with held:
            ...
"""

from __future__ import annotations

import asyncio
import errno
import fcntl
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from flux_core.errors import LockError, PermissionDeniedError
from flux_core.types import LockName

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 0.1

_CONTENTION_ERRNOS = (errno.EWOULDBLOCK, errno.EAGAIN, errno.EACCES)


class HeldLock:
    """
    An acquired advisory lock.

    ``unlock()`` is idempotent. Leaving a ``with`` block releases the lock
    synchronously; garbage collection releases it as a last resort.
    """

    def __init__(self, name: LockName, path: Path, fd: int):
        self.name = name
        self.path = path
        self._fd: Optional[int] = fd

    @property
    def is_held(self) -> bool:
        return self._fd is not None

    def unlock(self) -> None:
        fd = self._fd
        if fd is None:
            return
        self._fd = None
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        except OSError as e:
            logger.debug(f"flock(LOCK_UN) on {self.path} failed: {e}")
        finally:
            os.close(fd)
        logger.debug(f"Released {self.name.value} lock")

    def __enter__(self) -> "HeldLock":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.unlock()

    def __del__(self) -> None:
        if getattr(self, "_fd", None) is not None:
            self.unlock()

    def __repr__(self) -> str:
        return f"HeldLock(name={self.name.value!r}, held={self.is_held})"


class LockManager:
    """Opens and acquires the named lock files under ``locks_dir``."""

    def __init__(self, locks_dir: Path, poll_interval: float = DEFAULT_POLL_INTERVAL):
        self.locks_dir = Path(locks_dir)
        self.poll_interval = poll_interval

    def lock_path(self, name: LockName) -> Path:
        return self.locks_dir / name.file_name

    def try_acquire(self, name: LockName) -> Optional[HeldLock]:
        """
        Try to take ``name`` without waiting.

        Returns:
            A ``HeldLock``, or None if another holder has the lock

        Raises:
            PermissionDeniedError: If the lock file cannot be opened
            LockError: If ``flock`` fails for a reason other than contention
        """
        path = self.lock_path(name)
        try:
            self.locks_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(str(path), os.O_CREAT | os.O_RDWR, 0o600)
        except OSError as e:
            raise PermissionDeniedError(
                "Failed to open lock file",
                details=f"{path} errno={e.errno}",
            ) from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            if e.errno in _CONTENTION_ERRNOS:
                return None
            raise LockError("Failed to acquire lock", details=f"{path} errno={e.errno}") from e

        logger.debug(f"Acquired {name.value} lock")
        return HeldLock(name, path, fd)

    async def acquire(self, name: LockName, poll_interval: Optional[float] = None) -> HeldLock:
        """
        Wait for ``name``, polling until it is free.

        Cancellation while waiting propagates ``asyncio.CancelledError``
        without ever holding the lock.
        """
        interval = self.poll_interval if poll_interval is None else poll_interval
        waited = False
        while True:
            held = self.try_acquire(name)
            if held is not None:
                return held
            if not waited:
                logger.info(f"Waiting for {name.value} lock held by another process")
                waited = True
            await asyncio.sleep(interval)

    @asynccontextmanager
    async def hold(
        self,
        name: LockName,
        poll_interval: Optional[float] = None,
    ) -> AsyncIterator[HeldLock]:
        """Acquire ``name`` for the duration of the block; release on every exit path."""
        held = await self.acquire(name, poll_interval)
        try:
            yield held
        finally:
            held.unlock()
