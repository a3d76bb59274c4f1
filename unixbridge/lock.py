"""Exclusive ownership of a local Unix socket path."""
from __future__ import annotations

import fcntl
import logging
import os
from typing import IO

from unixbridge.exceptions import SocketInUseError
from unixbridge.transport.local import listen
from unixbridge.transport.local import LocalListener

logger = logging.getLogger(__name__)


def lock_filepath(path: str) -> str:
    """Get the lock file path guarding a socket path."""
    return f'{path}.lock'


class SocketLock:
    """Exclusive hold on a socket path.

    The hold is an advisory `flock` on a lock file next to the socket.
    Create instances with
    [`acquire_exclusive()`][unixbridge.lock.acquire_exclusive].

    Args:
        path: Socket path.
        lock_file: Open lock file holding the `flock`.
        listener: Listener bound to the socket path.
    """

    def __init__(
        self,
        path: str,
        lock_file: IO[str],
        listener: LocalListener,
    ) -> None:
        self.path = path
        self._lock_file: IO[str] | None = lock_file
        self._listener: LocalListener | None = listener

    def __repr__(self) -> str:
        return f'{type(self).__name__}(path={self.path!r}, held={self.held})'

    @property
    def held(self) -> bool:
        """Lock is currently held."""
        return self._lock_file is not None

    async def release(self) -> None:
        """Close the listener, delete the socket and lock files, and unlock.

        Releasing a lock that is not held is a no-op.
        """
        if self._lock_file is None:
            return
        if self._listener is not None:
            await self._listener.close()
            self._listener = None
        _remove(self.path)
        # The lock file is unlinked while the flock is still held so any
        # contender which opened the old file sees a stale inode and retries.
        _remove(lock_filepath(self.path))
        lock_file, self._lock_file = self._lock_file, None
        # Closing the file drops the flock.
        lock_file.close()
        logger.debug(f'Released lock on {self.path}')


def _remove(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


def _is_current(lock_file: IO[str], lock_path: str) -> bool:
    """Check if an open lock file is still the one linked at `lock_path`."""
    try:
        linked = os.stat(lock_path)
    except FileNotFoundError:
        return False
    opened = os.fstat(lock_file.fileno())
    return (opened.st_dev, opened.st_ino) == (linked.st_dev, linked.st_ino)


def _try_lock(path: str) -> IO[str]:
    lock_path = lock_filepath(path)
    while True:
        lock_file = open(lock_path, 'a+')
        try:
            fcntl.flock(lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            lock_file.close()
            raise SocketInUseError(
                f'Socket {path} is in use by another proxy.',
            ) from None
        except OSError:
            lock_file.close()
            raise
        if _is_current(lock_file, lock_path):
            return lock_file
        # The previous holder unlinked the lock file between our open and
        # flock so the flock is on an orphaned inode.
        lock_file.close()
        logger.debug(f'Lock file {lock_path} was replaced, retrying')


async def acquire_exclusive(
    path: str,
    permissions: int,
) -> tuple[LocalListener, SocketLock]:
    """Take exclusive ownership of a socket path and listen on it.

    An advisory lock is taken on `<path>.lock` without blocking, then any
    stale file at `path` is replaced by a new socket with the given
    permissions.

    Args:
        path: Socket path.
        permissions: Permission bits of the socket file.

    Returns:
        Tuple of the listener on the socket and the lock guarding it. \
        [`SocketLock.release()`][unixbridge.lock.SocketLock.release] \
        must be called when the listener is no longer needed.

    Raises:
        SocketInUseError: If the lock is held by someone else.
        OSError: If the lock or socket file cannot be created.
    """
    lock_file = _try_lock(path)
    try:
        _remove(path)
        listener = await listen(path, permissions)
    except BaseException:
        lock_file.close()
        raise
    logger.debug(f'Acquired lock on {path}')
    return listener, SocketLock(path, lock_file, listener)
