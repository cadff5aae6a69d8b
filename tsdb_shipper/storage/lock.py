"""
Exclusive advisory lock on an offline storage directory.

The lock file holds the owner's pid and stays locked for the life of the
process, so two shipper instances never write the same directory.
"""

import fcntl
import logging
import os
from pathlib import Path
from typing import Optional

from tsdb_shipper.exceptions import DirectoryLockError

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = ".tsdb.lock"


class DirectoryLock:
    """Holds an exclusive flock on `<directory>/.tsdb.lock`."""

    def __init__(self, directory: Path, lock_name: str = LOCK_FILE_NAME):
        self.directory = Path(directory)
        self.lock_file = self.directory / lock_name
        self._fd: Optional[int] = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """
        Take the lock without blocking.

        Raises:
            DirectoryLockError: Directory missing, lock path unusable, or
                another process (or instance) already holds the lock
        """
        if self._fd is not None:
            raise DirectoryLockError(f"Lock on {self.directory} is already held by this instance")
        if not self.directory.is_dir():
            raise DirectoryLockError(f"Failed to lock directory [{self.directory}]. Not found or not a directory")
        if self.lock_file.is_dir():
            raise DirectoryLockError(f"Failed to lock directory [{self.directory}]. {self.lock_file.name} is a directory")

        try:
            fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise DirectoryLockError(f"Failed to open lock file [{self.lock_file}]: {e}") from e

        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as e:
            os.close(fd)
            holder = self.read_holder()
            raise DirectoryLockError(
                f"Failed to lock directory [{self.directory}]. Held by pid {holder or 'unknown'}"
            ) from e

        pid = str(os.getpid()).encode("ascii")
        try:
            os.ftruncate(fd, 0)
            os.pwrite(fd, pid, 0)
            os.fsync(fd)
        except OSError as e:
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)
            raise DirectoryLockError(f"Failed to write pid to [{self.lock_file}]: {e}") from e

        self._fd = fd
        logger.info(f"Locked offline directory {self.directory} (pid {os.getpid()})")

    def read_holder(self) -> Optional[int]:
        """Return the pid recorded in the lock file, if readable."""
        try:
            content = self.lock_file.read_text().strip()
            return int(content) if content else None
        except (OSError, ValueError):
            return None

    def release(self) -> None:
        """Release the lock and delete the lock file."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            self.lock_file.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to delete lock file {self.lock_file}: {e}")
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        logger.info(f"Released lock on offline directory {self.directory}")

    def __enter__(self) -> "DirectoryLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
