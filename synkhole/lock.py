"""Run lock for synkhole.

Two backup runs against the same storage root would race on the staged
snapshot. RunLock serializes runs on one host with an fcntl.flock on a
lock file that also records the holder's PID.
"""

from pathlib import Path
from typing import Optional
import fcntl
import logging
import os
import time

from synkhole.config import LockConfig


logger = logging.getLogger(__name__)


class LockError(Exception):
    """Raised when the run lock cannot be acquired."""
    pass


class RunLock:
    """
    Exclusive lock held for the duration of a backup run.

    The flock is taken first and the recorded PID is only inspected while
    holding it, so there is no check-then-acquire window. A PID left behind
    by a dead process is simply overwritten.

    Usable as a context manager.
    """

    def __init__(self, lock_path: Path, timeout: int = 5):
        """
        Args:
            lock_path: Path of the lock file (parent directories are created)
            timeout: Seconds to keep retrying before giving up
        """
        self.lock_path = Path(os.path.expanduser(str(lock_path)))
        self.timeout = timeout
        self._fd: Optional[int] = None

    @classmethod
    def from_config(cls, config: LockConfig, storage_root: Path) -> "RunLock":
        lock_path = config.lock_file or default_lock_path(storage_root)
        return cls(lock_path, timeout=config.timeout_seconds)

    @property
    def acquired(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """
        Take the lock, waiting up to timeout seconds.

        Raises:
            LockError: If the lock file can't be opened or another run holds
                       the lock when the timeout expires
        """
        deadline = time.monotonic() + self.timeout
        while True:
            fd = self._open()
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                os.close(fd)
                if time.monotonic() >= deadline:
                    holder = self.holder_pid()
                    who = f"process {holder}" if holder else "another process"
                    raise LockError(
                        f"Another backup run ({who}) holds {self.lock_path} "
                        f"after {self.timeout}s"
                    )
                time.sleep(0.1)
                continue

            # The previous holder may have unlinked the file while we waited
            if _is_current(fd, self.lock_path):
                break
            fcntl.flock(fd, fcntl.LOCK_UN)
            os.close(fd)

        previous = _read_pid(fd)
        if previous is not None and previous != os.getpid():
            logger.debug(f"Taking over lock left by process {previous}")

        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        logger.debug(f"Acquired run lock {self.lock_path}")

    def _open(self) -> int:
        try:
            self.lock_path.parent.mkdir(parents=True, exist_ok=True)
            return os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise LockError(f"Cannot open lock file {self.lock_path}: {e}")

    def release(self) -> None:
        """Release the lock and remove the lock file. Safe to call twice."""
        if self._fd is None:
            return
        fd, self._fd = self._fd, None

        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        logger.debug(f"Released run lock {self.lock_path}")

    def is_locked(self) -> bool:
        """Check whether any process currently holds the lock."""
        if self._fd is not None:
            return True
        try:
            fd = os.open(str(self.lock_path), os.O_RDONLY)
        except FileNotFoundError:
            return False
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            return True
        else:
            fcntl.flock(fd, fcntl.LOCK_UN)
            return False
        finally:
            os.close(fd)

    def holder_pid(self) -> Optional[int]:
        """PID recorded in the lock file, or None."""
        try:
            content = self.lock_path.read_text().strip()
        except OSError:
            return None
        return int(content) if content.isdigit() else None

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.release()
        return False


def default_lock_path(storage_root: Path) -> Path:
    """Lock file beside the storage root: <storage_dir>/.<host>.lock"""
    return storage_root.parent / f".{storage_root.name}.lock"


def _is_current(fd: int, path: Path) -> bool:
    try:
        on_disk = os.stat(path)
    except FileNotFoundError:
        return False
    opened = os.fstat(fd)
    return (opened.st_dev, opened.st_ino) == (on_disk.st_dev, on_disk.st_ino)


def _read_pid(fd: int) -> Optional[int]:
    os.lseek(fd, 0, os.SEEK_SET)
    content = os.read(fd, 32).decode(errors="replace").strip()
    return int(content) if content.isdigit() else None
