"""Storage root access for synkhole.

This module knows the on-disk layout of a storage root:

- Finished snapshots are directories named by a decimal Unix timestamp,
  e.g. ``1700000000``.
- A staged (incomplete) snapshot carries the reserved suffix, e.g.
  ``1700000000.synkhole``.

It also provides the directory primitives (create, rename, remove, list)
used by the lifecycle stages, and validation of the root itself.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional
import logging
import os
import re
import shutil
import socket
import stat
import sys

from synkhole.errors import StorageUnavailable


logger = logging.getLogger(__name__)

# Reserved suffix marking a snapshot that has not been committed yet
STAGED_SUFFIX = ".synkhole"

_SNAPSHOT_ID_RE = re.compile(r"[0-9]+")

# Probe file used to check that the root is writable
_WRITE_TEST_NAME = ".synkhole_write_test"


class SnapshotState(Enum):
    """Lifecycle state of a snapshot directory."""
    STAGED = "staged"
    FINISHED = "finished"


@dataclass(frozen=True)
class Snapshot:
    """A snapshot directory under the storage root."""
    name: str
    path: Path
    state: SnapshotState
    id: Optional[int]  # None for finished entries with a non-numeric name

    @property
    def is_staged(self) -> bool:
        return self.state is SnapshotState.STAGED


def parse_snapshot_id(name: str) -> Optional[int]:
    """
    Parse a finished snapshot name into its timestamp id.

    Args:
        name: Directory name

    Returns:
        The integer id, or None if the name is not a decimal timestamp
    """
    if not _SNAPSHOT_ID_RE.fullmatch(name):
        return None
    return int(name)


def is_staged_name(name: str) -> bool:
    """Return True if the name follows the staged snapshot convention."""
    return name.endswith(STAGED_SUFFIX)


def finished_name(snapshot_id: int) -> str:
    return str(snapshot_id)


def staged_name(snapshot_id: int) -> str:
    return f"{snapshot_id}{STAGED_SUFFIX}"


def default_host_identity() -> str:
    """Fully qualified host name, used to namespace storage per machine."""
    return socket.getfqdn()


def resolve_storage_root(storage_dir: Path, host_identity: Optional[str] = None) -> Path:
    """
    Return the per-host storage root below the configured storage directory.

    Args:
        storage_dir: Configured storage directory (may contain ~)
        host_identity: Host name to namespace by (default: this host's FQDN)

    Returns:
        Path to the storage root
    """
    if not host_identity:
        host_identity = default_host_identity()
    return Path(os.path.expanduser(str(storage_dir))) / host_identity


class StorageRoot:
    """
    Accessor for a storage root directory.

    Only direct children that are directories and do not start with a dot
    are considered snapshot entries.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def __repr__(self) -> str:
        return f"StorageRoot({str(self.path)!r})"

    def exists(self) -> bool:
        return self.path.is_dir()

    def ensure(self) -> None:
        """
        Make sure the storage root exists and is writable.

        Creates the directory (with parents) when missing.

        Raises:
            StorageUnavailable: If the root cannot be created, is not a
                                directory, or is not writable
        """
        if self.path.exists() and not self.path.is_dir():
            raise StorageUnavailable(f"Storage root is not a directory: {self.path}")

        if not self.path.exists():
            logger.info(f"Storage root {self.path} doesn't exist, creating it")
            try:
                self.path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageUnavailable(f"Cannot create storage root {self.path}: {e}")

        if not self._is_writable():
            raise StorageUnavailable(f"Storage root not writable: {self.path}")

    def _is_writable(self) -> bool:
        if not os.access(self.path, os.W_OK):
            return False

        test_file = self.path / _WRITE_TEST_NAME
        try:
            test_file.touch()
            test_file.unlink()
            return True
        except OSError:
            return False

    def list_names(self) -> List[str]:
        """Names of all direct children, sorted."""
        if not self.exists():
            return []
        return sorted(entry.name for entry in self.path.iterdir())

    def entries(self) -> List[Snapshot]:
        """
        List snapshot entries (staged and finished) in the storage root.

        Returns:
            Snapshots sorted by directory name
        """
        if not self.exists():
            return []

        snapshots = []
        for entry in self.path.iterdir():
            if entry.name.startswith("."):
                continue
            if entry.is_symlink() or not entry.is_dir():
                continue

            if is_staged_name(entry.name):
                snapshot_id = parse_snapshot_id(entry.name[:-len(STAGED_SUFFIX)])
                state = SnapshotState.STAGED
            else:
                snapshot_id = parse_snapshot_id(entry.name)
                state = SnapshotState.FINISHED

            snapshots.append(Snapshot(
                name=entry.name,
                path=entry,
                state=state,
                id=snapshot_id,
            ))

        snapshots.sort(key=lambda s: s.name)
        return snapshots

    def staged_snapshots(self) -> List[Snapshot]:
        return [s for s in self.entries() if s.is_staged]

    def finished_snapshots(self) -> List[Snapshot]:
        return [s for s in self.entries() if not s.is_staged]

    def latest_finished(self) -> Optional[Snapshot]:
        """
        Find the finished snapshot with the greatest timestamp id.

        Entries whose name is not a timestamp are never returned.

        Returns:
            The most recent finished snapshot, or None
        """
        candidates = [s for s in self.finished_snapshots() if s.id is not None]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.id)

    def snapshot_path(self, snapshot_id: int, staged: bool = False) -> Path:
        name = staged_name(snapshot_id) if staged else finished_name(snapshot_id)
        return self.path / name

    def create_directory(self, path: Path) -> None:
        """Create a single directory; fails if it already exists."""
        path.mkdir()

    def rename(self, source: Path, destination: Path) -> None:
        """
        Rename an entry within the storage root.

        Raises:
            FileExistsError: If the destination already exists
            OSError: If the rename itself fails
        """
        if destination.exists() or destination.is_symlink():
            raise FileExistsError(f"Destination already exists: {destination}")
        os.rename(source, destination)

    def remove_tree(self, path: Path) -> None:
        """Recursively delete a snapshot directory."""
        force_rmtree(path)


def force_rmtree(path: Path) -> None:
    """
    Recursively delete a directory tree, read-only subdirectories included.

    Snapshots keep the directory modes of their sources, so a 0555 directory
    blocks unlinking its entries until the owner write bit is restored.
    """
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_retry_writable)
    else:
        shutil.rmtree(path, onerror=lambda func, p, exc_info: _retry_writable(func, p, exc_info[1]))


def _retry_writable(func, failed_path: str, error: BaseException) -> None:
    if not isinstance(error, PermissionError) or func not in (os.unlink, os.rmdir, os.remove):
        raise error
    parent = os.path.dirname(failed_path)
    os.chmod(parent, os.stat(parent).st_mode | stat.S_IWUSR | stat.S_IXUSR)
    func(failed_path)
