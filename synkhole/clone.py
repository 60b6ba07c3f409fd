"""Snapshot cloning for synkhole.

Stages a new snapshot by recreating the directory structure of the most
recent finished snapshot and hardlinking every file into it. No file content
is copied; the staged snapshot initially shares every inode with its
predecessor, so only what the synchronizer later changes consumes space.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple
import logging
import os
import shutil

from synkhole.errors import CloneFailure, TimestampCollision
from synkhole.storage import (
    Snapshot,
    SnapshotState,
    StorageRoot,
    staged_name,
)


logger = logging.getLogger(__name__)


@dataclass
class CloneResult:
    """Result of staging a new snapshot."""
    staged: Snapshot
    previous: Optional[Snapshot]
    files_linked: int = 0
    directories_created: int = 0
    symlinks_copied: int = 0


class SnapshotCloner:
    """
    Creates staged snapshots as hardlink clones of the previous snapshot.

    The previous snapshot is the finished snapshot with the greatest
    timestamp id. Entries whose name is not a timestamp are never used
    as clone sources.
    """

    def __init__(self, storage: StorageRoot):
        self.storage = storage

    def _check_collision(self, snapshot_id: int) -> None:
        """
        Make sure snapshot_id is free and newer than every finished snapshot.

        Raises:
            TimestampCollision: If the id is taken or not monotonic
        """
        newest: Optional[int] = None
        for entry in self.storage.entries():
            if entry.id is None:
                continue
            if entry.id == snapshot_id:
                raise TimestampCollision(
                    f"Snapshot id {snapshot_id} already exists as {entry.path}",
                    snapshot_id=snapshot_id,
                )
            if entry.state is SnapshotState.FINISHED and (newest is None or entry.id > newest):
                newest = entry.id

        if newest is not None and snapshot_id < newest:
            raise TimestampCollision(
                f"Snapshot id {snapshot_id} is older than the newest snapshot {newest} "
                f"(system clock moved backwards?)",
                snapshot_id=snapshot_id,
            )

    def stage(self, snapshot_id: int) -> CloneResult:
        """
        Create the staged snapshot for snapshot_id.

        If a previous finished snapshot exists its tree is cloned through
        hardlinks; otherwise the staged snapshot starts empty.

        Args:
            snapshot_id: Timestamp id of the new snapshot

        Returns:
            CloneResult describing the staged snapshot and what was linked

        Raises:
            TimestampCollision: If snapshot_id is already in use
            CloneFailure: If the staged directory or the clone cannot be created.
                          A partially cloned staged directory is left in place.
        """
        self._check_collision(snapshot_id)

        previous = self.storage.latest_finished()
        staged_path = self.storage.snapshot_path(snapshot_id, staged=True)
        staged = Snapshot(
            name=staged_name(snapshot_id),
            path=staged_path,
            state=SnapshotState.STAGED,
            id=snapshot_id,
        )

        try:
            self.storage.create_directory(staged_path)
        except FileExistsError:
            raise TimestampCollision(
                f"Staged snapshot {staged_path} already exists",
                snapshot_id=snapshot_id,
            )
        except OSError as e:
            raise CloneFailure(f"Cannot create staged snapshot {staged_path}: {e}")

        result = CloneResult(staged=staged, previous=previous)

        if previous is None:
            logger.info("Previous backup not found, assuming first run")
            return result

        logger.info(f"Hardlinking {previous.name} into {staged.name}")
        try:
            files, dirs, links = self._clone_tree(previous.path, staged_path)
        except OSError as e:
            raise CloneFailure(
                f"Failed to hardlink {previous.path} into {staged_path}: {e}"
            )

        result.files_linked = files
        result.directories_created = dirs
        result.symlinks_copied = links
        logger.debug(
            f"Cloned {files} file(s), {dirs} dir(s), {links} symlink(s) "
            f"from {previous.name}"
        )
        return result

    def _clone_tree(self, source: Path, target: Path) -> Tuple[int, int, int]:
        """
        Recreate source under target, hardlinking non-directory entries.

        Symbolic links are recreated rather than linked or followed.
        Directory metadata is applied bottom-up once every child exists,
        so creating entries does not clobber the copied mtimes.

        Returns:
            Tuple of (files_linked, directories_created, symlinks_copied)
        """
        files_linked = 0
        directories_created = 0
        symlinks_copied = 0
        directories: List[Tuple[Path, Path]] = []

        for root, dirs, files in os.walk(source, followlinks=False, onerror=_raise):
            root_path = Path(root)
            target_dir = target / root_path.relative_to(source)

            if root_path != source:
                target_dir.mkdir()
                directories_created += 1
            directories.append((root_path, target_dir))

            # Symlinks to directories show up in dirs; they are copied, not descended
            for name in list(dirs):
                entry = root_path / name
                if entry.is_symlink():
                    dirs.remove(name)
                    _copy_symlink(entry, target_dir / name)
                    symlinks_copied += 1

            for name in files:
                entry = root_path / name
                if entry.is_symlink():
                    _copy_symlink(entry, target_dir / name)
                    symlinks_copied += 1
                else:
                    os.link(entry, target_dir / name, follow_symlinks=False)
                    files_linked += 1

        for source_dir, target_dir in reversed(directories):
            shutil.copystat(source_dir, target_dir, follow_symlinks=False)

        return files_linked, directories_created, symlinks_copied


def _copy_symlink(source: Path, target: Path) -> None:
    os.symlink(os.readlink(source), target)
    try:
        shutil.copystat(source, target, follow_symlinks=False)
    except (NotImplementedError, OSError):
        # Not every platform can set metadata on a symlink itself
        pass


def _raise(error: OSError) -> None:
    raise error
