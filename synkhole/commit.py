"""Committing a staged snapshot.

The rename performed here is the only point at which a snapshot becomes
finished. Any directory under a finished name has therefore been fully and
successfully synchronized.
"""

import logging

from synkhole.errors import CommitFailure
from synkhole.storage import Snapshot, SnapshotState, StorageRoot, finished_name


logger = logging.getLogger(__name__)


class Committer:
    """Promotes a staged snapshot to its finished name with a single rename."""

    def __init__(self, storage: StorageRoot):
        self.storage = storage

    def commit(self, staged: Snapshot) -> Snapshot:
        """
        Rename <id>.synkhole to <id>.

        Not retried on failure; the staged directory stays where it is and
        the next run's consistency check reports it.

        Args:
            staged: The staged snapshot created by this run

        Returns:
            The finished snapshot

        Raises:
            CommitFailure: If the snapshot isn't staged, the finished name is
                           taken, or the rename fails
        """
        if staged.state is not SnapshotState.STAGED or staged.id is None:
            raise CommitFailure(f"Not a staged snapshot: {staged.path}")

        final_path = self.storage.path / finished_name(staged.id)
        try:
            self.storage.rename(staged.path, final_path)
        except OSError as e:
            raise CommitFailure(
                f"Failed to rename {staged.path} to {final_path}: {e}"
            )

        logger.debug(f"Committed {staged.name} as {final_path.name}")
        return Snapshot(
            name=final_path.name,
            path=final_path,
            state=SnapshotState.FINISHED,
            id=staged.id,
        )
