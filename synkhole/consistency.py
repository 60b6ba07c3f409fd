"""Storage root consistency check.

A staged snapshot surviving into a new run means an earlier run died before
committing. Its content is incomplete, so it is neither a valid clone source
nor safe to delete automatically; an operator has to review it.
"""

import logging

from synkhole.errors import InconsistentStorage
from synkhole.storage import StorageRoot, is_staged_name


logger = logging.getLogger(__name__)


class ConsistencyChecker:
    """Refuses to proceed while a staged snapshot exists in the storage root."""

    def __init__(self, storage: StorageRoot):
        self.storage = storage

    def check(self) -> None:
        """
        Scan the storage root for leftover staged snapshots.

        A missing storage root is consistent. Never modifies anything.

        Raises:
            InconsistentStorage: If any direct child carries the staged suffix
        """
        staged = [
            self.storage.path / name
            for name in self.storage.list_names()
            if not name.startswith(".") and is_staged_name(name)
        ]
        if not staged:
            logger.debug(f"Storage root {self.storage.path} is consistent")
            return

        listing = ", ".join(str(p) for p in staged)
        raise InconsistentStorage(
            f"Storage root contains interrupted or in-progress backup(s): {listing}. "
            f"Refusing to continue until they are manually reviewed.",
            staged=staged,
        )
