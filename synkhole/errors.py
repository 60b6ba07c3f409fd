"""Error taxonomy for synkhole.

Every fatal condition of a backup run is a SynkholeError subclass carrying
the process exit code the command line wrapper should return. Retention
problems are not raised; they are collected as RemovalFailure records.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional


# Exit codes
EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_INCONSISTENT_STORAGE = 2
EXIT_SOURCE_UNAVAILABLE = 3
EXIT_STORAGE_UNAVAILABLE = 4
EXIT_TIMESTAMP_COLLISION = 5
EXIT_CLONE_ERROR = 6
EXIT_SYNC_ERROR = 7
EXIT_COMMIT_ERROR = 8
EXIT_LOCK_ERROR = 9
EXIT_UNEXPECTED_ERROR = 10


class SynkholeError(Exception):
    """Base exception for fatal backup run errors."""

    exit_code: int = EXIT_UNEXPECTED_ERROR

    def __init__(self, message: str):
        super().__init__(message)


class InconsistentStorage(SynkholeError):
    """Raised when a staged snapshot from an earlier run is found."""

    exit_code = EXIT_INCONSISTENT_STORAGE

    def __init__(self, message: str, staged: Optional[List[Path]] = None):
        super().__init__(message)
        self.staged = staged or []


class SourceUnavailable(SynkholeError):
    """Raised when a configured source does not exist or cannot be resolved."""

    exit_code = EXIT_SOURCE_UNAVAILABLE

    def __init__(self, message: str, source: Optional[Path] = None):
        super().__init__(message)
        self.source = source


class StorageUnavailable(SynkholeError):
    """Raised when the storage root is missing and cannot be created."""

    exit_code = EXIT_STORAGE_UNAVAILABLE


class TimestampCollision(SynkholeError):
    """Raised when the new snapshot id is already taken."""

    exit_code = EXIT_TIMESTAMP_COLLISION

    def __init__(self, message: str, snapshot_id: Optional[int] = None):
        super().__init__(message)
        self.snapshot_id = snapshot_id


class CloneFailure(SynkholeError):
    """Raised when hardlinking the previous snapshot into the staged one fails."""

    exit_code = EXIT_CLONE_ERROR


class SynchronizationFailure(SynkholeError):
    """Raised when the synchronizer fails for a source."""

    exit_code = EXIT_SYNC_ERROR

    def __init__(self, message: str, source: Optional[Path] = None):
        super().__init__(message)
        self.source = source


class CommitFailure(SynkholeError):
    """Raised when the staged snapshot cannot be renamed to its finished name."""

    exit_code = EXIT_COMMIT_ERROR


@dataclass
class RemovalFailure:
    """An outdated snapshot that could not be removed."""
    path: Path
    reason: str

    def __str__(self) -> str:
        return f"Failed to remove {self.path}: {self.reason}"
