"""Retention manager for synkhole.

This module provides the RetentionManager class that removes finished
snapshots older than the retention window.

Every finished snapshot is classified as:
- current: its timestamp is within the window, kept
- outdated: (now - id) > max_age_days * 86400, removed
- unparseable: its name is not a timestamp, kept and reported

The whole set is classified before anything is removed.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional
import logging

from synkhole.errors import RemovalFailure
from synkhole.storage import Snapshot, StorageRoot


logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class RetentionDecision(Enum):
    CURRENT = "current"
    OUTDATED = "outdated"
    UNPARSEABLE = "unparseable"


@dataclass
class RetentionPlan:
    """Classification of every finished snapshot."""
    current: List[Snapshot] = field(default_factory=list)
    outdated: List[Snapshot] = field(default_factory=list)
    unparseable: List[Snapshot] = field(default_factory=list)


@dataclass
class RetentionResult:
    """Result of applying the retention window."""
    kept_snapshots: List[Path]
    removed_snapshots: List[Path]
    unparseable_snapshots: List[Path]
    failures: List[RemovalFailure]

    @property
    def outdated_count(self) -> int:
        return len(self.removed_snapshots) + len(self.failures)


def classify(snapshot: Snapshot, now: int, max_age_days: int) -> RetentionDecision:
    """
    Classify one finished snapshot.

    Args:
        snapshot: Finished snapshot
        now: Current time in seconds since the epoch
        max_age_days: Retention window in days

    Returns:
        The retention decision for the snapshot
    """
    if snapshot.id is None:
        return RetentionDecision.UNPARSEABLE
    if (now - snapshot.id) > max_age_days * SECONDS_PER_DAY:
        return RetentionDecision.OUTDATED
    return RetentionDecision.CURRENT


class RetentionManager:
    """Removes finished snapshots older than max_age_days."""

    def __init__(self, storage: StorageRoot, max_age_days: int):
        """
        Initialize the retention manager.

        Args:
            storage: Storage root holding the snapshots
            max_age_days: Snapshots older than this many days are removed
        """
        if max_age_days < 0:
            raise ValueError(f"max_age_days must not be negative, got {max_age_days}")
        self.storage = storage
        self.max_age_days = max_age_days

    def classify_all(self, now: int, protect: Iterable[Path] = ()) -> RetentionPlan:
        """
        Classify every finished snapshot in the storage root.

        Args:
            now: Current time in seconds since the epoch
            protect: Snapshot paths that are always current (e.g. the one
                     just committed)

        Returns:
            RetentionPlan with each snapshot in exactly one list
        """
        protected = set(protect)
        plan = RetentionPlan()

        for snapshot in self.storage.finished_snapshots():
            decision = classify(snapshot, now, self.max_age_days)
            if decision is RetentionDecision.OUTDATED and snapshot.path in protected:
                decision = RetentionDecision.CURRENT

            if decision is RetentionDecision.OUTDATED:
                plan.outdated.append(snapshot)
            elif decision is RetentionDecision.UNPARSEABLE:
                plan.unparseable.append(snapshot)
            else:
                plan.current.append(snapshot)

        return plan

    def apply(
        self,
        now: int,
        protect: Iterable[Path] = (),
        plan: Optional[RetentionPlan] = None,
    ) -> RetentionResult:
        """
        Remove outdated snapshots.

        A removal failure is logged and recorded; remaining removals still
        run.

        Args:
            now: Current time in seconds since the epoch
            protect: Snapshot paths that must never be removed
            plan: A previously computed plan (computed here if omitted)

        Returns:
            RetentionResult with kept, removed and unparseable snapshots
            and any removal failures
        """
        if plan is None:
            plan = self.classify_all(now, protect)

        for snapshot in plan.unparseable:
            logger.warning(
                f"Storage root entry {snapshot.name} is not a timestamp, keeping it"
            )

        removed: List[Path] = []
        failures: List[RemovalFailure] = []
        for snapshot in plan.outdated:
            try:
                self.storage.remove_tree(snapshot.path)
            except OSError as e:
                failure = RemovalFailure(path=snapshot.path, reason=str(e))
                logger.error(str(failure))
                failures.append(failure)
                continue
            logger.info(f"Removed outdated snapshot {snapshot.name}")
            removed.append(snapshot.path)

        kept = [s.path for s in plan.current + plan.unparseable]
        kept.extend(f.path for f in failures)

        return RetentionResult(
            kept_snapshots=sorted(kept, key=lambda p: p.name, reverse=True),
            removed_snapshots=sorted(removed, key=lambda p: p.name, reverse=True),
            unparseable_snapshots=sorted(s.path for s in plan.unparseable),
            failures=failures,
        )
