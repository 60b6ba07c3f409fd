"""Backup run orchestration for synkhole.

A run is a strictly sequential pipeline:

1. Consistency check (refuse to run over a leftover staged snapshot)
2. Source resolution (before anything is created on disk)
3. Storage root validation
4. Hardlink clone of the previous snapshot into a staged snapshot
5. One synchronizer invocation per source, in order
6. Commit (rename the staged snapshot to its finished name)
7. Retention (remove outdated snapshots, report unparseable ones)

State moves between stages as an immutable RunContext; every stage returns
a new context. Errors raised before the commit propagate unchanged and may
leave the staged snapshot behind, which the next run's consistency check
reports. Retention problems never fail a run; they are returned in the
RunSummary.

run_backup wraps the pipeline for a process: configuration, logging, the
run lock and the mapping of errors to exit codes.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple
import logging
import time

from synkhole.clone import SnapshotCloner
from synkhole.commit import Committer
from synkhole.config import (
    Configuration,
    ConfigurationError,
    Settings,
    SynchronizerConfig,
    ValidationError,
    parse_config,
)
from synkhole.consistency import ConsistencyChecker
from synkhole.errors import (
    EXIT_CONFIG_ERROR,
    EXIT_LOCK_ERROR,
    EXIT_SUCCESS,
    EXIT_UNEXPECTED_ERROR,
    SynkholeError,
)
from synkhole.events import (
    EventKind,
    EventSink,
    LifecycleEvent,
    LoggingEventSink,
    NullEventSink,
    Stage,
)
from synkhole.lock import LockError, RunLock
from synkhole.logger import (
    LoggingError,
    get_logger,
    log_run_completion,
    log_run_error,
    log_run_start,
    setup_logging,
)
from synkhole.retention import RetentionManager, RetentionResult
from synkhole.storage import Snapshot, StorageRoot
from synkhole.sync import (
    CopySynchronizer,
    RsyncSynchronizer,
    Synchronizer,
    resolve_source,
    synchronize_sources,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunContext:
    """Everything a stage needs to know about the run so far."""
    settings: Settings
    snapshot_id: int
    storage_root: StorageRoot
    sources: Tuple[Path, ...] = ()
    staged: Optional[Snapshot] = None
    previous: Optional[Snapshot] = None
    committed: Optional[Snapshot] = None


@dataclass
class RunSummary:
    """Result value of one successful pipeline run."""
    snapshot_id: int
    snapshot_path: Path
    previous_id: Optional[int]
    outdated_count: int
    removed: List[Path] = field(default_factory=list)
    unparseable: List[Path] = field(default_factory=list)
    problems: List[str] = field(default_factory=list)

    @property
    def unparseable_count(self) -> int:
        return len(self.unparseable)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "snapshot_id": self.snapshot_id,
            "snapshot_path": str(self.snapshot_path),
            "previous_id": self.previous_id,
            "outdated_count": self.outdated_count,
            "removed": [str(p) for p in self.removed],
            "unparseable": [str(p) for p in self.unparseable],
            "problems": list(self.problems),
        }


def check_consistency(ctx: RunContext) -> RunContext:
    ConsistencyChecker(ctx.storage_root).check()
    return ctx


def ensure_storage(ctx: RunContext) -> RunContext:
    ctx.storage_root.ensure()
    return ctx


def resolve_sources(ctx: RunContext) -> RunContext:
    """Resolve every configured source; all of them must exist."""
    resolved = tuple(resolve_source(source) for source in ctx.settings.sources)
    for original, real in zip(ctx.settings.sources, resolved):
        if Path(original) != real:
            logger.debug(f"Source {original} resolves to {real}")
    return replace(ctx, sources=resolved)


def stage_snapshot(ctx: RunContext) -> RunContext:
    result = SnapshotCloner(ctx.storage_root).stage(ctx.snapshot_id)
    return replace(ctx, staged=result.staged, previous=result.previous)


def commit_snapshot(ctx: RunContext) -> RunContext:
    committed = Committer(ctx.storage_root).commit(ctx.staged)
    return replace(ctx, committed=committed)


def apply_retention(
    ctx: RunContext,
    emit: Callable[[LifecycleEvent], None],
    now: int,
) -> Tuple[Optional[RetentionResult], List[str]]:
    """
    Remove outdated snapshots, keeping the one just committed.

    Returns:
        Tuple of (RetentionResult or None if the scan itself failed,
        problems to report)
    """
    manager = RetentionManager(ctx.storage_root, ctx.settings.max_age_days)
    protect = [ctx.committed.path] if ctx.committed else []
    try:
        result = manager.apply(now, protect=protect)
    except OSError as e:
        problem = f"Retention scan of {ctx.storage_root.path} failed: {e}"
        logger.error(problem)
        return None, [problem]

    for path in result.unparseable_snapshots:
        emit(LifecycleEvent(
            kind=EventKind.UNPARSEABLE_SNAPSHOT,
            stage=Stage.RETENTION,
            snapshot_id=ctx.snapshot_id,
            detail={"path": str(path)},
        ))
    for path in result.removed_snapshots:
        emit(LifecycleEvent(
            kind=EventKind.SNAPSHOT_REMOVED,
            stage=Stage.RETENTION,
            snapshot_id=ctx.snapshot_id,
            detail={"path": str(path)},
        ))
    for failure in result.failures:
        emit(LifecycleEvent(
            kind=EventKind.REMOVAL_FAILED,
            stage=Stage.RETENTION,
            snapshot_id=ctx.snapshot_id,
            detail={"path": str(failure.path), "reason": failure.reason},
        ))

    return result, [str(failure) for failure in result.failures]


@contextmanager
def _reported(sink: EventSink, stage: Stage, snapshot_id: int) -> Iterator[None]:
    """Emit started/completed/failed events around a stage."""
    sink.emit(LifecycleEvent(EventKind.STAGE_STARTED, stage, snapshot_id))
    try:
        yield
    except Exception as e:
        sink.emit(LifecycleEvent(
            kind=EventKind.STAGE_FAILED,
            stage=stage,
            snapshot_id=snapshot_id,
            detail={"error_type": type(e).__name__, "message": str(e)},
        ))
        raise
    sink.emit(LifecycleEvent(EventKind.STAGE_COMPLETED, stage, snapshot_id))


def run_pipeline(
    settings: Settings,
    synchronizer: Synchronizer,
    sink: Optional[EventSink] = None,
    now: Optional[int] = None,
) -> RunSummary:
    """
    Run one backup: produce a new finished snapshot, then apply retention.

    Args:
        settings: Sources, storage directory, retention window and host
        synchronizer: Mirror primitive used for every source
        sink: Receives lifecycle events (discarded if None)
        now: Current Unix time in seconds; the new snapshot's id and the
             retention reference time (default: time.time())

    Returns:
        RunSummary for the committed snapshot

    Raises:
        InconsistentStorage: A staged snapshot from an earlier run exists
        StorageUnavailable: The storage root can't be created or written
        SourceUnavailable: A source doesn't exist or isn't a directory
        TimestampCollision: The snapshot id is already in use
        CloneFailure: Hardlinking the previous snapshot failed
        SynchronizationFailure: The synchronizer failed for a source
        CommitFailure: The staged snapshot couldn't be renamed
    """
    if sink is None:
        sink = NullEventSink()
    if now is None:
        now = int(time.time())

    ctx = RunContext(
        settings=settings,
        snapshot_id=now,
        storage_root=StorageRoot(settings.storage_root),
    )

    stages: List[Tuple[Stage, Callable[[RunContext], RunContext]]] = [
        (Stage.CONSISTENCY, check_consistency),
        (Stage.SOURCES, resolve_sources),
        (Stage.STORAGE, ensure_storage),
        (Stage.CLONE, stage_snapshot),
        (Stage.SYNC, lambda c: _synchronize(c, synchronizer, sink)),
        (Stage.COMMIT, commit_snapshot),
    ]
    for stage, step in stages:
        with _reported(sink, stage, ctx.snapshot_id):
            ctx = step(ctx)

    with _reported(sink, Stage.RETENTION, ctx.snapshot_id):
        retention, problems = apply_retention(ctx, sink.emit, now)

    return RunSummary(
        snapshot_id=ctx.snapshot_id,
        snapshot_path=ctx.committed.path,
        previous_id=ctx.previous.id if ctx.previous else None,
        outdated_count=retention.outdated_count if retention else 0,
        removed=list(retention.removed_snapshots) if retention else [],
        unparseable=list(retention.unparseable_snapshots) if retention else [],
        problems=problems,
    )


def _synchronize(ctx: RunContext, synchronizer: Synchronizer, sink: EventSink) -> RunContext:
    synchronize_sources(
        synchronizer,
        ctx.sources,
        ctx.staged.path,
        sink.emit,
        snapshot_id=ctx.snapshot_id,
    )
    return ctx


def make_synchronizer(config: SynchronizerConfig) -> Synchronizer:
    """Build the synchronizer primitive named in the configuration."""
    if config.type == "copy":
        return CopySynchronizer()
    if config.type == "rsync":
        return RsyncSynchronizer(
            rsync_path=config.rsync_path,
            timeout_seconds=config.timeout_seconds,
            extra_args=config.extra_args,
        )
    raise ValidationError(f"Unknown synchronizer type '{config.type}'")


@dataclass
class BackupResult:
    """Result of a backup process run."""
    success: bool
    exit_code: int
    summary: Optional[RunSummary] = None
    error_message: Optional[str] = None
    duration_seconds: float = 0.0


def run_backup(
    config_path: Optional[Path] = None,
    config: Optional[Configuration] = None,
    synchronizer: Optional[Synchronizer] = None,
    now: Optional[int] = None,
    sink: Optional[EventSink] = None,
    console: bool = True,
) -> BackupResult:
    """
    Run a complete backup for this process.

    1. Load configuration (if not provided)
    2. Set up logging
    3. Acquire the run lock
    4. Run the pipeline
    5. Release the lock

    Every failure is turned into a BackupResult with the matching exit code;
    the lock is always released.

    Args:
        config_path: Path to configuration file. If None, uses default path.
        config: Pre-loaded Configuration object. If provided, config_path is ignored.
        synchronizer: Mirror primitive (default: built from config.synchronizer)
        now: Snapshot timestamp override
        sink: Event sink (default: structured log lines)
        console: Whether logging also goes to stderr

    Returns:
        BackupResult with success status, exit code and the run summary
    """
    start_time = time.time()

    if config is None:
        try:
            config = parse_config(config_path)
        except (ConfigurationError, ValidationError) as e:
            return BackupResult(
                success=False,
                exit_code=EXIT_CONFIG_ERROR,
                error_message=str(e),
            )

    try:
        run_logger = setup_logging(config.logging, console=console)
    except (LoggingError, OSError) as e:
        run_logger = get_logger()
        run_logger.warning(f"Failed to set up logging: {e}")

    try:
        if synchronizer is None:
            synchronizer = make_synchronizer(config.synchronizer)
    except ValidationError as e:
        log_run_error(run_logger, e, "synchronizer setup")
        return BackupResult(
            success=False,
            exit_code=EXIT_CONFIG_ERROR,
            error_message=str(e),
        )

    if sink is None:
        sink = LoggingEventSink(run_logger)

    log_run_start(run_logger, config.settings.sources, config.settings.storage_root)

    run_lock = RunLock.from_config(config.lock, config.settings.storage_root)
    try:
        run_lock.acquire()
    except LockError as e:
        log_run_error(run_logger, e, "lock acquisition")
        return BackupResult(
            success=False,
            exit_code=EXIT_LOCK_ERROR,
            error_message=str(e),
            duration_seconds=time.time() - start_time,
        )

    try:
        summary = run_pipeline(config.settings, synchronizer, sink=sink, now=now)
    except SynkholeError as e:
        log_run_error(run_logger, e)
        return BackupResult(
            success=False,
            exit_code=e.exit_code,
            error_message=str(e),
            duration_seconds=time.time() - start_time,
        )
    except Exception as e:
        log_run_error(run_logger, e, "unexpected error")
        run_logger.debug("Traceback of unexpected error", exc_info=True)
        return BackupResult(
            success=False,
            exit_code=EXIT_UNEXPECTED_ERROR,
            error_message=f"Unexpected error: {e}",
            duration_seconds=time.time() - start_time,
        )
    finally:
        run_lock.release()

    duration = time.time() - start_time
    log_run_completion(
        run_logger,
        duration_seconds=duration,
        snapshot_path=summary.snapshot_path,
        removed_count=len(summary.removed),
        unparseable_count=summary.unparseable_count,
    )
    for problem in summary.problems:
        run_logger.warning(problem)

    return BackupResult(
        success=True,
        exit_code=EXIT_SUCCESS,
        summary=summary,
        duration_seconds=duration,
    )
