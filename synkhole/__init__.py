"""synkhole - Incremental hardlink snapshots of directory trees."""

__version__ = "0.1.0"

from synkhole.config import (
    Configuration,
    ConfigurationError,
    Settings,
    ValidationError,
    parse_config,
    format_config,
    create_default_config,
)
from synkhole.errors import (
    SynkholeError,
    InconsistentStorage,
    SourceUnavailable,
    StorageUnavailable,
    TimestampCollision,
    CloneFailure,
    SynchronizationFailure,
    CommitFailure,
    RemovalFailure,
)
from synkhole.storage import (
    STAGED_SUFFIX,
    Snapshot,
    SnapshotState,
    StorageRoot,
    resolve_storage_root,
)
from synkhole.consistency import ConsistencyChecker
from synkhole.clone import CloneResult, SnapshotCloner
from synkhole.sync import (
    CopySynchronizer,
    RsyncSynchronizer,
    SyncResult,
    Synchronizer,
)
from synkhole.commit import Committer
from synkhole.retention import (
    RetentionDecision,
    RetentionManager,
    RetentionPlan,
    RetentionResult,
)
from synkhole.events import (
    CollectingEventSink,
    EventKind,
    EventSink,
    LifecycleEvent,
    LoggingEventSink,
    NullEventSink,
    Stage,
)
from synkhole.lock import LockError, RunLock, default_lock_path
from synkhole.logger import (
    LoggingError,
    setup_logging,
    get_logger,
)
from synkhole.pipeline import (
    BackupResult,
    RunContext,
    RunSummary,
    run_backup,
    run_pipeline,
)

__all__ = [
    "__version__",
    # Config
    "Configuration",
    "ConfigurationError",
    "Settings",
    "ValidationError",
    "parse_config",
    "format_config",
    "create_default_config",
    # Errors
    "SynkholeError",
    "InconsistentStorage",
    "SourceUnavailable",
    "StorageUnavailable",
    "TimestampCollision",
    "CloneFailure",
    "SynchronizationFailure",
    "CommitFailure",
    "RemovalFailure",
    # Storage
    "STAGED_SUFFIX",
    "Snapshot",
    "SnapshotState",
    "StorageRoot",
    "resolve_storage_root",
    # Lifecycle stages
    "ConsistencyChecker",
    "CloneResult",
    "SnapshotCloner",
    "CopySynchronizer",
    "RsyncSynchronizer",
    "SyncResult",
    "Synchronizer",
    "Committer",
    "RetentionDecision",
    "RetentionManager",
    "RetentionPlan",
    "RetentionResult",
    # Events
    "CollectingEventSink",
    "EventKind",
    "EventSink",
    "LifecycleEvent",
    "LoggingEventSink",
    "NullEventSink",
    "Stage",
    # Lock
    "LockError",
    "RunLock",
    "default_lock_path",
    # Logging
    "LoggingError",
    "setup_logging",
    "get_logger",
    # Pipeline
    "BackupResult",
    "RunContext",
    "RunSummary",
    "run_backup",
    "run_pipeline",
]
