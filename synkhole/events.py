"""Lifecycle events emitted by the backup pipeline.

The pipeline never logs run progress directly; it emits LifecycleEvent
objects to an EventSink and a collaborator decides how to render them.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol
import logging

from synkhole.logger import ErrorCode, error_code_for_name, get_logger, log_structured


class Stage(Enum):
    """Pipeline stages, in execution order."""
    CONSISTENCY = "consistency"
    SOURCES = "sources"
    STORAGE = "storage"
    CLONE = "clone"
    SYNC = "sync"
    COMMIT = "commit"
    RETENTION = "retention"


class EventKind(Enum):
    STAGE_STARTED = "stage_started"
    STAGE_COMPLETED = "stage_completed"
    STAGE_FAILED = "stage_failed"
    SOURCE_SYNCHRONIZED = "source_synchronized"
    SNAPSHOT_REMOVED = "snapshot_removed"
    REMOVAL_FAILED = "removal_failed"
    UNPARSEABLE_SNAPSHOT = "unparseable_snapshot"


@dataclass(frozen=True)
class LifecycleEvent:
    """A single structured event from a backup run."""
    kind: EventKind
    stage: Stage
    snapshot_id: Optional[int] = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "event": self.kind.value,
            "stage": self.stage.value,
        }
        if self.snapshot_id is not None:
            data["snapshot_id"] = self.snapshot_id
        if self.detail:
            data["detail"] = self.detail
        return data


class EventSink(Protocol):
    """Anything that accepts lifecycle events."""

    def emit(self, event: LifecycleEvent) -> None:
        ...


class NullEventSink:
    """Discards every event."""

    def emit(self, event: LifecycleEvent) -> None:
        pass


class CollectingEventSink:
    """Keeps events in memory, in emission order."""

    def __init__(self) -> None:
        self.events: List[LifecycleEvent] = []

    def emit(self, event: LifecycleEvent) -> None:
        self.events.append(event)

    def kinds(self) -> List[EventKind]:
        return [e.kind for e in self.events]

    def for_stage(self, stage: Stage) -> List[LifecycleEvent]:
        return [e for e in self.events if e.stage is stage]


# Log level used when rendering each kind of event
_EVENT_LEVELS: Dict[EventKind, str] = {
    EventKind.STAGE_STARTED: "INFO",
    EventKind.STAGE_COMPLETED: "INFO",
    EventKind.STAGE_FAILED: "ERROR",
    EventKind.SOURCE_SYNCHRONIZED: "INFO",
    EventKind.SNAPSHOT_REMOVED: "INFO",
    EventKind.REMOVAL_FAILED: "WARNING",
    EventKind.UNPARSEABLE_SNAPSHOT: "WARNING",
}


class LoggingEventSink:
    """
    Renders lifecycle events as structured JSON log lines.

    Failure events carry an error code and troubleshooting guidance
    looked up from the exception type recorded in the event detail.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or get_logger()

    def emit(self, event: LifecycleEvent) -> None:
        level = _EVENT_LEVELS.get(event.kind, "INFO")
        error_code: Optional[ErrorCode] = None
        if event.kind is EventKind.STAGE_FAILED:
            error_code = error_code_for_name(event.detail.get("error_type", ""))
        elif event.kind is EventKind.REMOVAL_FAILED:
            error_code = ErrorCode.RETENTION_REMOVAL_FAILED
        elif event.kind is EventKind.UNPARSEABLE_SNAPSHOT:
            error_code = ErrorCode.RETENTION_UNPARSEABLE

        message = f"{event.stage.value}: {event.kind.value.replace('_', ' ')}"
        log_structured(
            self.logger,
            level=level,
            message=message,
            error_code=error_code,
            context=event.to_dict(),
        )
