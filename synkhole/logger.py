"""Logging configuration for synkhole.

This module provides logging setup and utility functions for backup runs.
Supports DEBUG, INFO, WARNING and ERROR levels with separate log and error
files, automatic log rotation with gzip compression, and structured JSON
log entries carrying error codes and troubleshooting guidance.
"""

import gzip
import json
import logging
import os
import shutil
from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional

from synkhole.config import LoggingConfig


# Logger name for the synkhole package
LOGGER_NAME = "synkhole"

# Default rotation settings
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_BACKUP_COUNT = 5

# Valid log levels
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


class ErrorCode(Enum):
    """Error codes for structured logging and troubleshooting."""
    # Storage errors (1xxx)
    STORAGE_INCONSISTENT = "E1001"
    STORAGE_UNAVAILABLE = "E1002"

    # Source errors (2xxx)
    SOURCE_UNAVAILABLE = "E2001"

    # Snapshot errors (3xxx)
    SNAPSHOT_COLLISION = "E3001"
    SNAPSHOT_CLONE_FAILED = "E3002"
    SNAPSHOT_SYNC_FAILED = "E3003"
    SNAPSHOT_COMMIT_FAILED = "E3004"

    # Retention errors (4xxx)
    RETENTION_REMOVAL_FAILED = "E4001"
    RETENTION_UNPARSEABLE = "E4002"

    # Configuration errors (5xxx)
    CONFIG_INVALID = "E5001"

    # Lock errors (6xxx)
    LOCK_HELD = "E6001"

    # General errors (0xxx)
    UNKNOWN_ERROR = "E0001"


ERROR_GUIDANCE: Dict[ErrorCode, str] = {
    ErrorCode.STORAGE_INCONSISTENT: "The storage root contains an interrupted or in-progress backup. Review it, then move or delete it before the next run.",
    ErrorCode.STORAGE_UNAVAILABLE: "The storage root could not be created or written. Check that the backup volume is mounted and writable.",
    ErrorCode.SOURCE_UNAVAILABLE: "A backup source doesn't exist. Review the sources in the configuration file.",
    ErrorCode.SNAPSHOT_COLLISION: "A snapshot with this timestamp already exists. Wait a second and run again, or check the system clock.",
    ErrorCode.SNAPSHOT_CLONE_FAILED: "Hardlinking the previous snapshot failed. Check that the storage filesystem supports hardlinks and has free inodes.",
    ErrorCode.SNAPSHOT_SYNC_FAILED: "File synchronization failed. Check source and storage accessibility; the staged snapshot was left for review.",
    ErrorCode.SNAPSHOT_COMMIT_FAILED: "The staged snapshot could not be renamed. It was left in place for review.",
    ErrorCode.RETENTION_REMOVAL_FAILED: "An outdated snapshot could not be removed. Check permissions on the storage root.",
    ErrorCode.RETENTION_UNPARSEABLE: "An entry in the storage root is not a timestamp. It is kept; move it elsewhere if it isn't a backup.",
    ErrorCode.CONFIG_INVALID: "The configuration file is invalid. Check it against `synkhole init` output.",
    ErrorCode.LOCK_HELD: "Another backup run is already active. Wait for it to finish.",
    ErrorCode.UNKNOWN_ERROR: "An unexpected error occurred. Check the logs for more details.",
}

# Exception class names mapped to error codes
_ERROR_CODES_BY_NAME: Dict[str, ErrorCode] = {
    "InconsistentStorage": ErrorCode.STORAGE_INCONSISTENT,
    "StorageUnavailable": ErrorCode.STORAGE_UNAVAILABLE,
    "SourceUnavailable": ErrorCode.SOURCE_UNAVAILABLE,
    "TimestampCollision": ErrorCode.SNAPSHOT_COLLISION,
    "CloneFailure": ErrorCode.SNAPSHOT_CLONE_FAILED,
    "SynchronizationFailure": ErrorCode.SNAPSHOT_SYNC_FAILED,
    "CommitFailure": ErrorCode.SNAPSHOT_COMMIT_FAILED,
    "ConfigurationError": ErrorCode.CONFIG_INVALID,
    "ValidationError": ErrorCode.CONFIG_INVALID,
    "LockError": ErrorCode.LOCK_HELD,
}


@dataclass
class StructuredLogEntry:
    """
    A structured log entry.

    Fields:
    - timestamp: ISO 8601 formatted timestamp
    - level: Severity level
    - message: Human-readable message
    - error_code: Error code from ErrorCode enum (for errors/warnings)
    - context: Additional context information
    - guidance: Troubleshooting guidance (for errors/warnings)
    """
    timestamp: str
    level: str
    message: str
    error_code: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    guidance: Optional[str] = None

    def to_json(self) -> str:
        """Serialize to JSON string for logging."""
        data = {k: v for k, v in asdict(self).items() if v is not None}
        return json.dumps(data, default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "StructuredLogEntry":
        """Parse from JSON string."""
        data = json.loads(json_str)
        return cls(**data)

    @classmethod
    def create(
        cls,
        level: str,
        message: str,
        error_code: Optional[ErrorCode] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> "StructuredLogEntry":
        """
        Create a structured log entry with automatic timestamp and guidance.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
            message: Human-readable message
            error_code: Optional error code for errors/warnings
            context: Optional additional context

        Returns:
            StructuredLogEntry with all fields populated
        """
        return cls(
            timestamp=datetime.now().isoformat(),
            level=level,
            message=message,
            error_code=error_code.value if error_code else None,
            context=context,
            guidance=ERROR_GUIDANCE.get(error_code) if error_code else None,
        )


def get_error_guidance(error_code: ErrorCode) -> str:
    """Get troubleshooting guidance for an error code."""
    return ERROR_GUIDANCE.get(error_code, ERROR_GUIDANCE[ErrorCode.UNKNOWN_ERROR])


def error_code_for_name(exception_name: str) -> ErrorCode:
    """Map an exception class name to an error code."""
    return _ERROR_CODES_BY_NAME.get(exception_name, ErrorCode.UNKNOWN_ERROR)


def map_exception_to_error_code(exception: Exception) -> ErrorCode:
    """
    Map an exception to an appropriate error code.

    Walks the exception's class hierarchy so subclasses of the known
    error types map to their parent's code.
    """
    for cls in type(exception).__mro__:
        if cls.__name__ in _ERROR_CODES_BY_NAME:
            return _ERROR_CODES_BY_NAME[cls.__name__]
    return ErrorCode.UNKNOWN_ERROR


class LoggingError(Exception):
    """Raised when logging setup fails."""
    pass


class GzipRotatingFileHandler(RotatingFileHandler):
    """
    Rotating file handler that compresses rotated files with gzip.

    Rotated files are named with a .gz extension.
    """

    def rotation_filename(self, default_name: str) -> str:
        return default_name + ".gz"

    def rotate(self, source: str, dest: str) -> None:
        """
        Rotate and compress the log file.

        Falls back to a plain rename if compression fails.
        """
        if not os.path.exists(source):
            return

        try:
            with open(source, 'rb') as f_in:
                with gzip.open(dest, 'wb') as f_out:
                    shutil.copyfileobj(f_in, f_out)
            os.remove(source)
        except OSError:
            if os.path.exists(source):
                fallback_dest = dest[:-3] if dest.endswith('.gz') else dest
                try:
                    os.rename(source, fallback_dest)
                except OSError:
                    pass  # Best effort - don't fail logging


def _ensure_log_directory(log_path: Path) -> None:
    """Ensure the parent directory for a log file exists."""
    log_dir = log_path.parent
    if not log_dir.exists():
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise LoggingError(f"Failed to create log directory {log_dir}: {e}")


def _get_log_level(level_str: str) -> int:
    """Convert log level string to logging constant."""
    level_str = level_str.upper()
    if level_str not in VALID_LOG_LEVELS:
        raise LoggingError(
            f"Invalid log level '{level_str}'. Must be one of: {', '.join(sorted(VALID_LOG_LEVELS))}"
        )
    return getattr(logging, level_str)


def setup_logging(
    config: Optional[LoggingConfig] = None,
    log_file: Optional[Path] = None,
    error_log_file: Optional[Path] = None,
    level: Optional[str] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None,
    console: bool = True,
) -> logging.Logger:
    """
    Configure logging for synkhole.

    Sets up logging with:
    - A rotating file handler for general logs (log_file)
    - A rotating file handler for error logs only (error_log_file)
    - Console output for immediate feedback (unless console=False)
    - Automatic gzip compression of rotated files

    Args:
        config: LoggingConfig object with settings. If provided, path and level args are ignored.
        log_file: Path to main log file (used if config is None)
        error_log_file: Path to error log file (used if config is None)
        level: Log level string (used if config is None)
        max_bytes: Maximum log file size before rotation (default 10MB)
        backup_count: Number of rotated files to keep (default 5)
        console: Whether to also log to stderr

    Returns:
        Configured logger instance

    Raises:
        LoggingError: If log directory cannot be created or level is invalid
    """
    if config is not None:
        log_file = config.log_file
        error_log_file = config.error_log_file
        level = config.level
        if max_bytes is None:
            max_bytes = config.log_max_bytes
        if backup_count is None:
            backup_count = config.log_backup_count
    else:
        if log_file is None:
            log_file = Path.home() / ".local/log/synkhole.log"
        if error_log_file is None:
            error_log_file = Path.home() / ".local/log/synkhole.err"
        if level is None:
            level = "INFO"
        if max_bytes is None:
            max_bytes = DEFAULT_MAX_BYTES
        if backup_count is None:
            backup_count = DEFAULT_BACKUP_COUNT

    log_file = Path(os.path.expanduser(str(log_file)))
    error_log_file = Path(os.path.expanduser(str(error_log_file)))

    _ensure_log_directory(log_file)
    _ensure_log_directory(error_log_file)

    log_level = _get_log_level(level)

    logger = logging.getLogger(LOGGER_NAME)

    # Clear any existing handlers to avoid duplicates
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()

    logger.setLevel(logging.DEBUG)  # Allow all levels, handlers will filter

    detailed_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    file_handler = GzipRotatingFileHandler(
        log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(detailed_formatter)
    logger.addHandler(file_handler)

    error_handler = GzipRotatingFileHandler(
        error_log_file,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(detailed_formatter)
    logger.addHandler(error_handler)

    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(log_level)
        console_handler.setFormatter(detailed_formatter)
        logger.addHandler(console_handler)

    return logger


def get_logger() -> logging.Logger:
    """Get the synkhole logger instance."""
    return logging.getLogger(LOGGER_NAME)


def log_run_start(
    logger: logging.Logger,
    sources: List[Path],
    storage_root: Path,
) -> None:
    """Log the start of a backup run."""
    sources_str = ", ".join(str(s) for s in sources)
    logger.info(f"Backup run started at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    logger.info(f"Sources: {sources_str}")
    logger.info(f"Storage root: {storage_root}")


def log_run_completion(
    logger: logging.Logger,
    duration_seconds: float,
    snapshot_path: Optional[Path],
    removed_count: int,
    unparseable_count: int,
) -> None:
    """Log the completion of a backup run."""
    logger.info("Backup completed successfully")
    logger.info(f"Duration: {duration_seconds:.2f} seconds")
    if snapshot_path:
        logger.info(f"Backup location: {snapshot_path}")
    logger.info(f"Outdated snapshots removed: {removed_count}")
    if unparseable_count:
        logger.warning(f"Unparseable entries in storage root: {unparseable_count}")


def log_run_error(
    logger: logging.Logger,
    error: Exception,
    context: Optional[str] = None,
) -> StructuredLogEntry:
    """
    Log a failed run as a structured error entry.

    Args:
        logger: Logger instance
        error: The exception that ended the run
        context: What was happening when it failed

    Returns:
        The StructuredLogEntry that was logged
    """
    if context:
        message = f"Backup failed during {context}: {error}"
    else:
        message = f"Backup failed: {error}"
    return log_structured(
        logger,
        level="ERROR",
        message=message,
        error_code=map_exception_to_error_code(error),
        context={"error_type": type(error).__name__},
    )


def log_structured(
    logger: logging.Logger,
    level: str,
    message: str,
    error_code: Optional[ErrorCode] = None,
    context: Optional[Dict[str, Any]] = None,
) -> StructuredLogEntry:
    """
    Log a structured entry as a JSON string.

    Args:
        logger: Logger instance
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        message: Human-readable message
        error_code: Optional error code for errors/warnings
        context: Optional additional context dictionary

    Returns:
        The StructuredLogEntry that was logged
    """
    entry = StructuredLogEntry.create(
        level=level,
        message=message,
        error_code=error_code,
        context=context,
    )

    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.log(log_level, entry.to_json())

    return entry


def parse_structured_log(log_line: str) -> Optional[StructuredLogEntry]:
    """
    Parse a structured log entry from a log line.

    Log format: "2025-01-07 10:30:00 - synkhole - ERROR - {json}"

    Returns:
        StructuredLogEntry if parsing succeeds, None otherwise
    """
    try:
        json_start = log_line.find('{')
        if json_start == -1:
            return None
        return StructuredLogEntry.from_json(log_line[json_start:])
    except (json.JSONDecodeError, KeyError, TypeError):
        return None


def get_recent_errors(log_file: Path, max_entries: int = 10) -> List[StructuredLogEntry]:
    """
    Get recent structured error entries from a log file.

    Returns:
        Up to max_entries error entries, in chronological order
    """
    errors: List[StructuredLogEntry] = []

    if not log_file.exists():
        return errors

    try:
        with open(log_file, 'r', encoding='utf-8') as f:
            lines = f.readlines()
    except OSError:
        return errors

    for line in reversed(lines):
        if len(errors) >= max_entries:
            break
        entry = parse_structured_log(line)
        if entry and entry.level in ("ERROR", "CRITICAL"):
            errors.append(entry)

    return list(reversed(errors))
