"""Tests for the logger module."""

import json
import logging
import tempfile
from pathlib import Path

import pytest

from synkhole.config import LoggingConfig
from synkhole.errors import (
    CommitFailure,
    InconsistentStorage,
    SynchronizationFailure,
)
from synkhole.lock import LockError
from synkhole.logger import (
    LOGGER_NAME,
    ErrorCode,
    GzipRotatingFileHandler,
    LoggingError,
    StructuredLogEntry,
    get_error_guidance,
    get_logger,
    get_recent_errors,
    log_run_completion,
    log_run_error,
    log_run_start,
    log_structured,
    map_exception_to_error_code,
    parse_structured_log,
    setup_logging,
)


@pytest.fixture
def temp_log_dir():
    """Create a temporary directory for log files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def cleanup_logger():
    """Clean up logger handlers after each test."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()


def flush(logger):
    for handler in logger.handlers:
        handler.flush()


class TestSetupLogging:
    """Tests for setup_logging function."""

    def test_setup_with_config(self, temp_log_dir, cleanup_logger):
        config = LoggingConfig(
            level="INFO",
            log_file=temp_log_dir / "test.log",
            error_log_file=temp_log_dir / "test.err",
        )

        logger = setup_logging(config=config)

        assert logger.name == LOGGER_NAME
        assert len(logger.handlers) == 3  # file, error, console

    def test_without_console(self, temp_log_dir, cleanup_logger):
        logger = setup_logging(
            log_file=temp_log_dir / "test.log",
            error_log_file=temp_log_dir / "test.err",
            console=False,
        )
        assert len(logger.handlers) == 2

    def test_creates_log_directories(self, temp_log_dir, cleanup_logger):
        log_file = temp_log_dir / "nested" / "dir" / "test.log"

        setup_logging(log_file=log_file, error_log_file=temp_log_dir / "e" / "test.err")

        assert log_file.parent.exists()
        assert (temp_log_dir / "e").exists()

    def test_invalid_log_level_raises_error(self, temp_log_dir, cleanup_logger):
        with pytest.raises(LoggingError, match="Invalid log level"):
            setup_logging(
                log_file=temp_log_dir / "test.log",
                error_log_file=temp_log_dir / "test.err",
                level="LOUD",
            )

    def test_error_log_file_only_errors(self, temp_log_dir, cleanup_logger):
        log_file = temp_log_dir / "test.log"
        error_file = temp_log_dir / "test.err"
        logger = setup_logging(log_file=log_file, error_log_file=error_file, level="DEBUG", console=False)

        logger.info("just information")
        logger.error("something broke")
        flush(logger)

        assert "just information" in log_file.read_text()
        assert "something broke" in error_file.read_text()
        assert "just information" not in error_file.read_text()

    def test_clears_existing_handlers(self, temp_log_dir, cleanup_logger):
        kwargs = dict(
            log_file=temp_log_dir / "test.log",
            error_log_file=temp_log_dir / "test.err",
            console=False,
        )
        setup_logging(**kwargs)
        logger = setup_logging(**kwargs)
        assert len(logger.handlers) == 2

    def test_returns_configured_logger(self, temp_log_dir, cleanup_logger):
        logger = setup_logging(
            log_file=temp_log_dir / "test.log",
            error_log_file=temp_log_dir / "test.err",
        )
        assert get_logger() is logger


class TestGzipRotatingFileHandler:
    """Tests for compressed log rotation."""

    def test_rotated_file_is_gzipped(self, temp_log_dir):
        log_file = temp_log_dir / "rotate.log"
        handler = GzipRotatingFileHandler(log_file, maxBytes=100, backupCount=2, encoding="utf-8")
        logger = logging.getLogger("synkhole.test.rotate")
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        try:
            for i in range(20):
                logger.info(f"line {i} with some padding to force rotation")
        finally:
            logger.removeHandler(handler)
            handler.close()

        assert (temp_log_dir / "rotate.log.1.gz").exists()


class TestRunLogging:
    """Tests for run start/completion/error helpers."""

    def test_logs_start_info(self, temp_log_dir, cleanup_logger):
        log_file = temp_log_dir / "test.log"
        logger = setup_logging(log_file=log_file, error_log_file=temp_log_dir / "test.err", console=False)

        log_run_start(logger, [Path("/etc"), Path("/home/me")], Path("/mnt/backups/host"))
        flush(logger)

        content = log_file.read_text()
        assert "Backup run started" in content
        assert "/etc, /home/me" in content
        assert "/mnt/backups/host" in content

    def test_logs_completion(self, temp_log_dir, cleanup_logger):
        log_file = temp_log_dir / "test.log"
        logger = setup_logging(log_file=log_file, error_log_file=temp_log_dir / "test.err", console=False)

        log_run_completion(
            logger,
            duration_seconds=1.5,
            snapshot_path=Path("/mnt/backups/host/1700000000"),
            removed_count=2,
            unparseable_count=1,
        )
        flush(logger)

        content = log_file.read_text()
        assert "Backup completed successfully" in content
        assert "1.50 seconds" in content
        assert "/mnt/backups/host/1700000000" in content
        assert "Outdated snapshots removed: 2" in content
        assert "Unparseable entries in storage root: 1" in content

    def test_logs_error_with_code(self, temp_log_dir, cleanup_logger):
        error_file = temp_log_dir / "test.err"
        logger = setup_logging(log_file=temp_log_dir / "test.log", error_log_file=error_file, console=False)

        entry = log_run_error(logger, CommitFailure("rename failed"), "commit")
        flush(logger)

        assert entry.error_code == "E3004"
        assert entry.message == "Backup failed during commit: rename failed"
        parsed = parse_structured_log(error_file.read_text().strip())
        assert parsed == entry

    def test_recent_errors(self, temp_log_dir, cleanup_logger):
        error_file = temp_log_dir / "test.err"
        logger = setup_logging(log_file=temp_log_dir / "test.log", error_log_file=error_file, console=False)

        for i in range(3):
            log_run_error(logger, SynchronizationFailure(f"failure {i}"))
        flush(logger)

        errors = get_recent_errors(error_file, max_entries=2)

        assert [e.message for e in errors] == [
            "Backup failed: failure 1",
            "Backup failed: failure 2",
        ]

    def test_recent_errors_missing_file(self, temp_log_dir):
        assert get_recent_errors(temp_log_dir / "missing.err") == []


class TestStructuredLogging:
    """Tests for structured JSON entries and error codes."""

    @pytest.mark.parametrize("error, code", [
        (InconsistentStorage("x"), ErrorCode.STORAGE_INCONSISTENT),
        (SynchronizationFailure("x"), ErrorCode.SNAPSHOT_SYNC_FAILED),
        (LockError("x"), ErrorCode.LOCK_HELD),
        (RuntimeError("x"), ErrorCode.UNKNOWN_ERROR),
    ])
    def test_map_exception_to_error_code(self, error, code):
        assert map_exception_to_error_code(error) is code

    def test_subclass_maps_to_parent_code(self):
        class NoSpaceLeft(CommitFailure):
            pass

        assert map_exception_to_error_code(NoSpaceLeft("x")) is ErrorCode.SNAPSHOT_COMMIT_FAILED

    def test_every_code_has_guidance(self):
        for code in ErrorCode:
            assert get_error_guidance(code)

    def test_entry_json_round_trip(self):
        entry = StructuredLogEntry.create(
            level="WARNING",
            message="hello",
            error_code=ErrorCode.RETENTION_UNPARSEABLE,
            context={"path": "/x/latest"},
        )

        data = json.loads(entry.to_json())

        assert data["error_code"] == "E4002"
        assert data["guidance"] == get_error_guidance(ErrorCode.RETENTION_UNPARSEABLE)
        assert StructuredLogEntry.from_json(entry.to_json()) == entry

    def test_log_structured_writes_json(self, temp_log_dir, cleanup_logger):
        log_file = temp_log_dir / "test.log"
        logger = setup_logging(log_file=log_file, error_log_file=temp_log_dir / "test.err", console=False)

        log_structured(logger, "INFO", "structured", context={"k": 1})
        flush(logger)

        entry = parse_structured_log(log_file.read_text().strip())
        assert entry.message == "structured"
        assert entry.context == {"k": 1}

    def test_parse_plain_line_returns_none(self):
        assert parse_structured_log("2025-01-01 - synkhole - INFO - plain text") is None
