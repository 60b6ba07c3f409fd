"""Pytest configuration and fixtures for synkhole tests."""

from pathlib import Path

import pytest
from hypothesis import settings, Phase

from synkhole.config import (
    Configuration,
    LockConfig,
    LoggingConfig,
    Settings,
    SynchronizerConfig,
)
from synkhole.storage import StorageRoot

# Configure hypothesis to use fewer examples for faster test runs
# Disable shrinking phase to speed up tests further
settings.register_profile(
    "fast",
    max_examples=2,
    deadline=10000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate]
)
settings.register_profile("ci", max_examples=50, deadline=10000)
settings.register_profile("dev", max_examples=2, deadline=10000)

# Use the fast profile by default
settings.load_profile("fast")

HOST = "test.example.org"


@pytest.fixture
def storage(tmp_path: Path) -> StorageRoot:
    """An existing, empty storage root."""
    root = tmp_path / "storage" / HOST
    root.mkdir(parents=True)
    return StorageRoot(root)


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """A small source tree with a nested directory."""
    source = tmp_path / "source"
    source.mkdir()
    (source / "file1.txt").write_text("content 1")
    (source / "file2.txt").write_text("content 2")
    (source / "subdir").mkdir()
    (source / "subdir" / "nested.txt").write_text("nested content")
    return source


@pytest.fixture
def run_settings(tmp_path: Path, source_dir: Path) -> Settings:
    return Settings(
        sources=[source_dir],
        storage_dir=tmp_path / "storage",
        max_age_days=30,
        host_identity=HOST,
    )


@pytest.fixture
def test_config(tmp_path: Path, run_settings: Settings) -> Configuration:
    """Full configuration writing logs and the lock file under tmp_path."""
    log_dir = tmp_path / "logs"
    return Configuration(
        settings=run_settings,
        synchronizer=SynchronizerConfig(type="copy"),
        logging=LoggingConfig(
            level="DEBUG",
            log_file=log_dir / "synkhole.log",
            error_log_file=log_dir / "synkhole.err",
        ),
        lock=LockConfig(lock_file=tmp_path / "run.lock", timeout_seconds=1),
    )
