"""Tests for the synchronizer adapter."""

import os
import shutil
import stat
from pathlib import Path

import pytest

from synkhole.errors import SourceUnavailable, SynchronizationFailure
from synkhole.events import CollectingEventSink, EventKind
from synkhole.sync import (
    CopySynchronizer,
    RsyncSynchronizer,
    SyncResult,
    parse_rsync_stats,
    resolve_source,
    source_subpath,
    synchronize_sources,
)


requires_rsync = pytest.mark.skipif(
    shutil.which("rsync") is None, reason="rsync not installed"
)


def tree(root: Path) -> dict:
    """Map of relative path -> file content / link target / None for dirs."""
    result = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = Path(dirpath) / name
            rel = str(path.relative_to(root))
            if path.is_symlink():
                result[rel] = ("link", os.readlink(path))
            elif path.is_dir():
                result[rel] = None
            else:
                result[rel] = path.read_text()
    return result


class TestResolveSource:
    """Tests for source resolution."""

    def test_resolves_existing_directory(self, source_dir):
        assert resolve_source(source_dir) == source_dir.resolve()

    def test_follows_symlink_to_target(self, tmp_path, source_dir):
        link = tmp_path / "link"
        link.symlink_to(source_dir)
        assert resolve_source(link) == source_dir.resolve()

    def test_missing_source(self, tmp_path):
        with pytest.raises(SourceUnavailable, match="doesn't seem to exist") as exc_info:
            resolve_source(tmp_path / "missing")
        assert exc_info.value.source == tmp_path / "missing"

    def test_dangling_symlink(self, tmp_path):
        link = tmp_path / "dangling"
        link.symlink_to(tmp_path / "gone")
        with pytest.raises(SourceUnavailable):
            resolve_source(link)

    def test_file_is_not_a_source(self, tmp_path):
        path = tmp_path / "file.txt"
        path.write_text("x")
        with pytest.raises(SourceUnavailable, match="not a directory"):
            resolve_source(path)

    def test_subpath_is_relative_to_root(self):
        assert source_subpath(Path("/home/me/projects")) == Path("home/me/projects")


class TestCopySynchronizer:
    """Tests for the pure Python mirror."""

    def test_first_sync_copies_everything(self, tmp_path, source_dir):
        dest = tmp_path / "snap"
        dest.mkdir()
        source = source_dir.resolve()

        result = CopySynchronizer().sync(source, dest)

        assert result.success
        assert result.files_transferred == 3
        assert tree(dest / source_subpath(source)) == tree(source)

    def test_deletions_are_mirrored(self, tmp_path, source_dir):
        dest = tmp_path / "snap"
        dest.mkdir()
        source = source_dir.resolve()
        CopySynchronizer().sync(source, dest)

        (source / "file1.txt").unlink()
        shutil.rmtree(source / "subdir")
        CopySynchronizer().sync(source, dest)

        assert tree(dest / source_subpath(source)) == {"file2.txt": "content 2"}

    def test_changed_file_gets_new_inode(self, tmp_path, source_dir):
        source = source_dir.resolve()
        previous = tmp_path / "previous"
        previous.mkdir()
        CopySynchronizer().sync(source, previous)

        # Hardlink clone, as SnapshotCloner would produce
        staged = tmp_path / "staged"
        shutil.copytree(previous, staged, copy_function=os.link)
        old_file = previous / source_subpath(source) / "file1.txt"
        new_file = staged / source_subpath(source) / "file1.txt"
        assert old_file.stat().st_ino == new_file.stat().st_ino

        (source / "file1.txt").write_text("changed content")
        result = CopySynchronizer().sync(source, staged)

        assert result.files_transferred == 1
        assert new_file.read_text() == "changed content"
        assert old_file.read_text() == "content 1"
        assert old_file.stat().st_ino != new_file.stat().st_ino

    def test_unchanged_files_keep_shared_inode(self, tmp_path, source_dir):
        source = source_dir.resolve()
        previous = tmp_path / "previous"
        previous.mkdir()
        CopySynchronizer().sync(source, previous)
        staged = tmp_path / "staged"
        shutil.copytree(previous, staged, copy_function=os.link)

        result = CopySynchronizer().sync(source, staged)

        assert result.files_transferred == 0
        rel = source_subpath(source) / "subdir" / "nested.txt"
        assert (staged / rel).stat().st_ino == (previous / rel).stat().st_ino

    def test_symlinks_are_copied_as_links(self, tmp_path, source_dir):
        source = source_dir.resolve()
        os.symlink("file1.txt", source / "alias")
        os.symlink("subdir", source / "dirlink")
        dest = tmp_path / "snap"
        dest.mkdir()

        CopySynchronizer().sync(source, dest)

        target = dest / source_subpath(source)
        assert os.readlink(target / "alias") == "file1.txt"
        assert os.readlink(target / "dirlink") == "subdir"

    def test_type_change_file_to_directory(self, tmp_path, source_dir):
        source = source_dir.resolve()
        dest = tmp_path / "snap"
        dest.mkdir()
        CopySynchronizer().sync(source, dest)

        (source / "file1.txt").unlink()
        (source / "file1.txt").mkdir()
        (source / "file1.txt" / "inner").write_text("inner")
        CopySynchronizer().sync(source, dest)

        target = dest / source_subpath(source)
        assert (target / "file1.txt" / "inner").read_text() == "inner"

    def test_special_file_replaces_previous_regular_file(self, tmp_path, source_dir):
        source = source_dir.resolve()
        dest = tmp_path / "snap"
        dest.mkdir()
        CopySynchronizer().sync(source, dest)

        (source / "file1.txt").unlink()
        os.mkfifo(source / "file1.txt")
        result = CopySynchronizer().sync(source, dest)

        assert result.success
        target = dest / source_subpath(source)
        assert not (target / "file1.txt").exists()
        assert (target / "file2.txt").read_text() == "content 2"

    def test_permissions_and_mtime_preserved(self, tmp_path, source_dir):
        source = source_dir.resolve()
        script = source / "run.sh"
        script.write_text("#!/bin/sh\n")
        script.chmod(0o750)
        os.utime(script, (1_600_000_000, 1_600_000_000))
        dest = tmp_path / "snap"
        dest.mkdir()

        CopySynchronizer().sync(source, dest)

        copied = dest / source_subpath(source) / "run.sh"
        assert stat.S_IMODE(copied.stat().st_mode) == 0o750
        assert copied.stat().st_mtime == 1_600_000_000

    def test_missing_source_fails(self, tmp_path):
        dest = tmp_path / "snap"
        dest.mkdir()

        result = CopySynchronizer().sync(tmp_path / "gone", dest)

        assert not result.success
        assert result.error_message


class TestRsyncSynchronizer:
    """Tests for the rsync primitive."""

    def test_build_command(self, tmp_path):
        sync = RsyncSynchronizer(rsync_path="/usr/bin/rsync", extra_args=["--numeric-ids"])

        cmd = sync.build_command(Path("/home/me/projects/"), tmp_path / "snap")

        assert cmd == [
            "/usr/bin/rsync", "-aRH", "--delete", "--stats", "--numeric-ids",
            "/home/me/projects", f"{tmp_path / 'snap'}/",
        ]

    def test_missing_binary_fails(self, tmp_path, source_dir):
        sync = RsyncSynchronizer(rsync_path=str(tmp_path / "no-such-rsync"))

        result = sync.sync(source_dir, tmp_path)

        assert not result.success
        assert "Cannot run" in result.error_message

    @requires_rsync
    def test_mirrors_source_under_full_path(self, tmp_path, source_dir):
        source = source_dir.resolve()
        dest = tmp_path / "snap"
        dest.mkdir()

        result = RsyncSynchronizer().sync(source, dest)

        assert result.success, result.error_message
        assert tree(dest / source_subpath(source)) == tree(source)

    @requires_rsync
    def test_deletes_and_keeps_previous_inode(self, tmp_path, source_dir):
        source = source_dir.resolve()
        previous = tmp_path / "previous"
        previous.mkdir()
        assert RsyncSynchronizer().sync(source, previous).success
        staged = tmp_path / "staged"
        shutil.copytree(previous, staged, copy_function=os.link)

        (source / "file1.txt").write_text("changed and longer")
        (source / "file2.txt").unlink()
        result = RsyncSynchronizer().sync(source, staged)

        assert result.success, result.error_message
        target = staged / source_subpath(source)
        assert (target / "file1.txt").read_text() == "changed and longer"
        assert not (target / "file2.txt").exists()
        assert (previous / source_subpath(source) / "file1.txt").read_text() == "content 1"


class TestParseRsyncStats:
    """Tests for rsync --stats parsing."""

    def test_rsync3_format(self):
        output = "Number of files: 10\nNumber of regular files transferred: 1,234\n"
        assert parse_rsync_stats(output) == 1234

    def test_old_format(self):
        assert parse_rsync_stats("Number of files transferred: 7\n") == 7

    def test_missing_stats(self):
        assert parse_rsync_stats("") == 0


class FakeSynchronizer:
    """Records calls; fails for sources listed in fail_on."""

    def __init__(self, fail_on=()):
        self.calls = []
        self.fail_on = set(fail_on)

    def sync(self, source, destination):
        self.calls.append(source)
        if source in self.fail_on:
            return SyncResult(False, source, destination, error_message="boom")
        return SyncResult(True, source, destination, files_transferred=1)


class TestSynchronizeSources:
    """Tests for per-source sequencing."""

    def test_sources_run_in_order(self, tmp_path):
        sources = [Path("/a"), Path("/b"), Path("/c")]
        sink = CollectingEventSink()
        fake = FakeSynchronizer()

        results = synchronize_sources(fake, sources, tmp_path, sink.emit, snapshot_id=5)

        assert fake.calls == sources
        assert len(results) == 3
        assert sink.kinds() == [EventKind.SOURCE_SYNCHRONIZED] * 3
        assert sink.events[0].snapshot_id == 5

    def test_first_failure_stops_the_run(self, tmp_path):
        sources = [Path("/a"), Path("/b"), Path("/c")]
        fake = FakeSynchronizer(fail_on=[Path("/b")])

        with pytest.raises(SynchronizationFailure, match="boom") as exc_info:
            synchronize_sources(fake, sources, tmp_path, lambda event: None)

        assert exc_info.value.source == Path("/b")
        assert fake.calls == [Path("/a"), Path("/b")]
