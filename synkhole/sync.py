"""Synchronizer adapter for synkhole.

The pipeline does not compare or copy files itself. It hands each resolved
source to a synchronizer primitive which must leave the matching subtree of
the staged snapshot identical to the source, deletions included. Two
primitives are provided:

- RsyncSynchronizer runs ``rsync -aRH --delete``.
- CopySynchronizer is a pure Python mirror with the same contract.

Each source lands under a subpath derived from its resolved absolute path
(``/home/me/projects`` -> ``<snapshot>/home/me/projects``), so several
sources never collide inside one snapshot.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Protocol, Sequence
import logging
import os
import shutil
import stat
import subprocess
import tempfile
import time

from synkhole.errors import SourceUnavailable, SynchronizationFailure
from synkhole.events import EventKind, LifecycleEvent, Stage
from synkhole.storage import force_rmtree


logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Result of synchronizing one source."""
    success: bool
    source: Path
    destination: Path
    error_message: Optional[str] = None
    files_transferred: int = 0
    duration_seconds: float = 0.0


class Synchronizer(Protocol):
    """Mirror primitive: make destination's copy of source match source exactly."""

    def sync(self, source: Path, destination: Path) -> SyncResult:
        ...


def resolve_source(path: Path) -> Path:
    """
    Resolve a configured source to the real directory it points at.

    Expands ~ and follows symlinks, so a snapshot always holds the link
    target's content.

    Raises:
        SourceUnavailable: If the path doesn't exist or isn't a directory
    """
    expanded = Path(os.path.expanduser(str(path)))
    try:
        resolved = expanded.resolve(strict=True)
    except (OSError, RuntimeError) as e:
        raise SourceUnavailable(
            f"Backup source {path} doesn't seem to exist: {e}",
            source=Path(path),
        )
    if not resolved.is_dir():
        raise SourceUnavailable(
            f"Backup source {path} is not a directory",
            source=Path(path),
        )
    return resolved


def source_subpath(resolved: Path) -> Path:
    """Path of a resolved source inside a snapshot, relative to the snapshot root."""
    return resolved.relative_to(resolved.anchor)


class RsyncSynchronizer:
    """
    Mirrors sources with rsync.

    Flags used:
    - -a (archive): preserves permissions, timestamps, symlinks, etc.
    - -R (relative): recreates the full source path below the destination
    - -H: preserves hard links inside the source
    - --delete: removes destination entries missing from the source
    - --stats: transfer statistics, parsed for the result

    rsync writes changed files to a temporary name and renames them into
    place, so inodes shared with the previous snapshot are left untouched.
    """

    def __init__(
        self,
        rsync_path: str = "rsync",
        timeout_seconds: int = 3600,
        extra_args: Sequence[str] = (),
    ):
        self.rsync_path = rsync_path
        self.timeout_seconds = timeout_seconds
        self.extra_args = list(extra_args)

    def build_command(self, source: Path, destination: Path) -> List[str]:
        cmd = [self.rsync_path, "-aRH", "--delete", "--stats"]
        cmd.extend(self.extra_args)
        # No trailing slash on the source: -R must see the full path
        cmd.append(str(source).rstrip("/") or "/")
        cmd.append(str(destination).rstrip("/") + "/")
        return cmd

    def sync(self, source: Path, destination: Path) -> SyncResult:
        start_time = time.time()
        cmd = self.build_command(source, destination)
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            return SyncResult(
                success=False,
                source=source,
                destination=destination,
                error_message=f"Cannot run {self.rsync_path}: {e}",
                duration_seconds=time.time() - start_time,
            )

        try:
            stdout_bytes, stderr_bytes = process.communicate(timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()
            return SyncResult(
                success=False,
                source=source,
                destination=destination,
                error_message=f"rsync timed out after {self.timeout_seconds} seconds",
                duration_seconds=time.time() - start_time,
            )

        stdout = stdout_bytes.decode("utf-8", errors="replace") if stdout_bytes else ""
        stderr = stderr_bytes.decode("utf-8", errors="replace") if stderr_bytes else ""
        for line in stdout.strip().splitlines():
            logger.debug(f"rsync: {line}")

        if process.returncode != 0:
            return SyncResult(
                success=False,
                source=source,
                destination=destination,
                error_message=stderr.strip() or f"rsync exited with code {process.returncode}",
                duration_seconds=time.time() - start_time,
            )

        return SyncResult(
            success=True,
            source=source,
            destination=destination,
            files_transferred=parse_rsync_stats(stdout),
            duration_seconds=time.time() - start_time,
        )


def parse_rsync_stats(output: str) -> int:
    """
    Extract the number of transferred files from rsync --stats output.

    Understands both "Number of regular files transferred: 3" (rsync 3)
    and "Number of files transferred: 3" (older releases).

    Returns:
        Files transferred, or 0 if the statistics are missing
    """
    for line in output.splitlines():
        line = line.strip()
        if "files transferred:" in line.lower():
            try:
                return int(line.split(":", 1)[1].strip().replace(",", ""))
            except (ValueError, IndexError):
                return 0
    return 0


class CopySynchronizer:
    """
    Mirrors sources with shutil, for hosts without rsync.

    Files whose size, mtime and mode match are left alone, keeping the
    hardlink shared with the previous snapshot. Anything else is copied to
    a temporary sibling and renamed over the old entry, never rewritten in
    place. Sockets, devices and FIFOs are skipped, and whatever the previous
    snapshot held under their name is removed.
    """

    def sync(self, source: Path, destination: Path) -> SyncResult:
        start_time = time.time()
        target = destination / source_subpath(source)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            transferred = self._mirror(source, target)
        except OSError as e:
            return SyncResult(
                success=False,
                source=source,
                destination=destination,
                error_message=str(e),
                duration_seconds=time.time() - start_time,
            )

        return SyncResult(
            success=True,
            source=source,
            destination=destination,
            files_transferred=transferred,
            duration_seconds=time.time() - start_time,
        )

    def _mirror(self, source_dir: Path, target_dir: Path) -> int:
        transferred = 0

        if target_dir.is_symlink() or (target_dir.exists() and not target_dir.is_dir()):
            _remove(target_dir)
        if not target_dir.exists():
            target_dir.mkdir()
        else:
            # Cloned directories carry the source mode, which may be read-only
            mode = target_dir.stat().st_mode
            if not mode & stat.S_IWUSR:
                os.chmod(target_dir, mode | stat.S_IWUSR | stat.S_IXUSR)

        source_entries = {entry.name: entry for entry in os.scandir(source_dir)}

        for existing in os.scandir(target_dir):
            if existing.name not in source_entries:
                _remove(Path(existing.path))

        for name, entry in sorted(source_entries.items()):
            src = Path(entry.path)
            dst = target_dir / name
            src_stat = entry.stat(follow_symlinks=False)

            if stat.S_ISLNK(src_stat.st_mode):
                link_target = os.readlink(src)
                if dst.is_symlink() and os.readlink(dst) == link_target:
                    continue
                if dst.exists() or dst.is_symlink():
                    _remove(dst)
                os.symlink(link_target, dst)
                transferred += 1
            elif stat.S_ISDIR(src_stat.st_mode):
                transferred += self._mirror(src, dst)
            elif stat.S_ISREG(src_stat.st_mode):
                if _unchanged(src_stat, dst):
                    continue
                _replace_file(src, dst)
                transferred += 1
            else:
                if dst.exists() or dst.is_symlink():
                    _remove(dst)
                logger.debug(f"Skipping special file {src}")

        shutil.copystat(source_dir, target_dir)
        return transferred


def _unchanged(src_stat: os.stat_result, dst: Path) -> bool:
    try:
        dst_stat = dst.lstat()
    except FileNotFoundError:
        return False
    return (
        stat.S_ISREG(dst_stat.st_mode)
        and dst_stat.st_size == src_stat.st_size
        and dst_stat.st_mtime_ns == src_stat.st_mtime_ns
        and stat.S_IMODE(dst_stat.st_mode) == stat.S_IMODE(src_stat.st_mode)
    )


def _replace_file(src: Path, dst: Path) -> None:
    """Copy src next to dst under a temporary name, then rename it over dst."""
    if dst.is_dir() and not dst.is_symlink():
        force_rmtree(dst)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dst.name}.", dir=dst.parent)
    os.close(fd)
    try:
        shutil.copy2(src, tmp_name)
        os.replace(tmp_name, dst)
    except OSError:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        force_rmtree(path)
    else:
        path.unlink()


def synchronize_sources(
    synchronizer: Synchronizer,
    sources: Sequence[Path],
    staged_path: Path,
    emit: Callable[[LifecycleEvent], None],
    snapshot_id: Optional[int] = None,
) -> List[SyncResult]:
    """
    Run the synchronizer once per source, in order.

    Stops at the first failure; later sources are not attempted.

    Returns:
        One successful SyncResult per source

    Raises:
        SynchronizationFailure: If the synchronizer fails for any source
    """
    results = []
    for source in sources:
        result = synchronizer.sync(source, staged_path)
        if not result.success:
            raise SynchronizationFailure(
                f"Synchronization of {source} failed: {result.error_message}",
                source=source,
            )
        emit(LifecycleEvent(
            kind=EventKind.SOURCE_SYNCHRONIZED,
            stage=Stage.SYNC,
            snapshot_id=snapshot_id,
            detail={
                "source": str(source),
                "files_transferred": result.files_transferred,
                "duration_seconds": round(result.duration_seconds, 3),
            },
        ))
        results.append(result)
    return results
