"""Logic helpers for the `lafs-backup backup` command."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Sequence

from ..backupdb import BackupDB, FileStat, utcnow
from ..client import TahoeClient
from ..config import DEFAULT_CTIME_POLICY, DEFAULT_THREADS
from ..errors import TransientIOError
from ..utils import (
    DIRECTORY,
    FILE,
    SYMLINK,
    TreeEntry,
    build_exclude_spec,
    path_key,
    walk_tree,
)
from .detector_service import ChangeDetector, Outcome, Resolution
from .directory_service import DirectoryCapBuilder, DirectoryResolution

log = logging.getLogger(__name__)

# Progress callback: (phase, current_index, total_count). Phase: "files"|"directories".
ProgressCallback = Callable[[str, int, int], None]

ARCHIVES_DIR = "Archives"
LATEST_LINK = "Latest"


@dataclass(slots=True)
class PathFailure:
    path: str
    kind: str
    message: str


@dataclass(slots=True)
class BackupReport:
    root: Path
    root_capability: str | None = None
    files_reused: int = 0
    files_uploaded: int = 0
    files_renewed: int = 0
    dirs_reused: int = 0
    dirs_uploaded: int = 0
    skipped: list[PathFailure] = field(default_factory=list)
    failures: list[PathFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.root_capability is not None and not self.failures

    def add_file(self, resolution: Resolution) -> None:
        if resolution.outcome is Outcome.REUSE:
            self.files_reused += 1
        elif resolution.outcome is Outcome.RENEWED:
            self.files_renewed += 1
        else:
            self.files_uploaded += 1

    def add_directory(self, resolution: DirectoryResolution) -> None:
        if resolution.reused:
            self.dirs_reused += 1
        else:
            self.dirs_uploaded += 1

    def add_failure(self, path: Path | str, exc: Exception) -> None:
        key = path_key(path)
        log.warning("%s: %s", key, exc)
        self.failures.append(PathFailure(key, type(exc).__name__, str(exc)))


def build_detector(
    db: BackupDB,
    client: TahoeClient,
    *,
    ctime_policy: str = DEFAULT_CTIME_POLICY,
    reuse_identity: bool = False,
    reupload_after_days: int = 0,
) -> ChangeDetector:
    reupload_after = timedelta(days=reupload_after_days) if reupload_after_days > 0 else None
    return ChangeDetector(
        db,
        client.upload_file,
        ctime_policy=ctime_policy,
        reuse_identity=reuse_identity,
        reupload_after=reupload_after,
    )


class BackupRun:
    """One backup pass over a tree.

    Files are resolved by a pool of workers. Directories are reduced level by
    level, deepest first, once every child of theirs has been handled. A child
    that failed is left out of its parent's listing and listed in the report.
    """

    def __init__(
        self,
        detector: ChangeDetector,
        builder: DirectoryCapBuilder,
        *,
        threads: int = DEFAULT_THREADS,
        exclude_patterns: Sequence[str] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self.detector = detector
        self.builder = builder
        self.threads = max(int(threads or 1), 1)
        self.exclude_spec = build_exclude_spec(exclude_patterns)
        self.on_progress = on_progress

    def _progress(self, phase: str, current: int, total: int) -> None:
        if self.on_progress:
            self.on_progress(phase, current, total)

    def run(self, root: Path | str) -> BackupReport:
        root_path = Path(root)
        report = BackupReport(root=root_path)
        entries = list(walk_tree(root_path, self.exclude_spec))
        resolved: dict[Path, str] = {}

        files: list[TreeEntry] = []
        directories: list[TreeEntry] = []
        children: dict[Path, list[TreeEntry]] = {}
        for entry in entries:
            if entry.parent is not None:
                children.setdefault(entry.parent, []).append(entry)
            if entry.kind == FILE:
                files.append(entry)
            elif entry.kind == DIRECTORY:
                directories.append(entry)
            elif entry.error is not None:
                report.add_failure(
                    entry.path, TransientIOError(str(entry.error), path=path_key(entry.path))
                )
            else:
                reason = "not following symlink" if entry.kind == SYMLINK else "unexpected file"
                log.info("Skipping '%s': %s", path_key(entry.path), reason)
                report.skipped.append(PathFailure(path_key(entry.path), entry.kind, reason))

        executor = ThreadPoolExecutor(max_workers=self.threads)
        try:
            self._resolve_files(executor, files, resolved, report)
            self._resolve_directories(executor, directories, children, resolved, report)
        except BaseException:
            executor.shutdown(wait=True, cancel_futures=True)
            raise
        executor.shutdown(wait=True)

        report.root_capability = resolved.get(root_path)
        return report

    def _resolve_file(self, entry: TreeEntry) -> Resolution:
        if entry.error is not None:
            raise TransientIOError(
                f"Couldn't read metadata: {entry.error}", path=path_key(entry.path)
            )
        return self.detector.process(entry.path, FileStat.from_stat(entry.stat))

    def _resolve_files(
        self,
        executor: ThreadPoolExecutor,
        files: list[TreeEntry],
        resolved: dict[Path, str],
        report: BackupReport,
    ) -> None:
        total = len(files)
        self._progress("files", 0, total)
        future_map: dict[Future, TreeEntry] = {
            executor.submit(self._resolve_file, entry): entry for entry in files
        }
        for done, future in enumerate(as_completed(future_map), start=1):
            entry = future_map[future]
            try:
                resolution = future.result()
            except Exception as exc:
                report.add_failure(entry.path, exc)
            else:
                resolved[entry.path] = resolution.capability
                report.add_file(resolution)
            self._progress("files", done, total)

    def _listing_for(
        self,
        directory: TreeEntry,
        children: dict[Path, list[TreeEntry]],
        resolved: dict[Path, str],
    ) -> tuple[list[tuple[str, str]], dict[str, dict[str, int]]]:
        listing: list[tuple[str, str]] = []
        metadata: dict[str, dict[str, int]] = {}
        for child in children.get(directory.path, []):
            capability = resolved.get(child.path)
            if capability is None:
                continue
            name = path_key(child.name)
            listing.append((name, capability))
            if child.stat is not None:
                metadata[name] = {
                    "ctime": int(child.stat.st_ctime),
                    "mtime": int(child.stat.st_mtime),
                }
        return listing, metadata

    def _resolve_directories(
        self,
        executor: ThreadPoolExecutor,
        directories: list[TreeEntry],
        children: dict[Path, list[TreeEntry]],
        resolved: dict[Path, str],
        report: BackupReport,
    ) -> None:
        levels: dict[int, list[TreeEntry]] = {}
        for entry in directories:
            levels.setdefault(len(entry.path.parts), []).append(entry)
        total = len(directories)
        done = 0
        self._progress("directories", 0, total)
        for depth in sorted(levels, reverse=True):
            future_map: dict[Future, TreeEntry] = {}
            for entry in levels[depth]:
                if entry.error is not None:
                    report.add_failure(
                        entry.path,
                        TransientIOError(
                            f"Couldn't read dir: {entry.error}", path=path_key(entry.path)
                        ),
                    )
                    done += 1
                    continue
                listing, metadata = self._listing_for(entry, children, resolved)
                future = executor.submit(
                    self.builder.resolve_entry,
                    listing,
                    label=path_key(entry.path),
                    metadata=metadata,
                )
                future_map[future] = entry
            for future in as_completed(future_map):
                entry = future_map[future]
                try:
                    resolution = future.result()
                except Exception as exc:
                    report.add_failure(entry.path, exc)
                else:
                    resolved[entry.path] = resolution.capability
                    report.add_directory(resolution)
                done += 1
                self._progress("directories", done, total)


def archive_name(when: datetime | None = None) -> str:
    stamp = (when or utcnow()).isoformat()
    return f"{ARCHIVES_DIR}/{stamp}"


def link_archive(
    client: TahoeClient,
    target: str,
    capability: str,
    *,
    when: datetime | None = None,
) -> str:
    """Link *capability* as ``Archives/<timestamp>`` and ``Latest`` under *target*."""

    name = archive_name(when)
    log.info("Adding link 'Latest' and '%s'", name)
    client.attach(target, name, capability)
    client.attach(target, LATEST_LINK, capability)
    return name


def run_backup(
    root: Path | str,
    *,
    db: BackupDB,
    client: TahoeClient,
    threads: int = DEFAULT_THREADS,
    exclude_patterns: Sequence[str] | None = None,
    ctime_policy: str = DEFAULT_CTIME_POLICY,
    reuse_identity: bool = False,
    reupload_after_days: int = 0,
    on_progress: ProgressCallback | None = None,
) -> BackupReport:
    """Back up *root* using an open *db* and *client*; returns the run report."""

    detector = build_detector(
        db,
        client,
        ctime_policy=ctime_policy,
        reuse_identity=reuse_identity,
        reupload_after_days=reupload_after_days,
    )
    builder = DirectoryCapBuilder(db, client.upload_directory)
    backup = BackupRun(
        detector,
        builder,
        threads=threads,
        exclude_patterns=exclude_patterns,
        on_progress=on_progress,
    )
    log.info("Backup started (root=%s)", root)
    report = backup.run(root)
    log.info(
        "Backup finished: %d reused, %d uploaded, %d failed",
        report.files_reused,
        report.files_uploaded,
        len(report.failures),
    )
    return report
