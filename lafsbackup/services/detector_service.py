"""Per-path change detection: reuse a recorded capability or upload again."""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Callable, Iterator

from ..backupdb import BackupDB, FileStat, FileStateRecord, utcnow
from ..config import DEFAULT_CTIME_POLICY, SUPPORTED_CTIME_POLICIES
from ..errors import IdentityConflict, TransientIOError
from ..utils import path_key

log = logging.getLogger(__name__)

# Takes the path, returns the capability the backend minted for its content.
UploadFn = Callable[[str], str]


class Outcome(str, Enum):
    MISS = "miss"
    REUSE = "reuse"
    STALE = "stale"
    RENEWED = "renewed"


@dataclass(frozen=True, slots=True)
class Decision:
    outcome: Outcome
    record: FileStateRecord | None = None
    capability: str | None = None
    refresh_ctime: bool = False


@dataclass(frozen=True, slots=True)
class Resolution:
    path: str
    outcome: Outcome
    capability: str
    identity: int

    @property
    def uploaded(self) -> bool:
        return self.outcome is not Outcome.REUSE


@dataclass(slots=True)
class _PathLock:
    lock: Lock = field(default_factory=Lock)
    users: int = 0


def stat_path(path: Path | str) -> FileStat:
    """Stat *path* without following symlinks; failures are transient."""

    try:
        return FileStat.from_stat(os.lstat(path))
    except OSError as exc:
        raise TransientIOError(f"Couldn't read metadata: {exc}", path=path_key(path)) from exc


def compare_stat(
    cached: FileStat,
    current: FileStat,
    *,
    ctime_policy: str = DEFAULT_CTIME_POLICY,
) -> tuple[bool, bool]:
    """Return ``(unchanged, ctime_only)`` for a cached/current stat pair."""

    if cached == current:
        return True, False
    ctime_only = (
        cached.size == current.size
        and cached.mtime == current.mtime
        and cached.ctime != current.ctime
    )
    if ctime_only and ctime_policy == "relaxed":
        return True, True
    return False, ctime_only


class ChangeDetector:
    """Decides REUSE vs. RECOMPUTE per path and writes the results through.

    ``ctime_policy="strict"`` treats any difference in size, mtime or ctime as
    a change. ``"relaxed"`` reuses the capability when only ctime moved; an
    edit that lands inside the filesystem's mtime granularity and happens to
    leave the size alone is then missed until the next visible change.

    With ``reuse_identity`` a changed path keeps its identity when the new
    upload returns the very capability that identity already holds. A file
    reverted to an older content always gets a fresh identity.

    ``reupload_after`` re-confirms unchanged content whose last upload is
    older than the given age.
    """

    def __init__(
        self,
        db: BackupDB,
        upload: UploadFn,
        *,
        ctime_policy: str = DEFAULT_CTIME_POLICY,
        reuse_identity: bool = False,
        reupload_after: timedelta | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if ctime_policy not in SUPPORTED_CTIME_POLICIES:
            raise ValueError(f"Unsupported ctime policy: {ctime_policy}")
        self.db = db
        self.upload = upload
        self.ctime_policy = ctime_policy
        self.reuse_identity = reuse_identity
        self.reupload_after = reupload_after if reupload_after else None
        self.clock = clock
        self._locks: dict[str, _PathLock] = {}
        self._locks_guard = Lock()

    @contextmanager
    def _path_lock(self, path: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(path)
            if entry is None:
                entry = self._locks[path] = _PathLock()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[path]

    def check(self, path: str, stat: FileStat) -> Decision:
        """Classify *path* against its cached record without writing anything."""

        record = self.db.files.lookup(path)
        if record is None:
            return Decision(Outcome.MISS)
        unchanged, ctime_only = compare_stat(
            record.stat,
            stat,
            ctime_policy=self.ctime_policy,
        )
        if not unchanged:
            return Decision(Outcome.STALE, record=record)
        capability = self.db.caps.get(record.identity)
        if capability is None:
            log.warning("No capability for identity %s of '%s'", record.identity, path)
            return Decision(Outcome.MISS, record=record)
        return Decision(
            Outcome.REUSE,
            record=record,
            capability=capability,
            refresh_ctime=ctime_only,
        )

    def process(self, path: Path | str, stat: FileStat | os.stat_result | None = None) -> Resolution:
        """Resolve the capability of *path*, uploading only when needed."""

        source = os.fspath(path)
        key = path_key(source)
        if stat is None:
            stat = stat_path(source)
        elif isinstance(stat, os.stat_result):
            stat = FileStat.from_stat(stat)

        decision = self.check(key, stat)
        if decision.outcome is Outcome.REUSE and not self._needs_renewal(decision):
            if decision.refresh_ctime:
                with self._path_lock(key):
                    self.db.files.store(
                        key, stat.size, stat.mtime, stat.ctime, decision.record.identity
                    )
            log.info("Skipping '%s'", key)
            return Resolution(key, Outcome.REUSE, decision.capability, decision.record.identity)

        with self._path_lock(key):
            # Another worker may have finished this path while we waited.
            decision = self.check(key, stat)
            if decision.outcome is Outcome.REUSE and not self._needs_renewal(decision):
                return Resolution(key, Outcome.REUSE, decision.capability, decision.record.identity)
            capability = self.upload(source)
            log.info("'%s' -> '%s'", key, capability)
            return self._commit(key, stat, decision, capability)

    def _needs_renewal(self, decision: Decision) -> bool:
        if self.reupload_after is None or decision.record is None:
            return False
        last = self.db.uploads.last_uploaded(decision.record.identity)
        if last is None:
            return True
        return self.clock() - last > self.reupload_after

    def _commit(
        self,
        path: str,
        stat: FileStat,
        decision: Decision,
        capability: str,
    ) -> Resolution:
        record = decision.record
        outcome = decision.outcome
        now = self.clock()
        try:
            with self.db.transaction():
                if outcome is Outcome.REUSE:
                    if capability == decision.capability:
                        self.db.uploads.record(record.identity, now)
                        if decision.refresh_ctime:
                            self.db.files.store(
                                path, stat.size, stat.mtime, stat.ctime, record.identity
                            )
                        return Resolution(path, Outcome.RENEWED, capability, record.identity)
                    log.warning(
                        "Content of '%s' changed without a metadata change", path
                    )
                    outcome = Outcome.STALE
                identity = self._identity_for(record, capability)
                self.db.caps.put(identity, capability)
                self.db.files.store(path, stat.size, stat.mtime, stat.ctime, identity)
                self.db.uploads.record(identity, now)
        except IdentityConflict as exc:
            exc.path = path
            raise
        return Resolution(path, outcome, capability, identity)

    def _identity_for(self, record: FileStateRecord | None, capability: str) -> int:
        if self.reuse_identity and record is not None:
            if self.db.caps.get(record.identity) == capability:
                return record.identity
        return self.db.caps.allocate_identity()
