"""Local backup state backed by SQLite.

The database holds four keyed stores: file state by path, capabilities by
identity, upload timestamps by identity and directory capabilities by
listing hash. A :class:`BackupDB` owns the connection; the store classes
below are thin views over it and are handed to the engine explicitly.
"""

from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Iterator

from .errors import IdentityConflict

SCHEMA_VERSION = 1
DB_FILENAME = "backup.db"

_TABLES = ("local_files", "caps", "last_upload", "directories")


@dataclass(frozen=True, slots=True)
class FileStat:
    """The slice of stat metadata used for change detection."""

    size: int
    mtime: int
    ctime: int

    @classmethod
    def from_stat(cls, stat: os.stat_result) -> "FileStat":
        return cls(
            size=int(stat.st_size),
            mtime=int(stat.st_mtime_ns),
            ctime=int(stat.st_ctime_ns),
        )


@dataclass(frozen=True, slots=True)
class FileStateRecord:
    path: str
    size: int
    mtime: int
    ctime: int
    identity: int

    @property
    def stat(self) -> FileStat:
        return FileStat(size=self.size, mtime=self.mtime, ctime=self.ctime)


@dataclass(frozen=True, slots=True)
class DirectoryRecord:
    dirhash: str
    capability: str
    last_uploaded: datetime | None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _format_ts(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _connect(db_path: Path, *, readonly: bool = False) -> sqlite3.Connection:
    if readonly:
        db_uri = f"file:{db_path.as_posix()}?mode=ro"
        conn = sqlite3.connect(
            db_uri,
            uri=True,
            isolation_level=None,
            check_same_thread=False,
        )
    else:
        conn = sqlite3.connect(
            db_path,
            isolation_level=None,
            check_same_thread=False,
        )
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.OperationalError as exc:
        if "readonly" not in str(exc).lower():
            raise
    conn.execute("PRAGMA synchronous = NORMAL;")
    conn.execute("PRAGMA busy_timeout = 5000;")
    conn.execute("PRAGMA foreign_keys = ON;")
    if readonly:
        conn.execute("PRAGMA query_only = ON;")
    return conn


def _table_exists(conn: sqlite3.Connection, table: str) -> bool:
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


def _stored_version(conn: sqlite3.Connection) -> int | None:
    if not _table_exists(conn, "version"):
        return None
    row = conn.execute("SELECT version FROM version LIMIT 1").fetchone()
    return int(row["version"]) if row is not None else None


def _schema_needs_reset(conn: sqlite3.Connection) -> bool:
    version = _stored_version(conn)
    if version is None:
        return any(_table_exists(conn, table) for table in _TABLES)
    return version != SCHEMA_VERSION


def _reset_schema(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA foreign_keys = OFF;")
    conn.executescript(
        """
        DROP TABLE IF EXISTS local_files;
        DROP TABLE IF EXISTS last_upload;
        DROP TABLE IF EXISTS caps;
        DROP TABLE IF EXISTS directories;
        DROP TABLE IF EXISTS version;
        """
    )
    conn.execute("PRAGMA foreign_keys = ON;")


def _ensure_schema(conn: sqlite3.Connection) -> None:
    if _schema_needs_reset(conn):
        _reset_schema(conn)
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS version (
            version INTEGER PRIMARY KEY NOT NULL
        );

        CREATE TABLE IF NOT EXISTS caps (
            fileid INTEGER PRIMARY KEY AUTOINCREMENT,
            filecap TEXT
        );

        CREATE TABLE IF NOT EXISTS local_files (
            path TEXT PRIMARY KEY NOT NULL,
            size INTEGER NOT NULL,
            mtime INTEGER NOT NULL,
            ctime INTEGER NOT NULL,
            fileid INTEGER NOT NULL REFERENCES caps(fileid)
        );

        CREATE TABLE IF NOT EXISTS last_upload (
            fileid INTEGER PRIMARY KEY NOT NULL REFERENCES caps(fileid),
            last_uploaded TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS directories (
            dirhash TEXT PRIMARY KEY NOT NULL,
            dircap TEXT NOT NULL,
            last_uploaded TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_caps_filecap ON caps(filecap);
        """
    )
    conn.execute(
        "INSERT OR IGNORE INTO version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )


class BackupDB:
    """Owns the SQLite connection shared by every store in a backup run.

    Open it at the start of a run and close it at the end (or use it as a
    context manager). Statements are serialized through one re-entrant lock,
    so a :meth:`transaction` blocks readers until it commits or rolls back.
    """

    def __init__(self, path: Path | str, *, readonly: bool = False) -> None:
        self.path = Path(path).expanduser()
        self.readonly = readonly
        self._lock = RLock()
        self._conn: sqlite3.Connection | None = None
        self.files = FileStateCache(self)
        self.caps = CapabilityStore(self)
        self.uploads = UploadLedger(self)
        self.directories = DirectoryStore(self)

    def open(self) -> "BackupDB":
        if self._conn is not None:
            return self
        if self.readonly:
            if not self.path.exists():
                raise FileNotFoundError(self.path)
        else:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        conn = _connect(self.path, readonly=self.readonly)
        if not self.readonly:
            _ensure_schema(conn)
        self._conn = conn
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "BackupDB":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError(f"Backup database is not open: {self.path}")
        return self._conn

    def execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            return self.conn.execute(sql, params)

    def fetchone(self, sql: str, params: tuple = ()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    def fetchall(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed writes as one all-or-nothing unit."""

        with self._lock:
            conn = self.conn
            if conn.in_transaction:
                # Already inside a write set; join it.
                yield conn
                return
            conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK;")
                raise
            conn.execute("COMMIT;")

    # Diagnostics -----------------------------------------------------------

    def describe_path(self, path: str) -> dict[str, object] | None:
        """Return what backs *path*: its state record, capability and last upload."""

        record = self.files.lookup(path)
        if record is None:
            return None
        last = self.uploads.last_uploaded(record.identity)
        return {
            "path": record.path,
            "size": record.size,
            "mtime": record.mtime,
            "ctime": record.ctime,
            "identity": record.identity,
            "capability": self.caps.get(record.identity),
            "last_uploaded": last.isoformat() if last else None,
        }

    def describe_identity(self, identity: int) -> dict[str, object] | None:
        capability = self.caps.get(identity)
        if capability is None:
            return None
        last = self.uploads.last_uploaded(identity)
        rows = self.fetchall(
            "SELECT path FROM local_files WHERE fileid = ? ORDER BY path",
            (identity,),
        )
        return {
            "identity": identity,
            "capability": capability,
            "last_uploaded": last.isoformat() if last else None,
            "paths": [row["path"] for row in rows],
        }

    def stats(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for table in _TABLES:
            row = self.fetchone(f"SELECT COUNT(*) AS total FROM {table}")
            counts[table] = int(row["total"]) if row is not None else 0
        return counts


class FileStateCache:
    """Last observed stat metadata per absolute path."""

    def __init__(self, db: BackupDB) -> None:
        self._db = db

    def lookup(self, path: str) -> FileStateRecord | None:
        row = self._db.fetchone(
            "SELECT path, size, mtime, ctime, fileid FROM local_files WHERE path = ?",
            (path,),
        )
        if row is None:
            return None
        return FileStateRecord(
            path=row["path"],
            size=int(row["size"]),
            mtime=int(row["mtime"]),
            ctime=int(row["ctime"]),
            identity=int(row["fileid"]),
        )

    def store(
        self,
        path: str,
        size: int,
        mtime: int,
        ctime: int,
        identity: int,
    ) -> None:
        if size < 0:
            raise ValueError(f"size must be non-negative, got {size}")
        self._db.execute(
            """
            INSERT INTO local_files (path, size, mtime, ctime, fileid)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET
                size = excluded.size,
                mtime = excluded.mtime,
                ctime = excluded.ctime,
                fileid = excluded.fileid
            """,
            (path, size, mtime, ctime, identity),
        )


class CapabilityStore:
    """One immutable capability per file identity."""

    def __init__(self, db: BackupDB) -> None:
        self._db = db

    def allocate_identity(self) -> int:
        cursor = self._db.execute("INSERT INTO caps (filecap) VALUES (NULL)")
        return int(cursor.lastrowid)

    def get(self, identity: int) -> str | None:
        row = self._db.fetchone(
            "SELECT filecap FROM caps WHERE fileid = ?",
            (identity,),
        )
        if row is None:
            return None
        return row["filecap"]

    def put(self, identity: int, capability: str) -> None:
        if not capability:
            raise ValueError("capability must not be empty")
        with self._db.transaction():
            row = self._db.fetchone(
                "SELECT filecap FROM caps WHERE fileid = ?",
                (identity,),
            )
            if row is None:
                self._db.execute(
                    "INSERT INTO caps (fileid, filecap) VALUES (?, ?)",
                    (identity, capability),
                )
                return
            existing = row["filecap"]
            if existing is None:
                self._db.execute(
                    "UPDATE caps SET filecap = ? WHERE fileid = ?",
                    (capability, identity),
                )
                return
            if existing != capability:
                raise IdentityConflict(identity, existing, capability)

    def identities_for(self, capability: str) -> list[int]:
        rows = self._db.fetchall(
            "SELECT fileid FROM caps WHERE filecap = ? ORDER BY fileid",
            (capability,),
        )
        return [int(row["fileid"]) for row in rows]


class UploadLedger:
    """Last confirmed upload time per file identity."""

    def __init__(self, db: BackupDB) -> None:
        self._db = db

    def record(self, identity: int, when: datetime | None = None) -> None:
        stamp = _format_ts(when or utcnow())
        self._db.execute(
            """
            INSERT INTO last_upload (fileid, last_uploaded) VALUES (?, ?)
            ON CONFLICT(fileid) DO UPDATE SET last_uploaded = excluded.last_uploaded
            """,
            (identity, stamp),
        )

    def last_uploaded(self, identity: int) -> datetime | None:
        row = self._db.fetchone(
            "SELECT last_uploaded FROM last_upload WHERE fileid = ?",
            (identity,),
        )
        if row is None:
            return None
        return _parse_ts(row["last_uploaded"])


class DirectoryStore:
    """Directory capabilities keyed by the hash of their listing."""

    def __init__(self, db: BackupDB) -> None:
        self._db = db

    def lookup(self, dirhash: str) -> DirectoryRecord | None:
        row = self._db.fetchone(
            "SELECT dirhash, dircap, last_uploaded FROM directories WHERE dirhash = ?",
            (dirhash,),
        )
        if row is None:
            return None
        return DirectoryRecord(
            dirhash=row["dirhash"],
            capability=row["dircap"],
            last_uploaded=_parse_ts(row["last_uploaded"]),
        )

    def store(
        self,
        dirhash: str,
        capability: str,
        when: datetime | None = None,
    ) -> None:
        self._db.execute(
            """
            INSERT INTO directories (dirhash, dircap, last_uploaded) VALUES (?, ?, ?)
            ON CONFLICT(dirhash) DO UPDATE SET
                dircap = excluded.dircap,
                last_uploaded = excluded.last_uploaded
            """,
            (dirhash, capability, _format_ts(when or utcnow())),
        )


def default_db_path(config_dir: Path) -> Path:
    return config_dir / DB_FILENAME
