"""lafsbackup package initialization."""

from __future__ import annotations

from .backupdb import (
    BackupDB,
    CapabilityStore,
    FileStat,
    FileStateCache,
    FileStateRecord,
    UploadLedger,
)
from .client import TahoeClient
from .errors import BackendUnavailable, BackupError, IdentityConflict, TransientIOError
from .services.backup_service import BackupReport, BackupRun, run_backup
from .services.detector_service import ChangeDetector, Outcome, Resolution
from .services.directory_service import DirectoryCapBuilder, listing_hash

__all__ = [
    "__version__",
    "BackendUnavailable",
    "BackupDB",
    "BackupError",
    "BackupReport",
    "BackupRun",
    "CapabilityStore",
    "ChangeDetector",
    "DirectoryCapBuilder",
    "FileStat",
    "FileStateCache",
    "FileStateRecord",
    "IdentityConflict",
    "Outcome",
    "Resolution",
    "TahoeClient",
    "TransientIOError",
    "UploadLedger",
    "get_version",
    "listing_hash",
    "run_backup",
]

__version__ = "0.3.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
