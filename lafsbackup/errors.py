"""Error types surfaced by the backup engine.

Every error is scoped to a single path: a run records it in its report and
moves on to the next path.
"""

from __future__ import annotations


class BackupError(RuntimeError):
    """Base class for path-scoped backup failures."""

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class TransientIOError(BackupError):
    """Raised when stat or content reads fail; retried on the next run."""


class IdentityConflict(BackupError):
    """Raised when an identity already holds a different capability."""

    def __init__(
        self,
        identity: int,
        existing: str,
        attempted: str,
        *,
        path: str | None = None,
    ) -> None:
        super().__init__(
            f"Identity {identity} already maps to {existing!r}, refusing {attempted!r}",
            path=path,
        )
        self.identity = identity
        self.existing = existing
        self.attempted = attempted


class BackendUnavailable(BackupError):
    """Raised when the storage backend rejects or fails an upload."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message, path=path)
        self.status_code = status_code
