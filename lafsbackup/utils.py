"""Utility helpers for filesystem access and path handling."""

from __future__ import annotations

import os
import stat as stat_module
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

FILE = "file"
DIRECTORY = "dir"
SYMLINK = "symlink"
OTHER = "other"


@dataclass(slots=True)
class TreeEntry:
    """One walked path with its raw stat metadata or the error reading it."""

    path: Path
    parent: Path | None
    kind: str
    stat: os.stat_result | None = None
    error: OSError | None = None

    @property
    def name(self) -> str:
        return self.path.name


def path_key(path: Path | str) -> str:
    """Text form of *path* that is always valid UTF-8.

    Names that are not UTF-8 on disk keep their raw bytes as ``\\xNN``
    escapes, so distinct names stay distinct.
    """
    return os.fsencode(path).decode("utf-8", "backslashreplace")


def resolve_directory(path: Path | str) -> Path:
    """Resolve and validate a user supplied directory path."""
    dir_path = Path(path).expanduser().resolve()
    if not dir_path.exists():
        raise FileNotFoundError(f"Directory does not exist: {dir_path}")
    if not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    return dir_path


def normalize_exclude_patterns(values: Iterable[str] | None) -> tuple[str, ...]:
    """Return exclude patterns with blanks and duplicates dropped, order kept."""

    if not values:
        return ()
    normalized: list[str] = []
    seen: set[str] = set()
    for raw in values:
        if raw is None:
            continue
        token = raw.strip()
        if not token or token in seen:
            continue
        seen.add(token)
        normalized.append(token)
    return tuple(normalized)


def build_exclude_spec(patterns: Iterable[str] | None):
    """Compile gitignore-style *patterns*; None when there is nothing to exclude."""

    normalized = normalize_exclude_patterns(patterns)
    if not normalized:
        return None
    from pathspec.gitignore import GitIgnoreSpec

    return GitIgnoreSpec.from_lines(normalized)


def _relative_posix(path: Path, root: Path) -> str:
    rel = path.relative_to(root)
    if rel == Path("."):
        return ""
    return rel.as_posix()


def is_excluded_path(spec, path: Path, root: Path, *, is_dir: bool) -> bool:
    if spec is None:
        return False
    rel_path = _relative_posix(path, root)
    if not rel_path:
        return False
    candidate = f"{rel_path}/" if is_dir else rel_path
    return spec.match_file(candidate)


def _kind_for(mode: int) -> str:
    if stat_module.S_ISLNK(mode):
        return SYMLINK
    if stat_module.S_ISDIR(mode):
        return DIRECTORY
    if stat_module.S_ISREG(mode):
        return FILE
    return OTHER


def walk_tree(root: Path | str, exclude_spec=None) -> Iterator[TreeEntry]:
    """Yield *root* and everything below it, parents before children.

    Symlinks are reported but never followed. A path whose stat or listing
    fails is yielded with ``error`` set so the caller can report it.
    """

    root_path = Path(root)
    try:
        root_stat = root_path.lstat()
    except OSError as exc:
        yield TreeEntry(path=root_path, parent=None, kind=OTHER, error=exc)
        return
    root_entry = TreeEntry(
        path=root_path,
        parent=None,
        kind=_kind_for(root_stat.st_mode),
        stat=root_stat,
    )
    yield root_entry
    if root_entry.kind != DIRECTORY:
        return

    pending: list[TreeEntry] = [root_entry]
    while pending:
        current = pending.pop()
        try:
            with os.scandir(current.path) as iterator:
                children = sorted(iterator, key=lambda item: item.name)
        except OSError as exc:
            current.error = exc
            continue
        for child in children:
            child_path = current.path / child.name
            try:
                child_stat = child.stat(follow_symlinks=False)
            except OSError as exc:
                yield TreeEntry(path=child_path, parent=current.path, kind=FILE, error=exc)
                continue
            kind = _kind_for(child_stat.st_mode)
            if is_excluded_path(exclude_spec, child_path, root_path, is_dir=kind == DIRECTORY):
                continue
            entry = TreeEntry(path=child_path, parent=current.path, kind=kind, stat=child_stat)
            yield entry
            if kind == DIRECTORY:
                pending.append(entry)
