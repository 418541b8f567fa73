"""Logic helpers for the `lafs-backup config` command."""

from __future__ import annotations

from dataclasses import dataclass

from ..config import (
    Config,
    add_excludes,
    clear_excludes,
    load_config,
    set_ctime_policy,
    set_database,
    set_node_url,
    set_reupload_after_days,
    set_reuse_identity,
    set_threads,
)


@dataclass(slots=True)
class ConfigUpdateResult:
    node_url_set: bool = False
    database_set: bool = False
    threads_set: bool = False
    ctime_policy_set: bool = False
    reuse_identity_set: bool = False
    reupload_after_set: bool = False
    excludes_added: bool = False
    excludes_cleared: bool = False

    @property
    def changed(self) -> bool:
        return any(
            (
                self.node_url_set,
                self.database_set,
                self.threads_set,
                self.ctime_policy_set,
                self.reuse_identity_set,
                self.reupload_after_set,
                self.excludes_added,
                self.excludes_cleared,
            )
        )


def apply_config_updates(
    *,
    node_url: str | None = None,
    database: str | None = None,
    threads: int | None = None,
    ctime_policy: str | None = None,
    reuse_identity: bool | None = None,
    reupload_after_days: int | None = None,
    excludes: list[str] | None = None,
    clear_exclude_patterns: bool = False,
) -> ConfigUpdateResult:
    """Apply config mutations and report which fields were updated."""

    result = ConfigUpdateResult()
    if node_url is not None:
        set_node_url(node_url)
        result.node_url_set = True
    if database is not None:
        set_database(database)
        result.database_set = True
    if threads is not None:
        set_threads(threads)
        result.threads_set = True
    if ctime_policy is not None:
        set_ctime_policy(ctime_policy)
        result.ctime_policy_set = True
    if reuse_identity is not None:
        set_reuse_identity(reuse_identity)
        result.reuse_identity_set = True
    if reupload_after_days is not None:
        set_reupload_after_days(reupload_after_days)
        result.reupload_after_set = True
    if clear_exclude_patterns:
        clear_excludes()
        result.excludes_cleared = True
    if excludes:
        add_excludes(excludes)
        result.excludes_added = True
    return result


def get_config_snapshot() -> Config:
    """Return the current configuration dataclass."""

    return load_config()
