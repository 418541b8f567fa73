"""Centralized user-facing text for the lafsbackup CLI."""

from __future__ import annotations

class Styles:
    ERROR = "red"
    WARNING = "yellow"
    SUCCESS = "green"
    INFO = "dim"
    TITLE = "bold cyan"
    TABLE_HEADER = "bold magenta"


class Messages:
    APP_HELP = "lafs-backup – incremental backups into a Tahoe-LAFS grid."
    HELP_BACKUP_PATH = "The folder to back up."
    HELP_BACKUP_TARGET = "Mutable directory capability the archive is linked into."
    HELP_THREADS = "Number of concurrent file uploads."
    HELP_DATABASE = "Location of the backup state database."
    HELP_EXCLUDE = "Ignore files matching a gitignore-style pattern (repeatable)."
    HELP_NODE_URL = "Base URL of the Tahoe-LAFS web gateway."
    HELP_VERBOSE = "Log every per-path decision."
    HELP_LOOKUP_PATH = "Show the capability recorded for a local path."
    HELP_IDENTITY = "Show the capability and last upload of a file identity."
    HELP_STATS = "Show how many rows each store of the backup database holds."
    HELP_SET_NODE_URL = "Persist the Tahoe-LAFS gateway URL."
    HELP_SET_DATABASE = "Persist the backup database location."
    HELP_SET_THREADS = "Set the default number of concurrent uploads."
    HELP_SET_CTIME_POLICY = "Set how ctime-only changes are treated (strict or relaxed)."
    HELP_SET_REUSE_IDENTITY = "Keep a file identity when a re-upload yields the same capability (true/false)."
    HELP_SET_REUPLOAD_AFTER = "Re-upload unchanged files last uploaded more than N days ago (0 = never)."
    HELP_ADD_EXCLUDE = "Add a default exclude pattern (repeatable)."
    HELP_CLEAR_EXCLUDES = "Remove all default exclude patterns."
    HELP_SHOW_CONFIG = "Show current configuration."

    ERROR_NODE_URL_INVALID = "Invalid node URL '{value}'. Expected http(s)://host:port."
    ERROR_THREADS_INVALID = "Thread count must be greater than 0."
    ERROR_CTIME_POLICY_INVALID = "Unsupported ctime policy '{value}'. Allowed: {allowed}."
    ERROR_REUPLOAD_NEGATIVE = "Re-upload interval must be >= 0."
    ERROR_BOOLEAN_INVALID = "Invalid boolean value '{value}'. Use true/false."
    ERROR_DATABASE_MISSING = "No backup database found at {path}."
    ERROR_BACKUP_FAILED = "Backup failed: {reason}"
    ERROR_ROOT_UNRESOLVED = "The root directory could not be uploaded; nothing was linked."
    ERROR_ATTACH_FAILED = "Failed to link archive into {target}: {reason}"

    INFO_BACKUP_RUNNING = "Backing up {path} through {node}..."
    INFO_BACKUP_ROOT = "Root capability: {cap}"
    INFO_BACKUP_LINKED = "Linked archive as '{archive}' and 'Latest'."
    INFO_BACKUP_SUMMARY = (
        "Files reused: {reused}, uploaded: {uploaded}, renewed: {renewed}\n"
        "Directories reused: {dirs_reused}, uploaded: {dirs_uploaded}\n"
        "Skipped: {skipped}, failed: {failed}"
    )
    INFO_LOOKUP_NONE = "No record for {path}."
    INFO_IDENTITY_NONE = "No capability recorded for identity {identity}."
    INFO_CONFIG_SAVED = "Configuration updated."
    INFO_CONFIG_SUMMARY = (
        "Node URL: {node_url}\n"
        "Database: {database}\n"
        "Threads: {threads}\n"
        "Timeout: {timeout}s\n"
        "Excludes: {excludes}\n"
        "ctime policy: {ctime_policy}\n"
        "Reuse identity: {reuse_identity}\n"
        "Re-upload after days: {reupload_after_days}"
    )

    TABLE_FAILURES_TITLE = "Paths that could not be backed up"
    TABLE_HEADER_PATH = "Path"
    TABLE_HEADER_ERROR = "Error"
    TABLE_HEADER_KIND = "Kind"
    TABLE_STATS_TITLE = "Backup database"
    TABLE_HEADER_STORE = "Store"
    TABLE_HEADER_ROWS = "Rows"
    TABLE_HEADER_FIELD = "Field"
    TABLE_HEADER_VALUE = "Value"
