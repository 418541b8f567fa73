"""Global configuration management for lafsbackup."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path
from typing import Any, Dict
from urllib.parse import urlparse, urlunparse

from dotenv import load_dotenv

from .backupdb import default_db_path
from .text import Messages

DEFAULT_CONFIG_DIR = Path(os.path.expanduser("~")) / ".lafsbackup"
CONFIG_DIR = DEFAULT_CONFIG_DIR
CONFIG_FILE = CONFIG_DIR / "config.json"
_CONFIG_DIR_OVERRIDE: ContextVar[Path | None] = ContextVar(
    "lafsbackup_config_dir_override",
    default=None,
)
DEFAULT_NODE_URL = "http://127.0.0.1:3456"
DEFAULT_THREADS = 4
DEFAULT_TIMEOUT = 300.0
DEFAULT_CTIME_POLICY = "strict"
SUPPORTED_CTIME_POLICIES: tuple[str, ...] = (DEFAULT_CTIME_POLICY, "relaxed")
ENV_NODE_URL = "LAFSBACKUP_NODE_URL"


@dataclass
class Config:
    node_url: str = DEFAULT_NODE_URL
    database: str | None = None
    threads: int = DEFAULT_THREADS
    timeout: float = DEFAULT_TIMEOUT
    excludes: list[str] = field(default_factory=list)
    ctime_policy: str = DEFAULT_CTIME_POLICY
    reuse_identity: bool = False
    reupload_after_days: int = 0


def _resolve_config_dir() -> Path:
    override = _CONFIG_DIR_OVERRIDE.get()
    return override if override is not None else CONFIG_DIR


def _resolve_config_file() -> Path:
    override = _CONFIG_DIR_OVERRIDE.get()
    if override is not None:
        return override / "config.json"
    return CONFIG_FILE


@contextmanager
def config_dir_context(path: Path | str | None):
    """Temporarily override the config directory for the current context."""

    if path is None:
        yield
        return
    dir_path = Path(path).expanduser().resolve()
    if dir_path.exists() and not dir_path.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {dir_path}")
    token = _CONFIG_DIR_OVERRIDE.set(dir_path)
    try:
        yield
    finally:
        _CONFIG_DIR_OVERRIDE.reset(token)


def _coerce_ctime_policy(value: object) -> str:
    normalized = str(value or DEFAULT_CTIME_POLICY).strip().lower()
    if normalized not in SUPPORTED_CTIME_POLICIES:
        return DEFAULT_CTIME_POLICY
    return normalized


def _coerce_excludes(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def load_config() -> Config:
    config_file = _resolve_config_file()
    if not config_file.exists():
        return Config()
    raw = json.loads(config_file.read_text(encoding="utf-8"))
    return Config(
        node_url=normalize_node_url(raw.get("node_url")) or DEFAULT_NODE_URL,
        database=raw.get("database") or None,
        threads=max(int(raw.get("threads", DEFAULT_THREADS)), 1),
        timeout=float(raw.get("timeout", DEFAULT_TIMEOUT)),
        excludes=_coerce_excludes(raw.get("excludes")),
        ctime_policy=_coerce_ctime_policy(raw.get("ctime_policy")),
        reuse_identity=bool(raw.get("reuse_identity", False)),
        reupload_after_days=max(int(raw.get("reupload_after_days", 0)), 0),
    )


def save_config(config: Config) -> None:
    config_dir = _resolve_config_dir()
    config_dir.mkdir(parents=True, exist_ok=True)
    data: Dict[str, Any] = {}
    if config.node_url:
        data["node_url"] = config.node_url
    if config.database:
        data["database"] = config.database
    data["threads"] = config.threads
    data["timeout"] = config.timeout
    if config.excludes:
        data["excludes"] = list(config.excludes)
    data["ctime_policy"] = config.ctime_policy
    data["reuse_identity"] = bool(config.reuse_identity)
    data["reupload_after_days"] = config.reupload_after_days
    config_file = _resolve_config_file()
    config_file.write_text(
        json.dumps(data, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


def set_config_dir(path: Path | str | None) -> None:
    global CONFIG_DIR, CONFIG_FILE
    if path is None:
        CONFIG_DIR = DEFAULT_CONFIG_DIR
    else:
        dir_path = Path(path).expanduser().resolve()
        if dir_path.exists() and not dir_path.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {dir_path}")
        CONFIG_DIR = dir_path
    CONFIG_FILE = CONFIG_DIR / "config.json"


def resolve_database_path(config: Config, override: Path | str | None = None) -> Path:
    """Return the SQLite state file, preferring an explicit *override*."""

    if override:
        return Path(override).expanduser()
    if config.database:
        return Path(config.database).expanduser()
    return default_db_path(_resolve_config_dir())


def resolve_node_url(config: Config, override: str | None = None) -> str:
    """Pick the node URL from the CLI, the environment, then the config file."""

    if override:
        return normalize_node_url(override) or DEFAULT_NODE_URL
    load_dotenv()
    env_value = normalize_node_url(os.getenv(ENV_NODE_URL))
    if env_value:
        return env_value
    return config.node_url or DEFAULT_NODE_URL


def normalize_node_url(value: str | None) -> str | None:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    if "://" not in cleaned:
        cleaned = f"http://{cleaned}"
    parsed = urlparse(cleaned)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(Messages.ERROR_NODE_URL_INVALID.format(value=value))
    path = parsed.path.rstrip("/")
    if path.endswith("/uri"):
        path = path[: -len("/uri")]
    return urlunparse(parsed._replace(path=path, params="", query="", fragment=""))


def _update_config(**changes: Any) -> Config:
    config = load_config()
    for key, value in changes.items():
        setattr(config, key, value)
    save_config(config)
    return config


def set_node_url(value: str | None) -> None:
    _update_config(node_url=normalize_node_url(value) or DEFAULT_NODE_URL)


def set_database(value: str | None) -> None:
    _update_config(database=(value or "").strip() or None)


def set_threads(value: int) -> None:
    if value <= 0:
        raise ValueError(Messages.ERROR_THREADS_INVALID)
    _update_config(threads=value)


def set_ctime_policy(value: str) -> None:
    normalized = (value or "").strip().lower()
    if normalized not in SUPPORTED_CTIME_POLICIES:
        allowed = ", ".join(SUPPORTED_CTIME_POLICIES)
        raise ValueError(
            Messages.ERROR_CTIME_POLICY_INVALID.format(value=value, allowed=allowed)
        )
    _update_config(ctime_policy=normalized)


def set_reuse_identity(value: bool) -> None:
    _update_config(reuse_identity=bool(value))


def set_reupload_after_days(value: int) -> None:
    if value < 0:
        raise ValueError(Messages.ERROR_REUPLOAD_NEGATIVE)
    _update_config(reupload_after_days=value)


def add_excludes(patterns: list[str]) -> None:
    config = load_config()
    merged = list(config.excludes)
    for pattern in patterns:
        cleaned = pattern.strip()
        if cleaned and cleaned not in merged:
            merged.append(cleaned)
    _update_config(excludes=merged)


def clear_excludes() -> None:
    _update_config(excludes=[])
