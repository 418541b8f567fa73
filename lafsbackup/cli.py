"""Command line interface for lafsbackup."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from . import __version__
from .backupdb import BackupDB
from .client import TahoeClient
from .config import load_config, resolve_database_path, resolve_node_url
from .errors import BackupError
from .output import fields_table, stats_table
from .services.backup_service import BackupReport, link_archive, run_backup
from .services.config_service import apply_config_updates, get_config_snapshot
from .text import Messages, Styles
from .utils import normalize_exclude_patterns, path_key, resolve_directory

console = Console()

app = typer.Typer(
    help=Messages.APP_HELP,
    no_args_is_help=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _styled(text: str, style: str) -> str:
    return f"[{style}]{text}[/{style}]"


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"lafs-backup v{__version__}")
        raise typer.Exit()


def _parse_boolean(value: str) -> bool:
    token = value.strip().lower()
    if token in {"1", "true", "t", "yes", "y", "on"}:
        return True
    if token in {"0", "false", "f", "no", "n", "off"}:
        return False
    raise ValueError(Messages.ERROR_BOOLEAN_INVALID.format(value=value))


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help=Messages.HELP_VERBOSE,
    ),
) -> None:
    """Global options."""
    _configure_logging(verbose)


def _print_report(report: BackupReport) -> None:
    console.print(
        _styled(
            Messages.INFO_BACKUP_SUMMARY.format(
                reused=report.files_reused,
                uploaded=report.files_uploaded,
                renewed=report.files_renewed,
                dirs_reused=report.dirs_reused,
                dirs_uploaded=report.dirs_uploaded,
                skipped=len(report.skipped),
                failed=len(report.failures),
            ),
            Styles.INFO,
        )
    )
    if not report.failures:
        return
    table = Table(title=Messages.TABLE_FAILURES_TITLE, header_style=Styles.TABLE_HEADER)
    table.add_column(Messages.TABLE_HEADER_PATH, overflow="fold")
    table.add_column(Messages.TABLE_HEADER_KIND)
    table.add_column(Messages.TABLE_HEADER_ERROR, overflow="fold")
    for failure in report.failures:
        table.add_row(failure.path, failure.kind, failure.message)
    console.print(table)


@app.command()
def backup(
    path: Path = typer.Argument(..., help=Messages.HELP_BACKUP_PATH),
    target: str = typer.Argument(..., help=Messages.HELP_BACKUP_TARGET),
    threads: int | None = typer.Option(
        None,
        "--threads",
        "-t",
        help=Messages.HELP_THREADS,
    ),
    database: Path | None = typer.Option(
        None,
        "--database",
        "-d",
        help=Messages.HELP_DATABASE,
    ),
    exclude: list[str] | None = typer.Option(
        None,
        "--exclude",
        "-x",
        help=Messages.HELP_EXCLUDE,
    ),
    node_url: str | None = typer.Option(
        None,
        "--node-url",
        help=Messages.HELP_NODE_URL,
    ),
) -> None:
    """Upload a folder and link it as the latest archive under TARGET."""
    config = load_config()
    try:
        directory = resolve_directory(path)
        node = resolve_node_url(config, node_url)
    except (OSError, ValueError) as exc:
        console.print(_styled(str(exc), Styles.ERROR))
        raise typer.Exit(code=1)
    thread_count = threads if threads and threads > 0 else config.threads
    excludes = normalize_exclude_patterns([*config.excludes, *(exclude or [])])
    db_path = resolve_database_path(config, database)

    console.print(
        _styled(Messages.INFO_BACKUP_RUNNING.format(path=directory, node=node), Styles.INFO)
    )
    with Progress(
        SpinnerColumn(),
        TextColumn("{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        tasks: dict[str, int] = {}

        def on_progress(phase: str, current: int, total: int) -> None:
            task_id = tasks.get(phase)
            if task_id is None:
                task_id = progress.add_task(phase, total=total or None)
                tasks[phase] = task_id
            progress.update(task_id, completed=current, total=total or None)

        try:
            with BackupDB(db_path) as db, TahoeClient(node, timeout=config.timeout) as client:
                report = run_backup(
                    directory,
                    db=db,
                    client=client,
                    threads=thread_count,
                    exclude_patterns=excludes,
                    ctime_policy=config.ctime_policy,
                    reuse_identity=config.reuse_identity,
                    reupload_after_days=config.reupload_after_days,
                    on_progress=on_progress,
                )
                archive = None
                if report.root_capability is not None:
                    try:
                        archive = link_archive(client, target, report.root_capability)
                    except BackupError as exc:
                        console.print(
                            _styled(
                                Messages.ERROR_ATTACH_FAILED.format(target=target, reason=exc),
                                Styles.ERROR,
                            )
                        )
                        raise typer.Exit(code=1)
        except (OSError, sqlite3.Error) as exc:
            console.print(_styled(Messages.ERROR_BACKUP_FAILED.format(reason=exc), Styles.ERROR))
            raise typer.Exit(code=1)

    _print_report(report)
    if report.root_capability is None:
        console.print(_styled(Messages.ERROR_ROOT_UNRESOLVED, Styles.ERROR))
        raise typer.Exit(code=1)
    console.print(
        _styled(Messages.INFO_BACKUP_ROOT.format(cap=report.root_capability), Styles.SUCCESS)
    )
    console.print(_styled(Messages.INFO_BACKUP_LINKED.format(archive=archive), Styles.SUCCESS))
    if report.failures:
        raise typer.Exit(code=1)


def _open_readonly(database: Path | None) -> BackupDB:
    db_path = resolve_database_path(load_config(), database)
    if not db_path.exists():
        console.print(_styled(Messages.ERROR_DATABASE_MISSING.format(path=db_path), Styles.ERROR))
        raise typer.Exit(code=1)
    return BackupDB(db_path, readonly=True)


@app.command(help=Messages.HELP_LOOKUP_PATH)
def lookup(
    path: Path = typer.Argument(...),
    database: Path | None = typer.Option(None, "--database", "-d", help=Messages.HELP_DATABASE),
) -> None:
    key = path_key(path.expanduser().resolve())
    with _open_readonly(database) as db:
        details = db.describe_path(key)
    if details is None:
        console.print(_styled(Messages.INFO_LOOKUP_NONE.format(path=key), Styles.WARNING))
        raise typer.Exit(code=1)
    console.print(fields_table(key, details))


@app.command(help=Messages.HELP_IDENTITY)
def identity(
    identity_id: int = typer.Argument(..., metavar="ID"),
    database: Path | None = typer.Option(None, "--database", "-d", help=Messages.HELP_DATABASE),
) -> None:
    with _open_readonly(database) as db:
        details = db.describe_identity(identity_id)
    if details is None:
        console.print(
            _styled(Messages.INFO_IDENTITY_NONE.format(identity=identity_id), Styles.WARNING)
        )
        raise typer.Exit(code=1)
    console.print(fields_table(f"Identity {identity_id}", details))


@app.command(help=Messages.HELP_STATS)
def stats(
    database: Path | None = typer.Option(None, "--database", "-d", help=Messages.HELP_DATABASE),
) -> None:
    with _open_readonly(database) as db:
        counts = db.stats()
    console.print(stats_table(counts, console.encoding))


@app.command()
def config(
    set_node_url_option: str | None = typer.Option(
        None,
        "--set-node-url",
        help=Messages.HELP_SET_NODE_URL,
    ),
    set_database_option: str | None = typer.Option(
        None,
        "--set-database",
        help=Messages.HELP_SET_DATABASE,
    ),
    set_threads_option: int | None = typer.Option(
        None,
        "--set-threads",
        help=Messages.HELP_SET_THREADS,
    ),
    set_ctime_policy_option: str | None = typer.Option(
        None,
        "--set-ctime-policy",
        help=Messages.HELP_SET_CTIME_POLICY,
    ),
    set_reuse_identity_option: str | None = typer.Option(
        None,
        "--set-reuse-identity",
        help=Messages.HELP_SET_REUSE_IDENTITY,
    ),
    set_reupload_after_option: int | None = typer.Option(
        None,
        "--set-reupload-after-days",
        help=Messages.HELP_SET_REUPLOAD_AFTER,
    ),
    add_exclude_option: list[str] | None = typer.Option(
        None,
        "--add-exclude",
        help=Messages.HELP_ADD_EXCLUDE,
    ),
    clear_excludes_option: bool = typer.Option(
        False,
        "--clear-excludes",
        help=Messages.HELP_CLEAR_EXCLUDES,
    ),
    show: bool = typer.Option(
        False,
        "--show",
        help=Messages.HELP_SHOW_CONFIG,
    ),
) -> None:
    """Manage lafs-backup configuration."""
    try:
        reuse_identity = (
            _parse_boolean(set_reuse_identity_option)
            if set_reuse_identity_option is not None
            else None
        )
        result = apply_config_updates(
            node_url=set_node_url_option,
            database=set_database_option,
            threads=set_threads_option,
            ctime_policy=set_ctime_policy_option,
            reuse_identity=reuse_identity,
            reupload_after_days=set_reupload_after_option,
            excludes=add_exclude_option,
            clear_exclude_patterns=clear_excludes_option,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from exc

    if result.changed:
        console.print(_styled(Messages.INFO_CONFIG_SAVED, Styles.SUCCESS))

    if show or not result.changed:
        cfg = get_config_snapshot()
        console.print(
            _styled(
                Messages.INFO_CONFIG_SUMMARY.format(
                    node_url=cfg.node_url,
                    database=resolve_database_path(cfg),
                    threads=cfg.threads,
                    timeout=cfg.timeout,
                    excludes=", ".join(cfg.excludes) or "none",
                    ctime_policy=cfg.ctime_policy,
                    reuse_identity="yes" if cfg.reuse_identity else "no",
                    reupload_after_days=cfg.reupload_after_days,
                ),
                Styles.INFO,
            )
        )


def run() -> None:
    """Entry point wrapper allowing ``python -m lafsbackup.cli``."""
    app()


if __name__ == "__main__":  # pragma: no cover - manual execution
    run()
