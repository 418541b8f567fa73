"""Rich tables for the read-only database commands."""

from __future__ import annotations

from typing import Mapping

from rich.table import Table

from .text import Messages, Styles

# (unicode, ascii) marker per store state
_MARKERS = {True: ("●", "*"), False: ("○", "-")}


def _encodable(text: str, encoding: str | None) -> bool:
    try:
        text.encode(encoding or "ascii")
    except (LookupError, UnicodeEncodeError):
        return False
    return True


def store_marker(populated: bool, encoding: str | None = None) -> str:
    fancy, plain = _MARKERS[populated]
    mark = fancy if _encodable(fancy, encoding) else plain
    style = Styles.SUCCESS if populated else Styles.INFO
    return f"[{style}]{mark}[/{style}]"


def stats_table(counts: Mapping[str, int], encoding: str | None = None) -> Table:
    """One row per store with its row count; empty stores are dimmed."""
    table = Table(title=Messages.TABLE_STATS_TITLE, header_style=Styles.TABLE_HEADER)
    table.add_column(Messages.TABLE_HEADER_STORE)
    table.add_column(Messages.TABLE_HEADER_ROWS, justify="right")
    for store, total in counts.items():
        table.add_row(f"{store_marker(total > 0, encoding)} {store}", str(total))
    return table


def fields_table(title: str, fields: Mapping[str, object]) -> Table:
    table = Table(title=title, header_style=Styles.TABLE_HEADER)
    table.add_column(Messages.TABLE_HEADER_FIELD, style=Styles.TITLE)
    table.add_column(Messages.TABLE_HEADER_VALUE, overflow="fold")
    for key, value in fields.items():
        if isinstance(value, list):
            value = "\n".join(str(item) for item in value) or "-"
        table.add_row(key, "-" if value is None else str(value))
    return table
