"""Anchored markdown table parsing for model answers.

Model output is untrusted: every function here returns an empty result on
malformed input instead of raising.
"""

from __future__ import annotations

import re
from typing import Sequence

__all__ = [
    "find_anchor",
    "split_row",
    "is_separator_row",
    "is_table_line",
    "parse_markdown_table",
]

_UNESCAPED_PIPE = re.compile(r"(?<!\\)\|")
_SEPARATOR_CELL = re.compile(r"^:?-+:?$")


def find_anchor(lines: Sequence[str], anchor: str) -> int | None:
    """Return the index of the first line starting with ``anchor``, ignoring case."""
    needle = anchor.strip().lower()
    if not needle:
        return None
    for index, line in enumerate(lines):
        if line.strip().lower().startswith(needle):
            return index
    return None


def is_table_line(line: str) -> bool:
    return bool(_UNESCAPED_PIPE.search(line.strip()))


def split_row(line: str) -> list[str]:
    """Split a pipe row into trimmed cells, honouring ``\\|`` escapes."""
    stripped = line.strip()
    cells = _UNESCAPED_PIPE.split(stripped)
    if stripped.startswith("|"):
        cells = cells[1:]
    if stripped.endswith("|") and not stripped.endswith("\\|"):
        cells = cells[:-1]
    return [cell.replace("\\|", "|").strip() for cell in cells]


def is_separator_row(cells: Sequence[str]) -> bool:
    return bool(cells) and all(_SEPARATOR_CELL.match(cell.replace(" ", "")) for cell in cells)


def parse_markdown_table(text: str, anchor: str, *, min_cells: int = 6) -> list[list[str]]:
    """Return the data rows of the first table following ``anchor``.

    The header row (a row immediately followed by a separator row) and
    separator rows are dropped, as are rows with fewer than ``min_cells``
    cells. The table ends at the first non-table line after it starts; a
    heading reached before any table means there is no table.
    """
    if not text or not anchor:
        return []
    lines = text.splitlines()
    start = find_anchor(lines, anchor)
    if start is None:
        return []

    raw_rows: list[list[str]] = []
    for line in lines[start + 1 :]:
        if is_table_line(line):
            raw_rows.append(split_row(line))
            continue
        if raw_rows:
            break
        if line.lstrip().startswith("#"):
            return []

    if len(raw_rows) >= 2 and is_separator_row(raw_rows[1]):
        raw_rows = raw_rows[2:]
    return [row for row in raw_rows if not is_separator_row(row) and len(row) >= min_cells]
