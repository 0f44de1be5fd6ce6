"""Strip non-portable internal tables from a data-only dump.

The dump is scanned line by line. A ``COPY "schema"."table" ... FROM stdin;``
header opens a table-data section which ends at the ``\\.`` marker. Sections
for deny-listed tables are dropped whole; everything else is copied through
byte for byte, so running the filter on its own output changes nothing.
"""
from __future__ import annotations

import enum
import os
import re
from pathlib import Path
from typing import Callable, Dict, Iterable, Iterator, Optional, Tuple

from .errors import ArtifactError
from .types import FilterStats

_COPY_HEADER_RE = re.compile(
    r'^COPY\s+"?(?P<schema>[^".\s]+)"?\."?(?P<table>[^"\s(]+)"?(?:\s*\(.*\))?\s+FROM\s+stdin;\s*$'
)
_END_OF_COPY = "\\."
# Undecodable bytes round-trip unchanged.
_ERRORS = "surrogateescape"


class FilterState(enum.Enum):
    PASSTHROUGH = "passthrough"
    SKIPPING = "skipping"


def parse_copy_header(line: str) -> Optional[Tuple[str, str]]:
    match = _COPY_HEADER_RE.match(line.rstrip("\r\n"))
    if not match:
        return None
    return match.group("schema"), match.group("table")


def _is_end_marker(line: str) -> bool:
    return line.rstrip("\r\n") == _END_OF_COPY


class DumpFilter:
    """Two-state machine; ``feed`` returns the line to emit or ``None``."""

    def __init__(self, denied_tables: Iterable[str]) -> None:
        self._denied = frozenset(name.strip() for name in denied_tables if name and name.strip())
        self.state = FilterState.PASSTHROUGH
        self.stats = FilterStats()
        self._handlers: Dict[FilterState, Callable[[str], Tuple[FilterState, bool]]] = {
            FilterState.PASSTHROUGH: self._on_passthrough,
            FilterState.SKIPPING: self._on_skipping,
        }

    def is_denied(self, schema: str, table: str) -> bool:
        return f"{schema}.{table}" in self._denied

    def _on_passthrough(self, line: str) -> Tuple[FilterState, bool]:
        header = parse_copy_header(line)
        if header is None:
            return FilterState.PASSTHROUGH, True
        schema, table = header
        if self.is_denied(schema, table):
            self.stats.skipped_sections += 1
            self.stats.skipped_tables.append(f"{schema}.{table}")
            return FilterState.SKIPPING, False
        self.stats.kept_sections += 1
        return FilterState.PASSTHROUGH, True

    def _on_skipping(self, line: str) -> Tuple[FilterState, bool]:
        if _is_end_marker(line):
            return FilterState.PASSTHROUGH, False
        return FilterState.SKIPPING, False

    def feed(self, line: str) -> Optional[str]:
        self.state, emit = self._handlers[self.state](line)
        return line if emit else None

    def finish(self) -> FilterStats:
        if self.state is FilterState.SKIPPING:
            table = self.stats.skipped_tables[-1] if self.stats.skipped_tables else "?"
            raise ArtifactError(f"data dump ends inside the COPY section for {table}; dump is truncated")
        return self.stats


def filter_lines(lines: Iterable[str], denied_tables: Iterable[str]) -> Iterator[str]:
    machine = DumpFilter(denied_tables)
    for line in lines:
        out = machine.feed(line)
        if out is not None:
            yield out
    machine.finish()


def filter_dump_file(path: Path, denied_tables: Iterable[str]) -> FilterStats:
    """Filter *path* in place via a temporary sibling and an atomic rename."""

    tmp_path = path.with_name(path.name + ".filtering")
    machine = DumpFilter(denied_tables)
    try:
        with path.open("r", encoding="utf-8", errors=_ERRORS, newline="") as src, tmp_path.open(
            "w", encoding="utf-8", errors=_ERRORS, newline=""
        ) as dst:
            for line in src:
                out = machine.feed(line)
                if out is not None:
                    dst.write(out)
        stats = machine.finish()
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return stats


def find_denied_sections(path: Path, denied_tables: Iterable[str]) -> list[str]:
    """Names of deny-listed tables that still have a data section in *path*."""

    machine = DumpFilter(denied_tables)
    found: list[str] = []
    with path.open("r", encoding="utf-8", errors=_ERRORS, newline="") as handle:
        for line in handle:
            header = parse_copy_header(line)
            if header and machine.is_denied(*header):
                found.append(f"{header[0]}.{header[1]}")
    return found


__all__ = [
    "DumpFilter",
    "FilterState",
    "filter_dump_file",
    "filter_lines",
    "find_denied_sections",
    "parse_copy_header",
]
