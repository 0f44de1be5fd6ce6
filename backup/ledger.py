"""Applied-migration ledger captured at export and replayed at restore."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List

from core.db import quote_ident, quote_literal


def _qualified(table: str) -> str:
    return ".".join(quote_ident(part) for part in table.split("."))


def ledger_query(table: str) -> str:
    return f"SELECT version FROM {_qualified(table)} ORDER BY version ASC;"


def normalize_versions(versions: Iterable[str]) -> List[str]:
    cleaned = {str(value).strip() for value in versions if value is not None and str(value).strip()}
    return sorted(cleaned)


def write_ledger(path: Path, versions: Iterable[str]) -> List[str]:
    ordered = normalize_versions(versions)
    tmp_path = path.with_name(path.name + ".tmp")
    tmp_path.write_text("".join(f"{version}\n" for version in ordered), encoding="utf-8")
    tmp_path.replace(path)
    return ordered


def read_ledger(path: Path) -> List[str]:
    return normalize_versions(path.read_text(encoding="utf-8").splitlines())


def ledger_sync_sql(table: str, versions: Iterable[str]) -> str:
    """Replace the tracking table contents with exactly *versions*."""

    target = _qualified(table)
    statements = ["BEGIN;", f"DELETE FROM {target};"]
    ordered = normalize_versions(versions)
    if ordered:
        values = ",\n  ".join(f"({quote_literal(version)})" for version in ordered)
        statements.append(f"INSERT INTO {target} (version) VALUES\n  {values};")
    statements.append("COMMIT;")
    return "\n".join(statements) + "\n"


__all__ = ["ledger_query", "ledger_sync_sql", "normalize_versions", "read_ledger", "write_ledger"]
