"""Rewrite absolute file URLs stored in JSON reference columns after a restore."""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from core.db import DatabaseTools, quote_ident, quote_literal

from .logs import BackupLogger
from .types import RewriteRule

DEFAULT_REWRITE_FROM = ("http://127.0.0.1:54321", "http://localhost:54321")


@dataclass(slots=True, frozen=True)
class ReferenceColumn:
    """A column holding ``{src, title}`` references.

    ``shape`` is ``object`` for a single jsonb value or ``pg_array`` for a
    ``jsonb[]`` column holding several references.
    """

    table: str
    column: str
    shape: str = "object"

    @property
    def label(self) -> str:
        return f"{self.table}.{self.column}"


REFERENCE_COLUMNS: Tuple[ReferenceColumn, ...] = (
    ReferenceColumn("contacts", "avatar"),
    ReferenceColumn("companies", "logo"),
    ReferenceColumn("sales", "avatar"),
    ReferenceColumn("contactNotes", "attachments", "pg_array"),
    ReferenceColumn("dealNotes", "attachments", "pg_array"),
)


def build_rules(prefixes: Iterable[str], target: Optional[str]) -> List[RewriteRule]:
    """One rule per source prefix; trailing slashes are normalised away."""

    if not target:
        return []
    to_prefix = target.rstrip("/")
    rules: List[RewriteRule] = []
    for prefix in prefixes:
        cleaned = (prefix or "").strip().rstrip("/")
        if cleaned and cleaned != to_prefix and all(rule.from_prefix != cleaned for rule in rules):
            rules.append(RewriteRule(from_prefix=cleaned, to_prefix=to_prefix))
    return rules


def rewrite_src(value: str, rules: Sequence[RewriteRule]) -> str:
    for rule in rules:
        if value.startswith(rule.from_prefix):
            return rule.to_prefix + value[len(rule.from_prefix):]
    return value


def rewrite_reference(value: Any, rules: Sequence[RewriteRule]) -> Tuple[Any, bool]:
    """Return ``(new_value, changed)`` for a decoded reference value.

    Dicts have their ``src`` key rewritten, lists are handled element-wise and
    anything else is returned untouched.
    """

    if isinstance(value, dict):
        src = value.get("src")
        if isinstance(src, str):
            updated = rewrite_src(src, rules)
            if updated != src:
                return {**value, "src": updated}, True
        return value, False
    if isinstance(value, list):
        changed = False
        items = []
        for item in value:
            new_item, item_changed = rewrite_reference(item, rules)
            items.append(new_item)
            changed = changed or item_changed
        return items, changed
    return value, False


def _select_sql(target: ReferenceColumn) -> str:
    column = quote_ident(target.column)
    return (
        f"SELECT id, to_json({column})::text FROM public.{quote_ident(target.table)} "
        f"WHERE {column} IS NOT NULL ORDER BY id;"
    )


def _update_sql(target: ReferenceColumn, row_id: str, value: Any) -> str:
    literal = quote_literal(json.dumps(value, ensure_ascii=False, separators=(",", ":")))
    if target.shape == "pg_array":
        expression = f"ARRAY(SELECT jsonb_array_elements({literal}::jsonb))"
    else:
        expression = f"{literal}::jsonb"
    return (
        f"UPDATE public.{quote_ident(target.table)} SET {quote_ident(target.column)} = {expression} "
        f"WHERE id = {int(row_id)};"
    )


def rewrite_urls(
    db: DatabaseTools,
    rules: Sequence[RewriteRule],
    *,
    logger: BackupLogger,
    targets: Sequence[ReferenceColumn] = REFERENCE_COLUMNS,
) -> Dict[str, int]:
    """Apply *rules* to every reference column; returns updated rows per table."""

    counts: Dict[str, int] = {}
    if not rules:
        return counts
    for target in targets:
        statements: List[str] = []
        for row in db.query(_select_sql(target)):
            if len(row) < 2:
                continue
            row_id, raw = row[0], row[1]
            try:
                decoded = json.loads(raw)
            except ValueError:
                logger.warning("rewrite_unparsable", column=target.label, id=row_id)
                continue
            updated, changed = rewrite_reference(decoded, rules)
            if changed:
                statements.append(_update_sql(target, row_id, updated))
        if statements:
            db.execute("BEGIN;\n" + "\n".join(statements) + "\nCOMMIT;\n")
        counts[target.label] = len(statements)
        logger.info("urls_rewritten", column=target.label, rows=len(statements))
    return counts


__all__ = [
    "DEFAULT_REWRITE_FROM",
    "REFERENCE_COLUMNS",
    "ReferenceColumn",
    "build_rules",
    "rewrite_reference",
    "rewrite_src",
    "rewrite_urls",
]
