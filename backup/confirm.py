"""Interactive yes/no gate in front of destructive restores."""
from __future__ import annotations

from typing import Callable, Iterable

AFFIRMATIVE = frozenset({"y", "yes"})


def confirm_restore(
    summary_lines: Iterable[str],
    *,
    input_fn: Callable[[str], str] = input,
    output: Callable[[str], None] = print,
) -> bool:
    """Print what will be destroyed and ask once; anything but yes is no."""

    for line in summary_lines:
        output(line)
    output("This action cannot be undone.")
    try:
        answer = input_fn("Type 'yes' to continue [y/N]: ")
    except EOFError:
        return False
    return answer.strip().lower() in AFFIRMATIVE


def destruction_summary(identifier: str, *, database: str, attachments: bool, storage_container: str) -> list[str]:
    lines = [
        f"Restoring backup {identifier} will:",
        f"  - drop the public schema of {database} and replace all of its data",
        "  - truncate auth users, sessions and identities and storage bucket metadata",
    ]
    if attachments:
        lines.append(f"  - replace every attachment stored in {storage_container}")
    return lines


__all__ = ["confirm_restore", "destruction_summary"]
