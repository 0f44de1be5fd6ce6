"""Backup set identifiers and the on-disk artifact naming convention."""
from __future__ import annotations

import re
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Tuple

from .types import Artifact, ArtifactKind

IDENTIFIER_PREFIX = "backup-"
DEFAULT_ATTACHMENT_DIRNAME = "attachments"

# Order matters: the exporter writes artifacts in this order and the cleaner
# removes them in reverse.
ARTIFACT_SUFFIXES: Dict[ArtifactKind, str] = {
    ArtifactKind.ROLES: "-roles.sql",
    ArtifactKind.SCHEMA: "-schema.sql",
    ArtifactKind.DATA: "-data.sql",
    ArtifactKind.MIGRATION_LEDGER: "-applied-migrations.txt",
    ArtifactKind.ATTACHMENTS: "-attachments",
    ArtifactKind.MANIFEST: "-manifest.json",
}

_IDENTIFIER_RE = re.compile(r"^backup-\d{4}-\d{2}-\d{2}-\d{6}$")
_FILENAME_RE = re.compile(
    r"^(?P<identifier>backup-\d{4}-\d{2}-\d{2}-\d{6})"
    r"(?P<suffix>-roles\.sql|-schema\.sql|-data\.sql|-applied-migrations\.txt|-attachments|-manifest\.json)$"
)
_KIND_BY_SUFFIX = {suffix: kind for kind, suffix in ARTIFACT_SUFFIXES.items()}


def new_identifier(now: Optional[datetime] = None) -> str:
    """Return ``backup-YYYY-MM-DD-HHMMSS`` for *now* (UTC when not given)."""

    moment = now or datetime.now(timezone.utc)
    return IDENTIFIER_PREFIX + moment.strftime("%Y-%m-%d-%H%M%S")


def is_identifier(value: str) -> bool:
    return bool(_IDENTIFIER_RE.match(value or ""))


def artifact_paths(directory: Path, identifier: str) -> List[Artifact]:
    if not is_identifier(identifier):
        raise ValueError(f"not a backup identifier: {identifier!r}")
    return [
        Artifact(kind=kind, location=Path(directory) / f"{identifier}{suffix}")
        for kind, suffix in ARTIFACT_SUFFIXES.items()
    ]


def artifact_path(directory: Path, identifier: str, kind: ArtifactKind) -> Path:
    return Path(directory) / f"{identifier}{ARTIFACT_SUFFIXES[kind]}"


def split_filename(filename: str) -> Optional[Tuple[str, ArtifactKind]]:
    match = _FILENAME_RE.match(filename)
    if not match:
        return None
    return match.group("identifier"), _KIND_BY_SUFFIX[match.group("suffix")]


def attachment_dirname(root: str) -> str:
    """Folder name a copied attachment root gets inside ``<id>-attachments``."""

    return PurePosixPath(root).name or DEFAULT_ATTACHMENT_DIRNAME


def parse_identifier(filename: str) -> Optional[str]:
    """Return the identifier embedded in an artifact filename, else ``None``."""

    parts = split_filename(filename)
    return parts[0] if parts else None


__all__ = [
    "ARTIFACT_SUFFIXES",
    "DEFAULT_ATTACHMENT_DIRNAME",
    "IDENTIFIER_PREFIX",
    "attachment_dirname",
    "artifact_path",
    "artifact_paths",
    "is_identifier",
    "new_identifier",
    "parse_identifier",
    "split_filename",
]
