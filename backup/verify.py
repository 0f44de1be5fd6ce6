"""Write and check the manifest that closes every export."""
from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from core.paths import directory_size

from .attachments import list_local_files
from .errors import ArtifactError, IntegrityError
from .filter import find_denied_sections
from .logs import BackupLogger
from .naming import DEFAULT_ATTACHMENT_DIRNAME, artifact_paths
from .types import Artifact, ArtifactKind, FilterStats, SyncResult

MANIFEST_VERSION = 1
_HASHED_KINDS = (
    ArtifactKind.ROLES,
    ArtifactKind.SCHEMA,
    ArtifactKind.DATA,
    ArtifactKind.MIGRATION_LEDGER,
)


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def sha256_for_path(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def build_manifest(
    identifier: str,
    artifacts: Iterable[Artifact],
    *,
    filter_stats: FilterStats,
    attachments: Optional[SyncResult] = None,
) -> Dict[str, object]:
    files: List[Dict[str, object]] = []
    for artifact in artifacts:
        if artifact.kind not in _HASHED_KINDS or not artifact.location.is_file():
            continue
        files.append(
            {
                "kind": artifact.kind.value,
                "name": artifact.location.name,
                "bytes": artifact.location.stat().st_size,
                "sha256": sha256_for_path(artifact.location),
            }
        )
    attachment_info = None
    if attachments is not None and attachments.skipped_reason is None:
        attachment_info = {"files": attachments.file_count, "bytes": attachments.total_bytes}
    return {
        "version": MANIFEST_VERSION,
        "identifier": identifier,
        "created_utc": _utcnow(),
        "filter": {
            "kept_sections": filter_stats.kept_sections,
            "skipped_sections": filter_stats.skipped_sections,
            "skipped_tables": list(filter_stats.skipped_tables),
        },
        "files": files,
        "attachments": attachment_info,
    }


def write_manifest(path: Path, manifest: Dict[str, object]) -> None:
    tmp_path = path.with_name(path.name + ".tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(manifest, handle, indent=2, sort_keys=True)
    tmp_path.replace(path)


def load_manifest(path: Path) -> Dict[str, object]:
    if not path.exists():
        raise ArtifactError(f"manifest not found at {path}", missing=[ArtifactKind.MANIFEST.value])
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except ValueError as exc:
        raise IntegrityError(f"manifest {path.name} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict) or not isinstance(data.get("files"), list):
        raise IntegrityError(f"manifest {path.name} has an invalid structure")
    return data


_MANDATORY_KINDS = frozenset({ArtifactKind.ROLES.value, ArtifactKind.SCHEMA.value, ArtifactKind.DATA.value})


def _check_entries(
    directory: Path,
    manifest: Dict[str, object],
    *,
    strict_optional: bool,
    logger: BackupLogger,
) -> int:
    checked = 0
    for entry in manifest.get("files", []):
        if not isinstance(entry, dict):
            raise IntegrityError("invalid manifest entry")
        name = entry.get("name")
        checksum = entry.get("sha256")
        if not isinstance(name, str) or not isinstance(checksum, str):
            raise IntegrityError("manifest entry missing name/sha256")
        kind = str(entry.get("kind") or name)
        source = directory / name
        if not source.is_file():
            if strict_optional or kind in _MANDATORY_KINDS:
                raise ArtifactError(f"missing backup file: {name}", missing=[kind])
            logger.warning("optional_artifact_missing", kind=kind, name=name)
            continue
        expected_size = entry.get("bytes")
        if expected_size is not None and int(expected_size) != source.stat().st_size:
            raise IntegrityError(f"size mismatch for {name}")
        if sha256_for_path(source) != checksum:
            raise IntegrityError(f"checksum mismatch for {name}")
        checked += 1
    return checked


def _check_attachments(
    root: Path,
    manifest: Dict[str, object],
    *,
    strict_optional: bool,
    logger: BackupLogger,
) -> Optional[int]:
    info = manifest.get("attachments")
    if not isinstance(info, dict):
        return None
    if not root.is_dir():
        if strict_optional:
            raise ArtifactError(f"attachments directory not found: {root}", missing=[ArtifactKind.ATTACHMENTS.value])
        logger.warning("optional_artifact_missing", kind=ArtifactKind.ATTACHMENTS.value, name=str(root))
        return None
    count = len(list_local_files(root))
    expected = int(info.get("files", count))
    if count != expected:
        raise IntegrityError(f"attachment count mismatch: manifest lists {expected}, found {count}")
    return count


def verify_backup(
    directory: Path,
    identifier: str,
    *,
    denied_tables: Iterable[str],
    logger: BackupLogger,
    attachments_dirname: str = DEFAULT_ATTACHMENT_DIRNAME,
    strict_optional: bool = True,
    check_attachments: bool = True,
) -> Dict[str, object]:
    """Check one backup set; raises on the first problem found.

    With ``strict_optional`` off, a ledger or attachment tree recorded in the
    manifest but absent on disk is only logged. ``check_attachments`` off
    skips the attachment count entirely.
    """

    artifacts = {item.kind: item.location for item in artifact_paths(directory, identifier)}
    missing = [
        kind.value
        for kind in (ArtifactKind.ROLES, ArtifactKind.SCHEMA, ArtifactKind.DATA)
        if not artifacts[kind].is_file()
    ]
    if missing:
        raise ArtifactError(f"backup {identifier} is missing {', '.join(missing)}", missing=missing)

    manifest_path = artifacts[ArtifactKind.MANIFEST]
    checked = 0
    attachment_files: Optional[int] = None
    has_manifest = manifest_path.exists()
    if has_manifest:
        manifest = load_manifest(manifest_path)
        if manifest.get("identifier") not in (None, identifier):
            raise IntegrityError(f"manifest {manifest_path.name} belongs to {manifest.get('identifier')}")
        checked = _check_entries(directory, manifest, strict_optional=strict_optional, logger=logger)
        if check_attachments:
            attachment_files = _check_attachments(
                artifacts[ArtifactKind.ATTACHMENTS] / attachments_dirname,
                manifest,
                strict_optional=strict_optional,
                logger=logger,
            )
    else:
        logger.warning("manifest_missing", id=identifier)

    leaked = find_denied_sections(artifacts[ArtifactKind.DATA], denied_tables)
    if leaked:
        raise IntegrityError(f"data dump still contains deny-listed tables: {', '.join(sorted(set(leaked)))}")

    report: Dict[str, object] = {
        "id": identifier,
        "manifest": has_manifest,
        "file_count": checked,
        "attachment_files": attachment_files,
        "total_bytes": sum(directory_size(path) for path in artifacts.values()),
    }
    logger.event(event="backup_verified", phase="verify", ok=True, **report)
    return report


__all__ = [
    "MANIFEST_VERSION",
    "build_manifest",
    "load_manifest",
    "sha256_for_path",
    "verify_backup",
    "write_manifest",
]
