"""Retention policy enforcement for backups."""
from __future__ import annotations

import os
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from core.paths import directory_size

from .logs import BackupLogger
from .naming import ARTIFACT_SUFFIXES, split_filename
from .types import Artifact, ArtifactKind, BackupSet, RetentionDecision, RetentionSummary

SECONDS_PER_DAY = 86400.0
DEFAULT_RETENTION_DAYS = 7


@dataclass(slots=True)
class _SetEntry:
    identifier: str
    paths: Dict[ArtifactKind, Path] = field(default_factory=dict)
    mtimes: List[float] = field(default_factory=list)
    size_bytes: int = 0


def _scan(base: Path) -> Dict[str, _SetEntry]:
    """Group the directory listing by identifier from one ``scandir`` pass."""

    groups: Dict[str, _SetEntry] = {}
    if not base.is_dir():
        return groups
    with os.scandir(base) as entries:
        snapshot = list(entries)
    for entry in snapshot:
        parts = split_filename(entry.name)
        if parts is None:
            continue
        identifier, kind = parts
        if kind is ArtifactKind.ATTACHMENTS and not entry.is_dir(follow_symlinks=False):
            continue
        if kind is not ArtifactKind.ATTACHMENTS and not entry.is_file(follow_symlinks=False):
            continue
        try:
            stat = entry.stat(follow_symlinks=False)
        except OSError:
            continue
        group = groups.setdefault(identifier, _SetEntry(identifier=identifier))
        path = Path(entry.path)
        group.paths[kind] = path
        group.mtimes.append(stat.st_mtime)
        group.size_bytes += directory_size(path) if kind is ArtifactKind.ATTACHMENTS else stat.st_size
    return groups


def _to_backup_set(entry: _SetEntry) -> BackupSet:
    artifacts: List[Artifact] = []
    for kind in ARTIFACT_SUFFIXES:
        path = entry.paths.get(kind)
        if path is None:
            continue
        size = directory_size(path) if kind is ArtifactKind.ATTACHMENTS else path.stat().st_size
        artifacts.append(Artifact(kind=kind, location=path, size_bytes=size))
    created = datetime.fromtimestamp(min(entry.mtimes), tz=timezone.utc) if entry.mtimes else None
    return BackupSet(identifier=entry.identifier, artifacts=artifacts, created_at=created)


def scan_backup_sets(base: Path) -> List[BackupSet]:
    """Every backup set under *base*, newest first."""

    sets = [_to_backup_set(entry) for entry in _scan(base).values()]
    sets.sort(key=lambda item: item.identifier, reverse=True)
    return sets


def decide(
    identifier: str,
    *,
    created_ts: float,
    size_bytes: int,
    current_size: int,
    now_ts: float,
    retention_days: float = DEFAULT_RETENTION_DAYS,
) -> RetentionDecision:
    age_days = max(0.0, (now_ts - created_ts) / SECONDS_PER_DAY)
    eligible = age_days > retention_days
    return RetentionDecision(
        identifier=identifier,
        age_days=round(age_days, 2),
        size_bytes=size_bytes,
        eligible=eligible,
        skipped_for_safety=eligible and size_bytes > current_size,
    )


def plan_retention(
    base: Path,
    *,
    current_size: int,
    retention_days: float = DEFAULT_RETENTION_DAYS,
    now: Optional[float] = None,
    exclude: Optional[str] = None,
) -> List[RetentionDecision]:
    """Decisions for every set under *base* without touching the disk."""

    now_ts = time.time() if now is None else now
    decisions: List[RetentionDecision] = []
    for identifier, entry in sorted(_scan(base).items()):
        if identifier == exclude or not entry.mtimes:
            continue
        decisions.append(
            decide(
                identifier,
                created_ts=min(entry.mtimes),
                size_bytes=entry.size_bytes,
                current_size=current_size,
                now_ts=now_ts,
                retention_days=retention_days,
            )
        )
    return decisions


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def apply_retention(
    base: Path,
    *,
    current_size: int,
    logger: BackupLogger,
    retention_days: float = DEFAULT_RETENTION_DAYS,
    now: Optional[float] = None,
    exclude: Optional[str] = None,
) -> RetentionSummary:
    """Delete expired sets under *base*; individual failures only warn.

    *exclude* names the set that was just written so it is never touched.
    """

    now_ts = time.time() if now is None else now
    groups = _scan(base)
    summary = RetentionSummary()
    for identifier, entry in sorted(groups.items()):
        if identifier == exclude or not entry.mtimes:
            continue
        decision = decide(
            identifier,
            created_ts=min(entry.mtimes),
            size_bytes=entry.size_bytes,
            current_size=current_size,
            now_ts=now_ts,
            retention_days=retention_days,
        )
        summary.decisions.append(decision)
        if not decision.eligible:
            continue
        if decision.skipped_for_safety:
            summary.skipped_sets.append(identifier)
            logger.warning(
                "retention_skipped",
                id=identifier,
                age_days=decision.age_days,
                size_bytes=decision.size_bytes,
                current_size=current_size,
                reason="larger_than_current_backup",
            )
            continue
        for kind in reversed(list(ARTIFACT_SUFFIXES)):
            path = entry.paths.get(kind)
            if path is None:
                continue
            try:
                _remove(path)
            except OSError as exc:
                summary.failed_paths.append(str(path))
                logger.warning("retention_delete_failed", id=identifier, path=str(path), error=str(exc))
                continue
            summary.deleted_paths += 1
        summary.deleted_sets.append(identifier)
        logger.info("backup_removed", id=identifier, age_days=decision.age_days, reason="retention")

    logger.event(
        event="retention_applied",
        phase="retention",
        ok=True,
        deleted_sets=len(summary.deleted_sets),
        deleted_paths=summary.deleted_paths,
        skipped_sets=len(summary.skipped_sets),
        failed_paths=len(summary.failed_paths),
    )
    return summary


__all__ = ["apply_retention", "decide", "plan_retention", "scan_backup_sets"]
