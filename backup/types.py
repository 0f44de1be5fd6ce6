"""Common dataclasses shared across backup modules."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional


class ArtifactKind(str, enum.Enum):
    ROLES = "roles"
    SCHEMA = "schema"
    DATA = "data"
    MIGRATION_LEDGER = "migrationLedger"
    ATTACHMENTS = "attachments"
    MANIFEST = "manifest"


REQUIRED_KINDS = (ArtifactKind.ROLES, ArtifactKind.SCHEMA, ArtifactKind.DATA)


@dataclass(slots=True)
class Artifact:
    """One typed part of a backup set."""

    kind: ArtifactKind
    location: Path
    size_bytes: Optional[int] = None

    @property
    def is_directory(self) -> bool:
        return self.kind is ArtifactKind.ATTACHMENTS


@dataclass(slots=True)
class BackupSet:
    """Artifacts sharing one identifier, ordered roles -> manifest."""

    identifier: str
    artifacts: List[Artifact]
    created_at: Optional[datetime] = None

    def artifact(self, kind: ArtifactKind) -> Optional[Artifact]:
        for item in self.artifacts:
            if item.kind is kind:
                return item
        return None

    def present(self) -> List[Artifact]:
        return [item for item in self.artifacts if item.location.exists()]

    def missing_required(self) -> List[str]:
        missing: List[str] = []
        for kind in REQUIRED_KINDS:
            item = self.artifact(kind)
            if item is None or not item.location.is_file():
                missing.append(kind.value)
        return missing

    @property
    def is_restorable(self) -> bool:
        return not self.missing_required()

    @property
    def total_size(self) -> int:
        return sum(int(item.size_bytes or 0) for item in self.artifacts)


@dataclass(slots=True)
class RetentionDecision:
    identifier: str
    age_days: float
    size_bytes: int
    eligible: bool
    skipped_for_safety: bool

    @property
    def delete(self) -> bool:
        return self.eligible and not self.skipped_for_safety


@dataclass(slots=True)
class RetentionSummary:
    deleted_sets: List[str] = field(default_factory=list)
    deleted_paths: int = 0
    skipped_sets: List[str] = field(default_factory=list)
    failed_paths: List[str] = field(default_factory=list)
    decisions: List[RetentionDecision] = field(default_factory=list)


@dataclass(slots=True, frozen=True)
class RewriteRule:
    from_prefix: str
    to_prefix: str


@dataclass(slots=True)
class FilterStats:
    kept_sections: int = 0
    skipped_sections: int = 0
    skipped_tables: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ReconciliationReport:
    """Source/destination listing diff; diagnostic only."""

    source_count: int
    destination_count: int
    missing: List[str]
    extra: List[str]

    @property
    def ok(self) -> bool:
        return not self.missing and not self.extra


@dataclass(slots=True)
class SyncResult:
    direction: str
    file_count: int
    total_bytes: int
    transport: str
    reconciliation: Optional[ReconciliationReport] = None
    skipped_reason: Optional[str] = None
    removed_sentinels: int = 0


@dataclass(slots=True)
class ExportResult:
    identifier: str
    backup_set: BackupSet
    filter_stats: FilterStats
    ledger_versions: Optional[int]
    attachments: Optional[SyncResult]
    manifest_path: Optional[Path]

    @property
    def total_size(self) -> int:
        return self.backup_set.total_size


@dataclass(slots=True)
class RestoreOptions:
    rewrite_urls: bool = False
    rewrite_from: List[str] = field(default_factory=list)
    rewrite_to: Optional[str] = None
    restore_attachments: bool = True


@dataclass(slots=True)
class RestoreResult:
    identifier: str
    states: List[str]
    confirmed: bool
    rewritten: Dict[str, int] = field(default_factory=dict)
    sequences_reset: int = 0
    migrations_synced: Optional[int] = None
    attachments: Optional[SyncResult] = None


__all__ = [
    "Artifact",
    "ArtifactKind",
    "BackupSet",
    "ExportResult",
    "FilterStats",
    "REQUIRED_KINDS",
    "ReconciliationReport",
    "RestoreOptions",
    "RestoreResult",
    "RetentionDecision",
    "RetentionSummary",
    "RewriteRule",
    "SyncResult",
]
