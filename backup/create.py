"""Export the database and attachments into a new backup set."""
from __future__ import annotations

import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from core.db import DatabaseTools
from core.paths import directory_size
from core.process import ProcessError

from .attachments import AttachmentSynchronizer
from .cleanup import PartialFailureCleaner
from .config import BackupConfig
from .errors import ArtifactError, ConfigurationError, ExecutionError
from .filter import filter_dump_file
from .ledger import ledger_query, write_ledger
from .liveness import ensure_database_ready
from .logs import BackupLogger
from .naming import artifact_paths, new_identifier
from .types import Artifact, ArtifactKind, BackupSet, ExportResult, FilterStats, SyncResult
from .verify import build_manifest, write_manifest


class Exporter:
    """Drive the dumps, the filter, the ledger and the attachment copy."""

    def __init__(
        self,
        config: BackupConfig,
        *,
        db: DatabaseTools,
        attachments: Optional[AttachmentSynchronizer],
        logger: BackupLogger,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._db = db
        self._attachments = attachments
        self._logger = logger
        self._sleep = sleep

    def _dump(self, label: str, target: Path, **flags: bool) -> None:
        self._logger.info("dump_start", kind=label, path=str(target))
        try:
            self._db.dump(target, **flags)
        except ProcessError as exc:
            raise ExecutionError.from_process(f"{label.capitalize()} dump", exc) from exc
        except OSError as exc:
            raise ExecutionError(f"{label.capitalize()} dump could not start: {exc}") from exc
        if not target.is_file():
            raise ArtifactError(f"{label} dump did not produce {target.name}", missing=[label])
        self._logger.info("dump_done", kind=label, bytes=target.stat().st_size)

    def _capture_ledger(self, target: Path) -> Optional[int]:
        table = self._config.database.ledger_table
        try:
            rows = self._db.query(ledger_query(table))
            versions = write_ledger(target, [row[0] for row in rows if row])
        except (ProcessError, OSError) as exc:
            detail = exc.stderr.strip() if isinstance(exc, ProcessError) else str(exc)
            self._logger.warning("ledger_failed", table=table, error=detail or str(exc))
            return None
        self._logger.info("ledger_written", versions=len(versions), path=str(target))
        return len(versions)

    def _measure(self, paths: Dict[ArtifactKind, Path]) -> List[Artifact]:
        artifacts: List[Artifact] = []
        for kind, location in paths.items():
            if not location.exists():
                continue
            size = directory_size(location)
            artifacts.append(Artifact(kind=kind, location=location, size_bytes=size))
            self._logger.info("artifact_size", kind=kind.value, bytes=size)
        return artifacts

    def export(self, directory: Path, *, now: Optional[datetime] = None) -> ExportResult:
        identifier = new_identifier(now)
        paths = {item.kind: item.location for item in artifact_paths(directory, identifier)}
        if any(path.exists() for path in paths.values()):
            raise ConfigurationError(f"Backup {identifier} already exists in {directory}; retry in a second")

        self._logger.event(event="backup_start", phase="export", ok=True, id=identifier, dir=str(directory))
        ensure_database_ready(self._db, self._config.database, logger=self._logger, sleep=self._sleep)
        if self._attachments is not None:
            self._attachments.ensure_store_running("backup")

        with PartialFailureCleaner(self._logger, phase="export") as cleaner:
            cleaner.track_set(directory, identifier)
            self._dump("roles", paths[ArtifactKind.ROLES], role_only=True)
            self._dump("schema", paths[ArtifactKind.SCHEMA])
            self._dump("data", paths[ArtifactKind.DATA], data_only=True, use_copy=True)

            stats: FilterStats = filter_dump_file(paths[ArtifactKind.DATA], self._config.denied_tables)
            self._logger.info(
                "data_filtered",
                kept=stats.kept_sections,
                skipped=stats.skipped_sections,
                tables=stats.skipped_tables,
            )
            ledger_versions = self._capture_ledger(paths[ArtifactKind.MIGRATION_LEDGER])

            attachments: Optional[SyncResult] = None
            if self._attachments is not None:
                attachments = self._attachments.export_to(paths[ArtifactKind.ATTACHMENTS])

            manifest = build_manifest(
                identifier,
                [Artifact(kind=kind, location=path) for kind, path in paths.items()],
                filter_stats=stats,
                attachments=attachments,
            )
            write_manifest(paths[ArtifactKind.MANIFEST], manifest)
            artifacts = self._measure(paths)

        backup_set = BackupSet(identifier=identifier, artifacts=artifacts, created_at=now)
        result = ExportResult(
            identifier=identifier,
            backup_set=backup_set,
            filter_stats=stats,
            ledger_versions=ledger_versions,
            attachments=attachments,
            manifest_path=paths[ArtifactKind.MANIFEST],
        )
        self._logger.event(
            event="backup_complete",
            phase="export",
            ok=True,
            id=identifier,
            size=result.total_size,
            attachments=attachments.file_count if attachments else None,
        )
        return result


__all__ = ["Exporter"]
