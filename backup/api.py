"""Public API for backup operations."""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from core.db import DatabaseTools
from core.process import ProcessRunner
from core.storage import ContainerStore, HttpObjectStore

from .attachments import AttachmentSynchronizer
from .config import BackupConfig
from .confirm import confirm_restore
from .create import Exporter
from .errors import BackupError, ConfigurationError
from .logs import BackupLogger
from .naming import attachment_dirname
from .restore import Restorer, resolve_target
from .retention import apply_retention, plan_retention, scan_backup_sets
from .types import ExportResult, RestoreOptions, RestoreResult, RetentionDecision, RetentionSummary
from .verify import verify_backup


@dataclass(slots=True)
class BackupSummary:
    """One row of ``list`` output."""

    identifier: str
    created_utc: str
    size_bytes: int
    parts: List[str]
    restorable: bool
    retention: Optional[RetentionDecision]
    path: Path

    @property
    def status(self) -> str:
        if not self.restorable:
            return "incomplete"
        if self.retention is not None and self.retention.delete:
            return "expired"
        if self.retention is not None and self.retention.skipped_for_safety:
            return "expired-kept"
        return "ok"


class BackupService:
    """Coordinate export, listing, verification, restore, and retention."""

    def __init__(
        self,
        config: BackupConfig,
        *,
        runner: Optional[ProcessRunner] = None,
        logger: Optional[BackupLogger] = None,
        confirm: Callable[[Sequence[str]], bool] = confirm_restore,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._runner = runner or ProcessRunner()
        self._logger = logger
        self._confirm = confirm
        self._sleep = sleep
        db_cfg = config.database
        self._db = DatabaseTools(
            self._runner,
            container=db_cfg.container,
            cli=db_cfg.cli,
            host=db_cfg.host,
            port=db_cfg.port,
            user=db_cfg.user,
            dbname=db_cfg.dbname,
            password=db_cfg.password,
        )
        self._store = ContainerStore(
            self._runner,
            container=config.storage.container,
            root=config.storage.attachments_path,
        )

    # ------------------------------------------------------------------
    @property
    def config(self) -> BackupConfig:
        return self._config

    def _logger_for(self, directory: Optional[Path]) -> BackupLogger:
        if self._logger is None:
            self._logger = BackupLogger(directory)
        return self._logger

    def _http_store(self) -> Optional[HttpObjectStore]:
        storage = self._config.storage
        if storage.transport != "http":
            return None
        if not storage.api_url or not storage.service_key:
            raise ConfigurationError(
                "storage.transport is 'http' but SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY is not set"
            )
        return HttpObjectStore(
            storage.api_url,
            bucket=storage.bucket,
            service_key=storage.service_key,
            timeout=storage.upload_timeout_s,
        )

    def _synchronizer(self, logger: BackupLogger, *, http: Optional[HttpObjectStore] = None) -> AttachmentSynchronizer:
        return AttachmentSynchronizer(
            self._store,
            logger=logger,
            progress_interval=self._config.progress_interval_s,
            transport=self._config.storage.transport if http is not None else "copy",
            http_store=http,
        )

    # ------------------------------------------------------------------
    def export(self, *, now: Optional[datetime] = None) -> ExportResult:
        directory = self._config.writable_backup_dir()
        logger = self._logger_for(directory)
        exporter = Exporter(
            self._config,
            db=self._db,
            attachments=self._synchronizer(logger),
            logger=logger,
            sleep=self._sleep,
        )
        result = exporter.export(directory, now=now)
        self.apply_retention(current_size=result.total_size, exclude=result.identifier)
        return result

    def apply_retention(self, *, current_size: int, exclude: Optional[str] = None) -> RetentionSummary:
        directory = self._config.existing_backup_dir()
        logger = self._logger_for(directory)
        try:
            return apply_retention(
                directory,
                current_size=current_size,
                logger=logger,
                retention_days=self._config.retention_days,
                exclude=exclude,
            )
        except OSError as exc:
            logger.warning("retention_failed", error=str(exc))
            return RetentionSummary(failed_paths=[str(directory)])

    # ------------------------------------------------------------------
    def list_backups(self, *, now: Optional[float] = None) -> List[BackupSummary]:
        directory = self._config.existing_backup_dir()
        sets = scan_backup_sets(directory)
        newest_size = sets[0].total_size if sets else 0
        decisions: Dict[str, RetentionDecision] = {
            item.identifier: item
            for item in plan_retention(
                directory,
                current_size=newest_size,
                retention_days=self._config.retention_days,
                now=now,
                exclude=sets[0].identifier if sets else None,
            )
        }
        summaries: List[BackupSummary] = []
        for backup_set in sets:
            created = backup_set.created_at or datetime.fromtimestamp(0, tz=timezone.utc)
            summaries.append(
                BackupSummary(
                    identifier=backup_set.identifier,
                    created_utc=created.isoformat(timespec="seconds"),
                    size_bytes=backup_set.total_size,
                    parts=[item.kind.value for item in backup_set.artifacts],
                    restorable=backup_set.is_restorable,
                    retention=decisions.get(backup_set.identifier),
                    path=directory,
                )
            )
        return summaries

    # ------------------------------------------------------------------
    def verify(self, target: str) -> Dict[str, object]:
        directory, identifier = resolve_target(target, self._config.backup_dir)
        logger = self._logger_for(None)
        return verify_backup(
            directory,
            identifier,
            denied_tables=self._config.denied_tables,
            logger=logger,
            attachments_dirname=attachment_dirname(self._config.storage.attachments_path),
        )

    def restore(self, target: str, options: Optional[RestoreOptions] = None) -> RestoreResult:
        directory, identifier = resolve_target(target, self._config.backup_dir)
        logger = self._logger_for(directory)
        http = self._http_store()
        try:
            restorer = Restorer(
                self._config,
                db=self._db,
                attachments=self._synchronizer(logger, http=http),
                logger=logger,
                confirm=self._confirm,
                sleep=self._sleep,
            )
            return restorer.restore(directory, identifier, options)
        finally:
            if http is not None:
                http.close()


__all__ = [
    "BackupError",
    "BackupService",
    "BackupSummary",
]
