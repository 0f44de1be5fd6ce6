"""Copy the attachment tree out of and back into the object store."""
from __future__ import annotations

import os
import shutil
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional

from core.paths import directory_size
from core.process import ProcessError
from core.storage import ContainerStore, HttpObjectStore, StorageUploadError

from .errors import ArtifactError, ConfigurationError, ConnectivityError, ExecutionError, IntegrityError
from .logs import BackupLogger
from .naming import attachment_dirname
from .progress import ProgressSampler
from .types import ReconciliationReport, SyncResult

SENTINEL_PREFIX = "._"
SENTINEL_NAMES = frozenset({".DS_Store"})
RECONCILE_SAMPLE = 10
TRANSPORTS = ("copy", "http")

CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".txt": "text/plain",
    ".csv": "text/csv",
    ".json": "application/json",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".ppt": "application/vnd.ms-powerpoint",
    ".pptx": "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    ".zip": "application/zip",
    ".mp4": "video/mp4",
    ".mp3": "audio/mpeg",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"


def is_sentinel(path: str) -> bool:
    name = PurePosixPath(path).name
    return name.startswith(SENTINEL_PREFIX) or name in SENTINEL_NAMES


def guess_content_type(path: str) -> str:
    return CONTENT_TYPES.get(PurePosixPath(path).suffix.lower(), DEFAULT_CONTENT_TYPE)


def list_local_files(root: Path) -> List[str]:
    """Sorted POSIX paths of regular files below *root*, sentinels excluded."""

    if not root.is_dir():
        return []
    found: List[str] = []
    for current, _dirs, files in os.walk(root):
        for name in files:
            if is_sentinel(name):
                continue
            relative = Path(current, name).relative_to(root)
            found.append(relative.as_posix())
    return sorted(found)


def scrub_sentinels(root: Path) -> int:
    removed = 0
    for current, _dirs, files in os.walk(root):
        for name in files:
            if is_sentinel(name):
                Path(current, name).unlink(missing_ok=True)
                removed += 1
    return removed


def reconcile(source: Iterable[str], destination: Iterable[str]) -> ReconciliationReport:
    src = {item for item in source if item and not is_sentinel(item)}
    dst = {item for item in destination if item and not is_sentinel(item)}
    return ReconciliationReport(
        source_count=len(src),
        destination_count=len(dst),
        missing=sorted(src - dst),
        extra=sorted(dst - src),
    )


def log_reconciliation(report: ReconciliationReport, logger: BackupLogger, *, phase: str) -> None:
    if report.ok:
        logger.info("reconcile_ok", phase=phase, files=report.source_count)
        return
    if report.missing:
        logger.warning(
            "reconcile_missing",
            phase=phase,
            count=len(report.missing),
            sample=report.missing[:RECONCILE_SAMPLE],
            more=max(0, len(report.missing) - RECONCILE_SAMPLE),
        )
    if report.extra:
        logger.warning(
            "reconcile_extra",
            phase=phase,
            count=len(report.extra),
            sample=report.extra[:RECONCILE_SAMPLE],
            more=max(0, len(report.extra) - RECONCILE_SAMPLE),
        )


class AttachmentSynchronizer:
    """Move the attachment tree between the object store and local disk.

    Export always copies the tree out of the storage container. Restore uses
    one transport per deployment: ``copy`` replaces the tree inside the
    container, ``http`` uploads each object through the storage API.
    """

    def __init__(
        self,
        store: ContainerStore,
        *,
        logger: BackupLogger,
        progress_interval: float = 5.0,
        transport: str = "copy",
        http_store: Optional[HttpObjectStore] = None,
    ) -> None:
        if transport not in TRANSPORTS:
            raise ConfigurationError(f"Unknown attachment transport {transport!r}; use one of {', '.join(TRANSPORTS)}")
        if transport == "http" and http_store is None:
            raise ConfigurationError("The http attachment transport needs storage.api_url and storage.service_key")
        self._store = store
        self._logger = logger
        self._interval = progress_interval
        self._transport = transport
        self._http = http_store

    @property
    def transport(self) -> str:
        return self._transport

    def _remote_listing(self, phase: str) -> Optional[List[str]]:
        try:
            return self._store.list_files()
        except ProcessError as exc:
            self._logger.warning("reconcile_unavailable", phase=phase, error=exc.stderr.strip() or str(exc))
            return None

    def ensure_store_running(self, action: str) -> None:
        if not self._store.is_running():
            raise ConnectivityError(
                f"Storage container {self._store.container} is not running",
                hint=f"Start the local stack (npx supabase start) and retry the {action}",
            )

    # ------------------------------------------------------------------
    def export_to(self, destination: Path) -> SyncResult:
        """Copy the store's attachment root into *destination*.

        A stopped storage container is fatal; a missing attachment root only
        means there is nothing to copy.
        """

        self.ensure_store_running("backup")
        if not self._store.root_exists():
            self._logger.warning("attachments_skipped", phase="export", reason="root_missing", root=self._store.root)
            return SyncResult("export", 0, 0, "copy", skipped_reason="attachment root not found")

        try:
            remote_count = self._store.file_count()
            remote_bytes = self._store.total_bytes()
            self._logger.info("attachments_export_start", files=remote_count, total_bytes=remote_bytes)
            with ProgressSampler(
                lambda: directory_size(destination),
                total_bytes=remote_bytes,
                interval=self._interval,
                logger=self._logger,
                label="attachments-export",
            ):
                self._store.copy_out(destination)
        except ProcessError as exc:
            raise ExecutionError.from_process("Attachment export", exc) from exc

        local_root = destination / attachment_dirname(self._store.root)
        local_files = list_local_files(local_root)
        report = None
        remote_files = self._remote_listing("export")
        if remote_files is not None:
            report = reconcile(remote_files, local_files)
            log_reconciliation(report, self._logger, phase="export")
        result = SyncResult(
            direction="export",
            file_count=len(local_files),
            total_bytes=directory_size(local_root),
            transport="copy",
            reconciliation=report,
        )
        self._logger.info("attachments_export_done", files=result.file_count, total_bytes=result.total_bytes)
        return result

    # ------------------------------------------------------------------
    def stage(self, source_root: Path, work_dir: Path) -> tuple[Path, int]:
        """Copy *source_root* into *work_dir* and drop sentinel files there."""

        if not source_root.is_dir():
            raise ArtifactError(f"Attachments directory not found: {source_root}", missing=["attachments"])
        if work_dir.exists():
            shutil.rmtree(work_dir)
        staged = work_dir / source_root.name
        shutil.copytree(source_root, staged)
        removed = scrub_sentinels(staged)
        if removed:
            self._logger.info("sentinels_removed", count=removed)
        return staged, removed

    def restore_from(self, source_root: Path, work_dir: Path) -> SyncResult:
        staged, removed = self.stage(source_root, work_dir)
        files = list_local_files(staged)
        total = directory_size(staged)
        self._logger.info("attachments_restore_start", files=len(files), total_bytes=total, transport=self._transport)
        if self._transport == "copy":
            report = self._push_copy(staged, files, total)
        else:
            report = self._push_http(staged, files, total)
        result = SyncResult(
            direction="restore",
            file_count=len(files),
            total_bytes=total,
            transport=self._transport,
            reconciliation=report,
            removed_sentinels=removed,
        )
        self._logger.info("attachments_restore_done", files=result.file_count, total_bytes=result.total_bytes)
        return result

    def _push_copy(self, staged: Path, files: List[str], total: int) -> Optional[ReconciliationReport]:
        self.ensure_store_running("restore")
        try:
            self._store.clear()
            with ProgressSampler(
                self._store.total_bytes,
                total_bytes=total,
                interval=self._interval,
                logger=self._logger,
                label="attachments-restore",
            ):
                self._store.copy_in(staged)
        except ProcessError as exc:
            raise ExecutionError.from_process("Attachment restore", exc) from exc
        remote_files = self._remote_listing("restore")
        if remote_files is None:
            return None
        report = reconcile(files, remote_files)
        log_reconciliation(report, self._logger, phase="restore")
        return report

    def _push_http(self, staged: Path, files: List[str], total: int) -> Optional[ReconciliationReport]:
        if self._http is None:
            raise ConfigurationError("The http attachment transport needs storage.api_url and storage.service_key")
        uploaded = [0]
        failures: List[StorageUploadError] = []
        with ProgressSampler(
            lambda: uploaded[0],
            total_bytes=total,
            interval=self._interval,
            logger=self._logger,
            label="attachments-upload",
        ):
            for key in files:
                path = staged / key
                try:
                    self._http.upload(key, path, content_type=guess_content_type(key))
                except StorageUploadError as exc:
                    failures.append(exc)
                    self._logger.error("upload_failed", key=key, reason=exc.reason)
                    continue
                uploaded[0] += path.stat().st_size
        if failures:
            sample = "; ".join(str(item) for item in failures[:3])
            raise IntegrityError(f"{len(failures)} of {len(files)} attachment uploads failed: {sample}")
        self._logger.info("reconcile_skipped", phase="restore", reason="http transport uploads are checked per object")
        return None


__all__ = [
    "AttachmentSynchronizer",
    "CONTENT_TYPES",
    "DEFAULT_CONTENT_TYPE",
    "guess_content_type",
    "is_sentinel",
    "list_local_files",
    "reconcile",
    "scrub_sentinels",
]
