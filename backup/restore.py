"""Restore a backup set into the local stack.

The restore is a linear state machine. Every state has one handler that does
the work leading out of it and returns the next state, so an abort leaves a
precise record of how far the run got. Only ``Idle`` is free of side effects;
a failure in any later state is reported as ``Failed`` with remediation
guidance because the schema reset is not covered by the load transaction.
"""
from __future__ import annotations

import enum
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from core.db import DatabaseTools, sql_chunks
from core.process import ProcessError

from .attachments import AttachmentSynchronizer
from .cleanup import PartialFailureCleaner
from .config import BackupConfig
from .confirm import confirm_restore, destruction_summary
from .errors import ConfigurationError, ExecutionError, IntegrityError
from .ledger import ledger_sync_sql, read_ledger
from .liveness import ensure_database_ready
from .logs import BackupLogger
from .naming import artifact_path, attachment_dirname, is_identifier, split_filename
from .rewrite import build_rules, rewrite_urls
from .sql import (
    DISABLE_TRIGGERS,
    DUPLICATE_OWNERS_SQL,
    PROFILE_OWNER_COLUMN,
    PROFILE_TABLE,
    REATTACH_TRIGGERS_SQL,
    schema_reset_sql,
    sequence_reset_sql,
    serial_sequences_sql,
    storage_truncate_sql,
)
from .types import ArtifactKind, RestoreOptions, RestoreResult, RewriteRule
from .verify import verify_backup

RESET_HINT = "Reset the local database with 'npx supabase db reset' and run the restore again"
WORK_DIR_SUFFIX = "-restore-work"


class RestoreState(enum.Enum):
    IDLE = "idle"
    CONFIRMED = "confirmed"
    SCHEMA_RESET = "schemaReset"
    DATA_LOADED = "dataLoaded"
    MIGRATIONS_SYNCED = "migrationsSynced"
    TRIGGERS_REATTACHED = "triggersReattached"
    SEQUENCES_RESET = "sequencesReset"
    URLS_REWRITTEN = "urlsRewritten"
    ATTACHMENTS_RESTORED = "attachmentsRestored"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATES = frozenset({RestoreState.DONE, RestoreState.FAILED, RestoreState.CANCELLED})

# Label used in error messages for the work leaving each state.
_STEP_LABELS: Dict[RestoreState, str] = {
    RestoreState.IDLE: "Pre-flight checks",
    RestoreState.CONFIRMED: "Schema reset",
    RestoreState.SCHEMA_RESET: "Data load",
    RestoreState.DATA_LOADED: "Migration ledger sync",
    RestoreState.MIGRATIONS_SYNCED: "Trigger reattachment",
    RestoreState.TRIGGERS_REATTACHED: "Sequence reset",
    RestoreState.SEQUENCES_RESET: "URL rewrite",
    RestoreState.URLS_REWRITTEN: "Attachment restore",
    RestoreState.ATTACHMENTS_RESTORED: "Finalise",
}


def resolve_target(target: str, backup_dir: Optional[Path]) -> Tuple[Path, str]:
    """Split an identifier or an artifact path into ``(directory, identifier)``."""

    value = (target or "").strip()
    if not value:
        raise ConfigurationError("No backup identifier or path given")
    if is_identifier(value):
        if backup_dir is None:
            raise ConfigurationError(
                f"Backup {value} given by identifier but no backup directory is configured"
            )
        directory, identifier = backup_dir, value
    else:
        path = Path(value).expanduser()
        parts = split_filename(path.name)
        if parts is not None:
            identifier = parts[0]
        elif is_identifier(path.name):
            identifier = path.name
        else:
            raise ConfigurationError(f"{value} is neither a backup identifier nor a backup artifact path")
        directory = path.parent if str(path.parent) not in ("", ".") or backup_dir is None else backup_dir
    if not directory.is_dir():
        raise ConfigurationError(f"Backup directory {directory} does not exist")
    return directory, identifier


@dataclass(slots=True)
class _RestoreRun:
    directory: Path
    identifier: str
    options: RestoreOptions
    rules: List[RewriteRule]
    result: RestoreResult
    cleaner: PartialFailureCleaner
    attachments_root: Optional[Path] = None
    history: List[RestoreState] = field(default_factory=list)

    def path(self, kind: ArtifactKind) -> Path:
        return artifact_path(self.directory, self.identifier, kind)

    @property
    def work_dir(self) -> Path:
        return self.directory / f"{self.identifier}{WORK_DIR_SUFFIX}"


class Restorer:
    """Destructive restore guarded by pre-flight checks and a confirmation."""

    def __init__(
        self,
        config: BackupConfig,
        *,
        db: DatabaseTools,
        attachments: Optional[AttachmentSynchronizer],
        logger: BackupLogger,
        confirm: Callable[[Sequence[str]], bool] = confirm_restore,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._db = db
        self._attachments = attachments
        self._logger = logger
        self._confirm = confirm
        self._sleep = sleep
        self._handlers: Dict[RestoreState, Callable[[_RestoreRun], RestoreState]] = {
            RestoreState.IDLE: self._preflight,
            RestoreState.CONFIRMED: self._reset_schema,
            RestoreState.SCHEMA_RESET: self._load_data,
            RestoreState.DATA_LOADED: self._sync_migrations,
            RestoreState.MIGRATIONS_SYNCED: self._reattach_triggers,
            RestoreState.TRIGGERS_REATTACHED: self._reset_sequences,
            RestoreState.SEQUENCES_RESET: self._after_sequences,
            RestoreState.URLS_REWRITTEN: self._after_rewrite,
            RestoreState.ATTACHMENTS_RESTORED: self._finish,
        }

    # ------------------------------------------------------------------
    def restore(self, directory: Path, identifier: str, options: Optional[RestoreOptions] = None) -> RestoreResult:
        options = options or RestoreOptions()
        rules: List[RewriteRule] = []
        if options.rewrite_urls:
            target = options.rewrite_to or self._config.rewrite_to
            if not target:
                raise ConfigurationError("URL rewrite requested but no target given (--rewrite-to or SUPABASE_EXTERNAL_URL)")
            rules = build_rules(options.rewrite_from or self._config.rewrite_from, target)
        run = _RestoreRun(
            directory=directory,
            identifier=identifier,
            options=options,
            rules=rules,
            result=RestoreResult(identifier=identifier, states=[], confirmed=False),
            cleaner=PartialFailureCleaner(self._logger, phase="restore"),
        )
        run.cleaner.track(run.work_dir)
        state = RestoreState.IDLE
        with run.cleaner:
            while state not in TERMINAL_STATES:
                run.history.append(state)
                run.result.states = [item.value for item in run.history]
                try:
                    state = self._advance(state, run)
                except BaseException as exc:
                    if state is not RestoreState.IDLE:
                        run.history.append(RestoreState.FAILED)
                        run.result.states = [item.value for item in run.history]
                        self._report_failure(run, state, exc)
                    raise
            run.history.append(state)
            run.result.states = [item.value for item in run.history]
        if run.work_dir.exists():
            shutil.rmtree(run.work_dir)
        return run.result

    def _advance(self, state: RestoreState, run: _RestoreRun) -> RestoreState:
        try:
            return self._handlers[state](run)
        except ProcessError as exc:
            raise ExecutionError.from_process(_STEP_LABELS[state], exc) from exc

    def _report_failure(self, run: _RestoreRun, state: RestoreState, exc: BaseException) -> None:
        detail = getattr(exc, "detail", "") or ""
        self._logger.error(
            "restore_failed",
            id=run.identifier,
            step=_STEP_LABELS.get(state, state.value),
            state=state.value,
            error=str(exc) or exc.__class__.__name__,
            stderr=detail[:2000],
        )
        if state in (RestoreState.SEQUENCES_RESET, RestoreState.URLS_REWRITTEN):
            self._logger.warning(
                "restore_partial",
                id=run.identifier,
                message="The database was restored but a post-restore step failed",
            )
        self._logger.warning("database_inconsistent", id=run.identifier, hint=RESET_HINT)

    # ------------------------------------------------------------------
    def _wants_attachments(self, run: _RestoreRun) -> bool:
        return run.options.restore_attachments and self._attachments is not None

    def _attachments_source(self, run: _RestoreRun) -> Optional[Path]:
        if not self._wants_attachments(run):
            return None
        root = run.path(ArtifactKind.ATTACHMENTS) / attachment_dirname(self._config.storage.attachments_path)
        return root if root.is_dir() else None

    def _preflight(self, run: _RestoreRun) -> RestoreState:
        report = verify_backup(
            run.directory,
            run.identifier,
            denied_tables=self._config.denied_tables,
            logger=self._logger,
            attachments_dirname=attachment_dirname(self._config.storage.attachments_path),
            strict_optional=False,
            check_attachments=self._wants_attachments(run),
        )
        run.attachments_root = self._attachments_source(run)
        ensure_database_ready(self._db, self._config.database, logger=self._logger, sleep=self._sleep)
        summary = destruction_summary(
            run.identifier,
            database=self._config.database.container,
            attachments=run.attachments_root is not None,
            storage_container=self._config.storage.container,
        )
        if run.rules:
            summary.append(f"  - rewrite file URLs to {run.rules[0].to_prefix}")
        if not self._confirm(summary):
            self._logger.info("restore_cancelled", id=run.identifier)
            return RestoreState.CANCELLED
        run.result.confirmed = True
        self._logger.event(
            event="restore_start",
            phase="restore",
            ok=True,
            id=run.identifier,
            verified_files=report.get("file_count"),
        )
        return RestoreState.CONFIRMED

    def _reset_schema(self, run: _RestoreRun) -> RestoreState:
        schema = self._config.database.mutable_schema
        self._logger.info("schema_reset", schema=schema)
        self._db.execute(schema_reset_sql(schema))
        return RestoreState.SCHEMA_RESET

    def _load_data(self, run: _RestoreRun) -> RestoreState:
        self._logger.info("data_load_start", id=run.identifier)
        payload = sql_chunks(
            [
                run.path(ArtifactKind.ROLES),
                run.path(ArtifactKind.SCHEMA),
                storage_truncate_sql(),
                DISABLE_TRIGGERS,
                run.path(ArtifactKind.DATA),
            ]
        )
        self._db.execute(payload, single_transaction=True)
        self._logger.info("data_load_done", id=run.identifier)
        return RestoreState.DATA_LOADED

    def _sync_migrations(self, run: _RestoreRun) -> RestoreState:
        ledger = run.path(ArtifactKind.MIGRATION_LEDGER)
        if not ledger.is_file():
            self._logger.info("ledger_skipped", reason="no_ledger_artifact")
            return RestoreState.MIGRATIONS_SYNCED
        versions = read_ledger(ledger)
        self._db.execute(ledger_sync_sql(self._config.database.ledger_table, versions))
        run.result.migrations_synced = len(versions)
        self._logger.info("ledger_synced", versions=len(versions))
        return RestoreState.MIGRATIONS_SYNCED

    def _reattach_triggers(self, run: _RestoreRun) -> RestoreState:
        rows = self._db.query(DUPLICATE_OWNERS_SQL)
        duplicates = int(rows[0][0]) if rows and rows[0] and rows[0][0].strip() else 0
        if duplicates:
            raise IntegrityError(
                f"{duplicates} duplicate {PROFILE_OWNER_COLUMN} value(s) in {PROFILE_TABLE}; "
                "fix them before the auth triggers can be reattached"
            )
        self._db.execute(REATTACH_TRIGGERS_SQL)
        self._logger.info("triggers_reattached")
        return RestoreState.TRIGGERS_REATTACHED

    def _reset_sequences(self, run: _RestoreRun) -> RestoreState:
        schema = self._config.database.mutable_schema
        rows = [tuple(row[:3]) for row in self._db.query(serial_sequences_sql(schema)) if len(row) >= 3]
        statements = sequence_reset_sql(schema, rows)
        if statements:
            self._db.execute(statements)
        run.result.sequences_reset = len(rows)
        self._logger.info("sequences_reset", count=len(rows))
        return RestoreState.SEQUENCES_RESET

    def _after_sequences(self, run: _RestoreRun) -> RestoreState:
        if run.rules:
            run.result.rewritten = rewrite_urls(self._db, run.rules, logger=self._logger)
            return RestoreState.URLS_REWRITTEN
        return self._after_rewrite(run)

    def _after_rewrite(self, run: _RestoreRun) -> RestoreState:
        if run.attachments_root is None or self._attachments is None:
            if run.options.restore_attachments:
                self._logger.info("attachments_skipped", phase="restore", reason="no_attachment_backup")
            return self._finish(run)
        run.result.attachments = self._attachments.restore_from(run.attachments_root, run.work_dir)
        return RestoreState.ATTACHMENTS_RESTORED

    def _finish(self, run: _RestoreRun) -> RestoreState:
        self._logger.event(
            event="restore_complete",
            phase="restore",
            ok=True,
            id=run.identifier,
            sequences=run.result.sequences_reset,
            migrations=run.result.migrations_synced,
            rewritten=run.result.rewritten,
            attachments=run.result.attachments.file_count if run.result.attachments else None,
        )
        return RestoreState.DONE


__all__ = ["RestoreState", "Restorer", "resolve_target"]
