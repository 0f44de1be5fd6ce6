"""Explicit configuration threaded through every backup component."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

from core.paths import ensure_writable_dir, expand_path
from core.settings import apply_env_overrides, merge_defaults

from .errors import ConfigurationError

DB_CONTAINER_PREFIX = "supabase_db_"
STORAGE_CONTAINER_PREFIX = "supabase_storage_"


@dataclass(slots=True)
class DatabaseConfig:
    project_id: str
    container: str
    cli: Tuple[str, ...] = ("npx", "supabase")
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    dbname: str = "postgres"
    password: Optional[str] = "postgres"
    mutable_schema: str = "public"
    ledger_table: str = "supabase_migrations.schema_migrations"
    require_healthy_status: bool = False
    ready_timeout_s: float = 0.0
    ready_poll_s: float = 2.0


@dataclass(slots=True)
class StorageConfig:
    container: str
    attachments_path: str = "/mnt/stub/stub/attachments"
    transport: str = "copy"
    api_url: Optional[str] = None
    bucket: str = "attachments"
    service_key: Optional[str] = None
    upload_timeout_s: float = 60.0


@dataclass(slots=True)
class BackupConfig:
    """Everything a run needs; no component looks at ``os.environ``."""

    backup_dir: Optional[Path]
    database: DatabaseConfig
    storage: StorageConfig
    retention_days: float = 7.0
    progress_interval_s: float = 5.0
    denied_tables: List[str] = field(default_factory=list)
    rewrite_from: List[str] = field(default_factory=list)
    rewrite_to: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        settings: Mapping[str, Any],
        environ: Optional[Mapping[str, str]] = None,
        *,
        backup_dir: Optional[str] = None,
    ) -> "BackupConfig":
        data = merge_defaults(copy.deepcopy(dict(settings)))
        if environ is not None:
            data = apply_env_overrides(data, environ)
        db: Dict[str, Any] = data["database"]
        st: Dict[str, Any] = data["storage"]
        project_id = str(db.get("project_id") or "").strip()
        if not project_id:
            raise ConfigurationError("database.project_id must not be empty")
        try:
            database = DatabaseConfig(
                project_id=project_id,
                container=db.get("container") or f"{DB_CONTAINER_PREFIX}{project_id}",
                cli=tuple(str(part) for part in (db.get("cli") or ["npx", "supabase"])),
                host=str(db.get("host") or "localhost"),
                port=int(db.get("port") or 5432),
                user=str(db.get("user") or "postgres"),
                dbname=str(db.get("dbname") or "postgres"),
                password=db.get("password"),
                mutable_schema=str(db.get("mutable_schema") or "public"),
                ledger_table=str(db.get("ledger_table") or "supabase_migrations.schema_migrations"),
                require_healthy_status=bool(db.get("require_healthy_status")),
                ready_timeout_s=float(db.get("ready_timeout_s") or 0),
                ready_poll_s=float(db.get("ready_poll_s") or 2.0),
            )
            storage = StorageConfig(
                container=st.get("container") or f"{STORAGE_CONTAINER_PREFIX}{project_id}",
                attachments_path=str(st.get("attachments_path") or "/mnt/stub/stub/attachments").rstrip("/"),
                transport=str(st.get("transport") or "copy").lower(),
                api_url=st.get("api_url"),
                bucket=str(st.get("bucket") or "attachments"),
                service_key=st.get("service_key"),
                upload_timeout_s=float(st.get("upload_timeout_s") or 60.0),
            )
            retention_days = float(data.get("retention_days", 7))
            progress_interval = float(data.get("progress_interval_s", 5.0))
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Invalid setting value: {exc}") from exc
        if storage.transport not in ("copy", "http"):
            raise ConfigurationError(f"storage.transport must be 'copy' or 'http', not {storage.transport!r}")
        if retention_days < 0:
            raise ConfigurationError("retention_days must not be negative")
        raw_dir = backup_dir or data.get("backup_dir")
        rewrite = data.get("rewrite") or {}
        return cls(
            backup_dir=expand_path(raw_dir) if raw_dir else None,
            database=database,
            storage=storage,
            retention_days=retention_days,
            progress_interval_s=progress_interval,
            denied_tables=[str(name) for name in data["filter"].get("denied_tables") or []],
            rewrite_from=[str(prefix) for prefix in rewrite.get("from") or []],
            rewrite_to=rewrite.get("to"),
        )

    # ------------------------------------------------------------------
    def _require_dir_setting(self) -> Path:
        if self.backup_dir is None:
            raise ConfigurationError(
                "No backup directory configured; set BACKUP_DIR or pass --backup-dir"
            )
        return self.backup_dir

    def writable_backup_dir(self) -> Path:
        """The backup directory, created if needed and checked for writes."""

        path = self._require_dir_setting()
        if path.exists() and not path.is_dir():
            raise ConfigurationError(f"Backup directory {path} is not a directory")
        if not ensure_writable_dir(path):
            raise ConfigurationError(f"Backup directory {path} cannot be created or is not writable")
        return path

    def existing_backup_dir(self) -> Path:
        path = self._require_dir_setting()
        if not path.is_dir():
            raise ConfigurationError(f"Backup directory {path} does not exist")
        return path


__all__ = ["BackupConfig", "DatabaseConfig", "StorageConfig"]
