"""Backup and restore orchestration for the CRM's local Supabase stack."""
from __future__ import annotations

from .api import BackupService, BackupSummary
from .config import BackupConfig
from .errors import BackupError
from .types import ExportResult, RestoreOptions, RestoreResult, RetentionSummary

__all__ = [
    "BackupConfig",
    "BackupError",
    "BackupService",
    "BackupSummary",
    "ExportResult",
    "RestoreOptions",
    "RestoreResult",
    "RetentionSummary",
]
