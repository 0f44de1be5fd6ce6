#!/usr/bin/env python3
"""Command line entry point: export, list, verify and restore CRM backups."""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional, Sequence

from backup.api import BackupService, BackupSummary
from backup.config import BackupConfig
from backup.errors import BackupError, ConnectivityError, ExecutionError
from backup.types import RestoreOptions
from core.logging_utils import configure_logging, redact_secret
from core.settings import load_settings

LOGGER = logging.getLogger("crmbackup.cli")


def _mb(value: int) -> str:
    return f"{value / (1024 * 1024):.2f} MB"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Back up and restore the local CRM database and attachments")
    parser.add_argument("--backup-dir", default=None, help="Backup directory (defaults to $BACKUP_DIR)")
    parser.add_argument("--settings", default=None, help="Path to a JSON settings file")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--log", dest="log_path", default=None, help="Optional JSON-lines log file")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("export", help="Dump roles, schema, data and attachments into a new backup set")
    sub.add_parser("list", help="List backup sets, newest first")

    verify = sub.add_parser("verify", help="Check a backup set against its manifest")
    verify.add_argument("target", help="Backup identifier or path to one of its files")

    restore = sub.add_parser("restore", help="Replace the local database with a backup set")
    restore.add_argument("target", help="Backup identifier or path to one of its files")
    restore.add_argument("--rewrite-urls", action="store_true", help="Rewrite stored file URLs after the restore")
    restore.add_argument(
        "--rewrite-from",
        action="append",
        default=[],
        help="URL prefix to replace (repeatable; defaults to the local API URLs)",
    )
    restore.add_argument("--rewrite-to", default=None, help="Replacement URL prefix (defaults to $SUPABASE_EXTERNAL_URL)")
    restore.add_argument("--skip-attachments", action="store_true", help="Restore the database only")
    return parser


def _print_error(exc: BackupError) -> None:
    print(f"Error: {exc}", file=sys.stderr)
    if isinstance(exc, ExecutionError) and exc.stderr.strip():
        print("Error details:", file=sys.stderr)
        print(exc.stderr.strip(), file=sys.stderr)
    elif isinstance(exc, ConnectivityError) and exc.hint:
        print(exc.hint, file=sys.stderr)
    elif exc.detail:
        print(exc.detail, file=sys.stderr)


def _print_listing(directory: Path, rows: List[BackupSummary]) -> None:
    print(f"Available backups in {directory}:")
    print("")
    if not rows:
        print("No backups found.")
        return
    for row in rows:
        extras = [part for part in row.parts if part not in ("roles", "schema", "data")]
        line = f"{row.identifier} ({_mb(row.size_bytes)}, {row.created_utc}) [{row.status}]"
        if extras:
            line += " + " + ", ".join(extras)
        print(line)


def _run(args: argparse.Namespace, service: BackupService) -> int:
    if args.command == "export":
        result = service.export()
        print(f"Backup {result.identifier} completed ({_mb(result.total_size)})")
        for artifact in result.backup_set.artifacts:
            print(f"  - {artifact.location.name}: {_mb(int(artifact.size_bytes or 0))}")
        return 0

    if args.command == "list":
        rows = service.list_backups()
        _print_listing(service.config.existing_backup_dir(), rows)
        return 0

    if args.command == "verify":
        report = service.verify(args.target)
        print(f"Backup {report['id']} verified ({report['file_count']} files checked)")
        return 0

    options = RestoreOptions(
        rewrite_urls=bool(args.rewrite_urls or args.rewrite_to),
        rewrite_from=list(args.rewrite_from),
        rewrite_to=args.rewrite_to,
        restore_attachments=not args.skip_attachments,
    )
    result = service.restore(args.target, options)
    if not result.confirmed:
        print("Restore cancelled; nothing was changed.")
        return 0
    print(f"Restore of {result.identifier} completed.")
    for label, count in sorted(result.rewritten.items()):
        print(f"  - {label}: {count} row(s) rewritten")
    if result.attachments is not None:
        print(f"  - attachments: {result.attachments.file_count} file(s)")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    log_path = Path(args.log_path).expanduser().resolve() if args.log_path else None
    configure_logging(verbose=bool(args.verbose), log_path=log_path)

    try:
        settings = load_settings(args.settings)
        config = BackupConfig.from_settings(settings, backup_dir=args.backup_dir)
        LOGGER.debug(
            "Using project %s (db password %s, service key %s)",
            config.database.project_id,
            redact_secret(config.database.password),
            redact_secret(config.storage.service_key),
        )
        return _run(args, BackupService(config))
    except BackupError as exc:
        _print_error(exc)
        return 1
    except KeyboardInterrupt:
        print("Interrupted; incomplete artifacts were removed.", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
