import os
import time
from pathlib import Path

import pytest

import backup_cli
from backup.types import RestoreResult


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("BACKUP_DIR", "CRM_BACKUP_SETTINGS", "SUPABASE_EXTERNAL_URL"):
        monkeypatch.delenv(name, raising=False)


def test_missing_backup_dir_is_reported(capsys):
    code = backup_cli.main(["list"])

    assert code == 1
    err = capsys.readouterr().err
    assert err.startswith("Error: No backup directory configured")


def test_list_on_empty_directory(tmp_path: Path, capsys):
    backups = tmp_path / "backups"
    backups.mkdir()

    code = backup_cli.main(["--backup-dir", str(backups), "list"])

    out = capsys.readouterr().out
    assert code == 0
    assert f"Available backups in {backups.resolve()}:" in out
    assert "No backups found." in out


def test_list_marks_incomplete_sets(tmp_path: Path, capsys, monkeypatch):
    monkeypatch.setenv("BACKUP_DIR", str(tmp_path))
    now = time.time()
    for suffix in ("-roles.sql", "-schema.sql", "-data.sql"):
        path = tmp_path / f"backup-2024-05-02-120000{suffix}"
        path.write_bytes(b"x" * 1024)
        os.utime(path, (now, now))
    (tmp_path / "backup-2024-05-01-120000-roles.sql").write_text("--", encoding="utf-8")

    code = backup_cli.main(["list"])

    lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith("backup-")]
    assert code == 0
    assert lines[0].startswith("backup-2024-05-02-120000 (0.00 MB")
    assert lines[0].endswith("[ok]")
    assert "[incomplete]" in lines[1]


def test_restore_decline_exits_cleanly(tmp_path: Path, capsys, monkeypatch):
    seen = {}

    class _Service:
        def __init__(self, config):
            seen["config"] = config

        def restore(self, target, options):
            seen["target"] = target
            seen["options"] = options
            return RestoreResult(identifier=target, states=["idle", "cancelled"], confirmed=False)

    monkeypatch.setattr(backup_cli, "BackupService", _Service)

    code = backup_cli.main(
        ["--backup-dir", str(tmp_path), "restore", "backup-2024-05-01-120000", "--rewrite-to", "http://203.0.113.5:54321"]
    )

    assert code == 0
    assert "Restore cancelled; nothing was changed." in capsys.readouterr().out
    assert seen["target"] == "backup-2024-05-01-120000"
    assert seen["options"].rewrite_urls is True
    assert seen["options"].restore_attachments is True


def test_verify_of_unknown_target_fails(tmp_path: Path, capsys):
    code = backup_cli.main(["--backup-dir", str(tmp_path), "verify", "backup-2024-05-01-120000"])

    err = capsys.readouterr().err
    assert code == 1
    assert "missing" in err
