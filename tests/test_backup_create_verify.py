import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from backup.api import BackupService
from backup.config import BackupConfig
from backup.errors import ConnectivityError, ExecutionError, IntegrityError
from backup.verify import verify_backup

from fakes import DATA_DUMP, FakeRunner, StubLogger, write_dump

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
IDENTIFIER = "backup-2024-05-01-120000"
STORAGE = "supabase_storage_atomic-crm-demo"


def _config(tmp_path: Path, **database) -> BackupConfig:
    return BackupConfig.from_settings({"backup_dir": str(tmp_path), "database": database})


def _runner() -> FakeRunner:
    runner = FakeRunner()
    runner.on("supabase status", stdout="API URL: http://127.0.0.1:54321\n")
    runner.on("db dump", effect=write_dump("CREATE TABLE public.contacts (id bigint);\n"))
    runner.on("--role-only", effect=write_dump("CREATE ROLE anon;\n"))
    runner.on("--data-only", effect=write_dump(DATA_DUMP))
    runner.on("SELECT version FROM", stdout="20240201000000\n20240101000000\n")
    runner.on("docker ps", stdout=f"{STORAGE}\n")
    runner.on("test -d", exit_code=1)
    return runner


def _with_storage(runner: FakeRunner) -> FakeRunner:
    def copy_out(argv, _payload):
        root = Path(argv[3]) / "attachments"
        (root / "contacts").mkdir(parents=True)
        (root / "contacts" / "avatar.png").write_bytes(b"png")
        (root / "notes.pdf").write_bytes(b"pdf!")
        (root / ".DS_Store").write_bytes(b"junk")

    runner.on("test -d", exit_code=0)
    runner.on("wc -l", stdout="2\n")
    runner.on("du -sb", stdout="7\n")
    runner.on("find . -type f", stdout="contacts/avatar.png\nnotes.pdf\n")
    runner.on("docker cp", effect=copy_out)
    return runner


def test_export_writes_filtered_set_and_manifest(tmp_path: Path):
    runner = _runner()
    logger = StubLogger()
    service = BackupService(_config(tmp_path), runner=runner, logger=logger)

    result = service.export(now=NOW)

    assert result.identifier == IDENTIFIER
    data = (tmp_path / f"{IDENTIFIER}-data.sql").read_text(encoding="utf-8")
    assert "hunter2" not in data
    assert '"public"."contacts"' in data
    assert (tmp_path / f"{IDENTIFIER}-roles.sql").read_text(encoding="utf-8") == "CREATE ROLE anon;\n"
    ledger = (tmp_path / f"{IDENTIFIER}-applied-migrations.txt").read_text(encoding="utf-8")
    assert ledger == "20240101000000\n20240201000000\n"
    assert result.ledger_versions == 2
    assert result.filter_stats.skipped_tables == ["auth.schema_migrations", "vault.secrets"]
    assert result.attachments is not None and result.attachments.skipped_reason == "attachment root not found"

    manifest = json.loads(result.manifest_path.read_text(encoding="utf-8"))
    assert manifest["identifier"] == IDENTIFIER
    assert {entry["kind"] for entry in manifest["files"]} == {"roles", "schema", "data", "migrationLedger"}
    assert manifest["attachments"] is None

    dumps = [call.argv for call in runner.find("db dump")]
    assert dumps[0][-1] == "--role-only"
    assert dumps[2][-2:] == ["--data-only", "--use-copy"]
    assert "--local" in dumps[1]

    report = verify_backup(tmp_path, IDENTIFIER, denied_tables=service.config.denied_tables, logger=logger)
    assert report["manifest"] is True
    assert report["file_count"] == 4


def test_export_copies_attachments_and_reconciles(tmp_path: Path):
    runner = _with_storage(_runner())
    logger = StubLogger()
    service = BackupService(_config(tmp_path), runner=runner, logger=logger)

    result = service.export(now=NOW)

    root = tmp_path / f"{IDENTIFIER}-attachments" / "attachments"
    assert (root / "notes.pdf").exists()
    assert result.attachments.file_count == 2
    assert result.attachments.reconciliation.ok
    manifest = json.loads(result.manifest_path.read_text(encoding="utf-8"))
    assert manifest["attachments"]["files"] == 2
    assert service.verify(IDENTIFIER)["attachment_files"] == 2
    copy = runner.find("docker cp")[0].argv
    assert copy[2] == f"{STORAGE}:/mnt/stub/stub/attachments"


def test_failed_data_dump_removes_partial_artifacts(tmp_path: Path):
    older = tmp_path / "backup-2024-04-30-120000-data.sql"
    older.write_text("-- older set\n", encoding="utf-8")
    runner = _runner()
    runner.on("--data-only", exit_code=1, stderr="pg_dump: error: connection refused")
    service = BackupService(_config(tmp_path), runner=runner, logger=StubLogger())

    with pytest.raises(ExecutionError) as excinfo:
        service.export(now=NOW)

    assert "connection refused" in excinfo.value.stderr
    assert excinfo.value.exit_code == 1
    assert not list(tmp_path.glob(f"{IDENTIFIER}*"))
    assert older.exists()


def test_ledger_failure_is_not_fatal(tmp_path: Path):
    runner = _runner()
    runner.on("SELECT version FROM", exit_code=1, stderr='relation "schema_migrations" does not exist')
    logger = StubLogger()
    service = BackupService(_config(tmp_path), runner=runner, logger=logger)

    result = service.export(now=NOW)

    assert result.ledger_versions is None
    assert not (tmp_path / f"{IDENTIFIER}-applied-migrations.txt").exists()
    assert "ledger_failed" in logger.names("warning")
    assert (tmp_path / f"{IDENTIFIER}-data.sql").exists()


def test_degraded_status_proceeds_with_warning(tmp_path: Path):
    runner = _runner()
    runner.on("supabase status", exit_code=1, stderr="WARN: some services are stopped")
    logger = StubLogger()
    service = BackupService(_config(tmp_path), runner=runner, logger=logger)

    service.export(now=NOW)

    assert "database_degraded" in logger.names("warning")


def test_unhealthy_status_fails_when_health_is_required(tmp_path: Path):
    runner = _runner()
    runner.on("supabase status", exit_code=1)
    service = BackupService(
        _config(tmp_path, require_healthy_status=True, ready_timeout_s=0),
        runner=runner,
        logger=StubLogger(),
    )

    with pytest.raises(ConnectivityError):
        service.export(now=NOW)
    assert not runner.find("db dump")
    assert not list(tmp_path.glob("backup-*"))


def test_missing_cli_is_reported_as_connectivity_error(tmp_path: Path):
    runner = _runner()
    runner.on("supabase status", raises=FileNotFoundError(2, "No such file or directory", "npx"))
    service = BackupService(_config(tmp_path), runner=runner, logger=StubLogger())

    with pytest.raises(ConnectivityError) as excinfo:
        service.export(now=NOW)
    assert "npx supabase start" in excinfo.value.hint


def test_verify_detects_tampered_dump(tmp_path: Path):
    service = BackupService(_config(tmp_path), runner=_runner(), logger=StubLogger())
    service.export(now=NOW)
    data = tmp_path / f"{IDENTIFIER}-data.sql"
    data.write_text(data.read_text(encoding="utf-8").replace("Ada", "Eve"), encoding="utf-8")

    with pytest.raises(IntegrityError, match="checksum mismatch"):
        service.verify(IDENTIFIER)


def test_export_fails_before_dumping_when_storage_is_down(tmp_path: Path):
    runner = _runner()
    runner.on("docker ps", stdout="")
    service = BackupService(_config(tmp_path), runner=runner, logger=StubLogger())

    with pytest.raises(ConnectivityError) as excinfo:
        service.export(now=NOW)

    assert "npx supabase start" in excinfo.value.hint
    assert not runner.find("db dump")
    assert not list(tmp_path.glob("backup-*"))
