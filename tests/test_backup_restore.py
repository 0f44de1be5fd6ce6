import json
from pathlib import Path

import pytest

from core.db import DatabaseTools

from backup.api import BackupService
from backup.config import BackupConfig
from backup.errors import ArtifactError, ConfigurationError, ExecutionError, IntegrityError
from backup.restore import Restorer, resolve_target
from backup.types import RestoreOptions
from backup.verify import sha256_for_path

from fakes import FakeRunner, StubLogger

IDENTIFIER = "backup-2024-05-01-120000"
STORAGE = "supabase_storage_atomic-crm-demo"


def _write_set(base: Path, *, ledger: bool = False, attachments: bool = False, data: bool = True) -> None:
    (base / f"{IDENTIFIER}-roles.sql").write_text("-- ROLES\nCREATE ROLE anon;\n", encoding="utf-8")
    (base / f"{IDENTIFIER}-schema.sql").write_text("-- SCHEMA\nCREATE TABLE t();\n", encoding="utf-8")
    if data:
        (base / f"{IDENTIFIER}-data.sql").write_text(
            '-- DATA\nCOPY "public"."contacts" ("id") FROM stdin;\n1\n\\.\n', encoding="utf-8"
        )
    if ledger:
        (base / f"{IDENTIFIER}-applied-migrations.txt").write_text("20240101000000\n20240201000000\n", encoding="utf-8")
    if attachments:
        root = base / f"{IDENTIFIER}-attachments" / "attachments"
        (root / "deals").mkdir(parents=True)
        (root / "deals" / "a.pdf").write_bytes(b"%PDF")
        (root / "deals" / "._a.pdf").write_bytes(b"meta")


def _runner(duplicates: str = "0") -> FakeRunner:
    runner = FakeRunner()
    runner.on("supabase status")
    runner.on("HAVING count(*) > 1", stdout=f"{duplicates}\n")
    runner.on("pg_get_serial_sequence", stdout="public.contacts_id_seq\tcontacts\tid\n")
    return runner


def _service(tmp_path: Path, runner: FakeRunner, *, answer: bool = True, logger=None, prompts=None, **settings):
    config = BackupConfig.from_settings({"backup_dir": str(tmp_path), **settings})

    def confirm(lines):
        if prompts is not None:
            prompts.append(list(lines))
        return answer

    return BackupService(config, runner=runner, logger=logger or StubLogger(), confirm=confirm)


def _psql_inputs(runner: FakeRunner) -> list[str]:
    return [call.input for call in runner.calls if "psql" in call.argv]


def test_restore_runs_every_step_in_order(tmp_path: Path):
    _write_set(tmp_path, ledger=True)
    runner = _runner()
    prompts: list = []

    result = _service(tmp_path, runner, prompts=prompts).restore(IDENTIFIER)

    assert result.confirmed
    assert result.states == [
        "idle",
        "confirmed",
        "schemaReset",
        "dataLoaded",
        "migrationsSynced",
        "triggersReattached",
        "sequencesReset",
        "done",
    ]
    assert prompts and any("drop the public schema" in line for line in prompts[0])
    inputs = _psql_inputs(runner)
    assert 'DROP SCHEMA IF EXISTS "public" CASCADE;' in inputs[0]
    assert "TRUNCATE TABLE \"auth\".\"users\" CASCADE;" in inputs[0]

    load = inputs[1]
    positions = [
        load.index("-- ROLES"),
        load.index("-- SCHEMA"),
        load.index('TRUNCATE TABLE "storage"."objects"'),
        load.index("SET session_replication_role = replica;"),
        load.index("-- DATA"),
    ]
    assert positions == sorted(positions)
    load_call = [call for call in runner.calls if call.input == load][0]
    assert "--single-transaction" in load_call.argv
    assert load_call.argv[load_call.argv.index("--variable") + 1] == "ON_ERROR_STOP=1"
    assert load_call.env == {"PGPASSWORD": "postgres"}

    assert "INSERT INTO \"supabase_migrations\".\"schema_migrations\"" in inputs[2]
    assert result.migrations_synced == 2
    assert any("CREATE TRIGGER on_auth_user_created" in text for text in inputs)
    assert any("setval('public.contacts_id_seq'" in text for text in inputs)
    assert result.sequences_reset == 1
    assert not (tmp_path / f"{IDENTIFIER}-restore-work").exists()


def test_missing_artifact_aborts_before_any_command(tmp_path: Path):
    _write_set(tmp_path, data=False)
    runner = _runner()
    prompts: list = []

    with pytest.raises(ArtifactError) as excinfo:
        _service(tmp_path, runner, prompts=prompts).restore(IDENTIFIER)

    assert excinfo.value.missing == ["data"]
    assert runner.calls == []
    assert prompts == []


def test_declined_confirmation_changes_nothing(tmp_path: Path):
    _write_set(tmp_path)
    runner = _runner()

    result = _service(tmp_path, runner, answer=False).restore(IDENTIFIER)

    assert not result.confirmed
    assert result.states == ["idle", "cancelled"]
    assert not runner.find("DROP SCHEMA")


def test_duplicate_profile_owners_abort_before_triggers(tmp_path: Path):
    _write_set(tmp_path)
    runner = _runner(duplicates="3")
    logger = StubLogger()

    with pytest.raises(IntegrityError, match="3 duplicate user_id"):
        _service(tmp_path, runner, logger=logger).restore(IDENTIFIER)

    assert not runner.find("CREATE TRIGGER")
    assert "restore_failed" in logger.names("error")
    assert "database_inconsistent" in logger.names("warning")


def test_failed_load_reports_stderr(tmp_path: Path):
    _write_set(tmp_path)
    runner = _runner()
    runner.on("-- DATA", exit_code=3, stderr='ERROR:  relation "contacts" does not exist')

    with pytest.raises(ExecutionError) as excinfo:
        _service(tmp_path, runner).restore(IDENTIFIER)

    assert excinfo.value.exit_code == 3
    assert "does not exist" in excinfo.value.detail
    assert str(excinfo.value).startswith("Data load failed")


def test_url_rewrite_updates_matching_references(tmp_path: Path):
    _write_set(tmp_path)
    runner = _runner()
    runner.on(
        'FROM public."contacts"',
        stdout='7\t{"src": "http://127.0.0.1:54321/storage/v1/object/public/attachments/x.pdf", "title": "x.pdf"}\n'
        '8\t{"src": "https://cdn.example.com/y.png", "title": "y.png"}\n',
    )

    result = _service(tmp_path, runner).restore(
        IDENTIFIER,
        RestoreOptions(rewrite_urls=True, rewrite_to="http://203.0.113.5:54321"),
    )

    assert "urlsRewritten" in result.states
    assert result.rewritten["contacts.avatar"] == 1
    assert result.rewritten["companies.logo"] == 0
    updates = [text for text in _psql_inputs(runner) if "UPDATE public.\"contacts\"" in text]
    assert len(updates) == 1
    assert "http://203.0.113.5:54321/storage/v1/object/public/attachments/x.pdf" in updates[0]
    assert "WHERE id = 7;" in updates[0]


def test_rewrite_without_target_is_a_configuration_error(tmp_path: Path):
    _write_set(tmp_path)
    runner = _runner()

    with pytest.raises(ConfigurationError):
        _service(tmp_path, runner).restore(IDENTIFIER, RestoreOptions(rewrite_urls=True))
    assert runner.calls == []


def test_attachments_are_staged_scrubbed_and_copied(tmp_path: Path):
    _write_set(tmp_path, attachments=True)
    runner = _runner()
    runner.on("docker ps", stdout=f"{STORAGE}\n")
    runner.on("find . -type f", stdout="deals/a.pdf\n")
    staged_names = []

    def capture(argv, _payload):
        staged_names.extend(sorted(path.name for path in Path(argv[2]).rglob("*")))

    runner.on("docker cp", effect=capture)

    result = _service(tmp_path, runner).restore(IDENTIFIER)

    assert result.states[-2:] == ["attachmentsRestored", "done"]
    assert result.attachments.removed_sentinels == 1
    assert result.attachments.reconciliation.ok
    assert staged_names == ["a.pdf", "deals"]
    texts = [call.text for call in runner.calls]
    clear = texts.index(f"docker exec {STORAGE} rm -rf /mnt/stub/stub/attachments")
    copy = next(index for index, text in enumerate(texts) if text.startswith("docker cp"))
    assert clear < copy
    assert texts[clear + 1] == f"docker exec {STORAGE} mkdir -p /mnt/stub/stub"
    assert (tmp_path / f"{IDENTIFIER}-attachments" / "attachments" / "deals" / "._a.pdf").exists()
    assert not (tmp_path / f"{IDENTIFIER}-restore-work").exists()


def test_failed_attachment_copy_cleans_working_copy(tmp_path: Path):
    _write_set(tmp_path, attachments=True)
    runner = _runner()
    runner.on("docker ps", stdout=f"{STORAGE}\n")
    runner.on("docker cp", exit_code=1, stderr="no space left on device")
    logger = StubLogger()

    with pytest.raises(ExecutionError):
        _service(tmp_path, runner, logger=logger).restore(IDENTIFIER)

    assert not (tmp_path / f"{IDENTIFIER}-restore-work").exists()
    assert "restore_partial" in logger.names("warning")


def test_resolve_target_accepts_identifier_or_artifact_path(tmp_path: Path):
    _write_set(tmp_path)
    data = tmp_path / f"{IDENTIFIER}-data.sql"

    assert resolve_target(IDENTIFIER, tmp_path) == (tmp_path, IDENTIFIER)
    assert resolve_target(str(data), None) == (tmp_path, IDENTIFIER)
    with pytest.raises(ConfigurationError):
        resolve_target(IDENTIFIER, None)
    with pytest.raises(ConfigurationError):
        resolve_target(str(tmp_path / "dump.sql"), tmp_path)


def _write_manifest(base: Path, *, attachments: int) -> None:
    files = []
    for kind, suffix in (("roles", "-roles.sql"), ("schema", "-schema.sql"), ("data", "-data.sql")):
        path = base / f"{IDENTIFIER}{suffix}"
        files.append({"kind": kind, "name": path.name, "bytes": path.stat().st_size, "sha256": sha256_for_path(path)})
    files.append(
        {"kind": "migrationLedger", "name": f"{IDENTIFIER}-applied-migrations.txt", "bytes": 30, "sha256": "0" * 64}
    )
    manifest = {"version": 1, "identifier": IDENTIFIER, "files": files, "attachments": {"files": attachments}}
    (base / f"{IDENTIFIER}-manifest.json").write_text(json.dumps(manifest), encoding="utf-8")


@pytest.mark.parametrize("restore_attachments", [False, True])
def test_database_only_set_is_restorable_despite_manifest_extras(tmp_path: Path, restore_attachments: bool):
    _write_set(tmp_path)
    _write_manifest(tmp_path, attachments=3)
    runner = _runner()
    logger = StubLogger()

    result = _service(tmp_path, runner, logger=logger).restore(
        IDENTIFIER, RestoreOptions(restore_attachments=restore_attachments)
    )

    assert result.states[-1] == "done"
    assert result.attachments is None
    assert result.migrations_synced is None
    assert not runner.find("docker cp")
    missing = [extra["kind"] for level, name, extra in logger.events if name == "optional_artifact_missing"]
    expected = ["migrationLedger", "attachments"] if restore_attachments else ["migrationLedger"]
    assert missing == expected


def test_mandatory_file_listed_in_manifest_is_still_checked(tmp_path: Path):
    _write_set(tmp_path)
    _write_manifest(tmp_path, attachments=0)
    (tmp_path / f"{IDENTIFIER}-schema.sql").write_text("-- SCHEMA\nDROP TABLE t;\n", encoding="utf-8")
    runner = _runner()

    with pytest.raises(IntegrityError, match="mismatch"):
        _service(tmp_path, runner).restore(IDENTIFIER)
    assert runner.calls == []


def test_attachments_follow_the_configured_root_name(tmp_path: Path):
    _write_set(tmp_path)
    root = tmp_path / f"{IDENTIFIER}-attachments" / "files"
    root.mkdir(parents=True)
    (root / "a.pdf").write_bytes(b"%PDF")
    runner = _runner()
    runner.on("docker ps", stdout=f"{STORAGE}\n")
    runner.on("find . -type f", stdout="a.pdf\n")

    result = _service(tmp_path, runner, storage={"attachments_path": "/var/lib/storage/files"}).restore(IDENTIFIER)

    assert result.attachments.file_count == 1
    copy = [call.argv for call in runner.calls if call.argv[:2] == ["docker", "cp"]][0]
    assert copy[-1] == f"{STORAGE}:/var/lib/storage/files"


def test_restorer_without_synchronizer_skips_attachments(tmp_path: Path):
    _write_set(tmp_path, attachments=True)
    runner = _runner()
    logger = StubLogger()
    config = BackupConfig.from_settings({"backup_dir": str(tmp_path)})
    restorer = Restorer(
        config,
        db=DatabaseTools(runner, container=config.database.container),
        attachments=None,
        logger=logger,
        confirm=lambda lines: True,
    )

    result = restorer.restore(tmp_path, IDENTIFIER)

    assert result.states[-1] == "done"
    assert result.attachments is None
    assert not runner.find("docker cp")
    assert "attachments_skipped" in logger.names("info")
