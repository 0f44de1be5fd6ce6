import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from core import paths as core_paths


class CorePathsTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_ensure_writable_dir_creates_missing_parents(self) -> None:
        target = self.base / "a" / "b"
        self.assertTrue(core_paths.ensure_writable_dir(target))
        self.assertTrue(target.is_dir())
        self.assertEqual(list(target.iterdir()), [])

    def test_ensure_writable_dir_rejects_file(self) -> None:
        blocker = self.base / "file"
        blocker.write_text("x", encoding="utf-8")
        self.assertFalse(core_paths.ensure_writable_dir(blocker / "child"))

    def test_directory_size_counts_nested_files(self) -> None:
        (self.base / "sub").mkdir()
        (self.base / "one.bin").write_bytes(b"x" * 10)
        (self.base / "sub" / "two.bin").write_bytes(b"y" * 5)
        self.assertEqual(core_paths.directory_size(self.base), 15)
        self.assertEqual(core_paths.directory_size(self.base / "one.bin"), 10)
        self.assertEqual(core_paths.directory_size(self.base / "absent"), 0)

    def test_settings_search_order(self) -> None:
        env = {core_paths.SETTINGS_ENV_VAR: str(self.base / "env.json")}
        with mock.patch.object(Path, "cwd", return_value=self.base):
            found = core_paths.get_default_settings_paths(self.base / "explicit.json", env)
        self.assertEqual(
            found,
            [
                (self.base / "explicit.json").resolve(),
                (self.base / "env.json").resolve(),
                self.base / core_paths.SETTINGS_FILENAME,
            ],
        )

    def test_expand_path_expands_user_and_variables(self) -> None:
        with mock.patch.dict(os.environ, {"CRM_BACKUP_TEST_ROOT": str(self.base)}):
            expanded = core_paths.expand_path("$CRM_BACKUP_TEST_ROOT/backups")
        self.assertEqual(expanded, (self.base / "backups").resolve())
        self.assertTrue(core_paths.expand_path("~").is_absolute())


if __name__ == "__main__":
    unittest.main()
