from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Optional

__all__ = [
    "SETTINGS_ENV_VAR",
    "SETTINGS_FILENAME",
    "directory_size",
    "ensure_writable_dir",
    "expand_path",
    "get_default_settings_paths",
    "get_logs_dir",
    "is_readable_file",
]

SETTINGS_ENV_VAR = "CRM_BACKUP_SETTINGS"
SETTINGS_FILENAME = "backup-settings.json"


def expand_path(value: str | os.PathLike[str]) -> Path:
    """Expand ``~`` and environment variables and return an absolute path."""

    expanded = os.path.expandvars(os.path.expanduser(str(value)))
    return Path(expanded).resolve()


def ensure_writable_dir(path: Path) -> bool:
    """Create *path* if needed and confirm files can be written inside it."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False
    test_file = path / f".write_test_{os.getpid()}"
    try:
        with open(test_file, "w", encoding="utf-8") as handle:
            handle.write("ok")
        test_file.unlink(missing_ok=True)
        return True
    except OSError:
        try:
            if test_file.exists():
                test_file.unlink()
        except OSError:  # pragma: no cover - cleanup only
            pass
        return False


def is_readable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.R_OK)


def directory_size(path: Path) -> int:
    """Total size in bytes of regular files below *path* (0 if absent)."""

    if not path.exists():
        return 0
    if path.is_file():
        return path.stat().st_size
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.stat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total


def get_logs_dir(backup_dir: Path) -> Path:
    return backup_dir / "logs"


def get_default_settings_paths(
    explicit: Optional[str | os.PathLike[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> list[Path]:
    """Return the search order for the settings file."""

    env = os.environ if environ is None else environ
    paths: list[Path] = []
    if explicit:
        paths.append(expand_path(explicit))
    env_value = env.get(SETTINGS_ENV_VAR)
    if env_value:
        paths.append(expand_path(env_value))
    paths.append(Path.cwd() / SETTINGS_FILENAME)
    return paths
