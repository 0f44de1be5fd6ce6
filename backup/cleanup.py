"""Remove the artifacts of a run that did not finish."""
from __future__ import annotations

import shutil
from pathlib import Path
from typing import List

from .logs import BackupLogger
from .naming import artifact_paths


class PartialFailureCleaner:
    """Track paths created by one run and delete them if the run fails.

    Used as a context manager: an exception leaving the block (including
    ``KeyboardInterrupt``) removes every tracked path that exists, newest
    first, then re-raises. A clean exit forgets the tracked paths.
    """

    def __init__(self, logger: BackupLogger, *, phase: str) -> None:
        self._logger = logger
        self._phase = phase
        self._paths: List[Path] = []

    @property
    def tracked(self) -> List[Path]:
        return list(self._paths)

    def track(self, path: Path) -> Path:
        if path not in self._paths:
            self._paths.append(path)
        return path

    def track_set(self, directory: Path, identifier: str) -> None:
        """Track every artifact and temporary file of *identifier*."""

        for artifact in artifact_paths(directory, identifier):
            self.track(artifact.location)
            if not artifact.is_directory:
                self.track(artifact.location.with_name(artifact.location.name + ".filtering"))
                self.track(artifact.location.with_name(artifact.location.name + ".tmp"))

    def cleanup(self) -> List[Path]:
        removed: List[Path] = []
        for path in reversed(self._paths):
            if not path.exists() and not path.is_symlink():
                continue
            try:
                if path.is_dir() and not path.is_symlink():
                    shutil.rmtree(path)
                else:
                    path.unlink()
            except OSError as exc:
                self._logger.warning("cleanup_failed", phase=self._phase, path=str(path), error=str(exc))
                continue
            removed.append(path)
        if removed:
            self._logger.warning("partial_artifacts_removed", phase=self._phase, paths=[str(p) for p in removed])
        self._paths.clear()
        return removed

    def discard(self) -> None:
        self._paths.clear()

    def __enter__(self) -> "PartialFailureCleaner":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if exc_type is None:
            self.discard()
        else:
            self.cleanup()
        return False


__all__ = ["PartialFailureCleaner"]
