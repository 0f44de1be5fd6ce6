"""Error hierarchy for backup operations."""
from __future__ import annotations

from typing import Iterable, Optional, Sequence

from core.process import ProcessError


class BackupError(RuntimeError):
    """Base exception for backup related failures."""

    detail: str = ""


class ConfigurationError(BackupError):
    """Raised when a required directory or option is missing or invalid."""


class ConnectivityError(BackupError):
    """Raised when a dependent service cannot be reached."""

    def __init__(self, message: str, *, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.hint = hint
        self.detail = hint or ""


class ArtifactError(BackupError):
    """Raised when expected backup artifacts are missing or unreadable."""

    def __init__(self, message: str, *, missing: Iterable[str] = ()) -> None:
        super().__init__(message)
        self.missing = list(missing)
        self.detail = ", ".join(self.missing)


class ExecutionError(BackupError):
    """Raised when an external command exited with a non-zero status."""

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        exit_code: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = list(command)
        self.exit_code = exit_code
        self.stderr = stderr or ""
        self.detail = self.stderr.strip()

    @classmethod
    def from_process(cls, step: str, exc: ProcessError) -> "ExecutionError":
        return cls(
            f"{step} failed (exit code {exc.exit_code})",
            command=exc.command,
            exit_code=exc.exit_code,
            stderr=exc.stderr,
        )


class IntegrityError(BackupError):
    """Raised when restored data or attachments fail a consistency check."""


__all__ = [
    "ArtifactError",
    "BackupError",
    "ConfigurationError",
    "ConnectivityError",
    "ExecutionError",
    "IntegrityError",
]
