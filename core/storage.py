"""Object-store transports: container filesystem access and the HTTP API."""
from __future__ import annotations

import shlex
from pathlib import Path, PurePosixPath
from typing import List, Optional
from urllib.parse import quote

import requests

from .process import ProcessRunner

__all__ = ["ContainerStore", "HttpObjectStore", "StorageUploadError"]


class StorageUploadError(RuntimeError):
    """Raised when a single object could not be uploaded."""

    def __init__(self, key: str, reason: str) -> None:
        self.key = key
        self.reason = reason
        super().__init__(f"upload of {key} failed: {reason}")


class ContainerStore:
    """Filesystem view of the attachment root inside the storage container."""

    def __init__(self, runner: ProcessRunner, *, container: str, root: str) -> None:
        self._runner = runner
        self._container = container
        self._root = str(PurePosixPath(root))

    @property
    def container(self) -> str:
        return self._container

    @property
    def root(self) -> str:
        return self._root

    def _sh(self, script: str, *, check: bool = True) -> str:
        result = self._runner.run("docker", ["exec", self._container, "sh", "-c", script], check=check)
        return result.stdout

    # ------------------------------------------------------------------
    def is_running(self) -> bool:
        result = self._runner.run(
            "docker",
            ["ps", "--filter", f"name={self._container}", "--format", "{{.Names}}"],
            check=False,
        )
        if result.exit_code != 0:
            return False
        return self._container in result.stdout.split()

    def root_exists(self) -> bool:
        result = self._runner.run(
            "docker", ["exec", self._container, "test", "-d", self._root], check=False
        )
        return result.exit_code == 0

    def file_count(self) -> int:
        out = self._sh(f"find {shlex.quote(self._root)} -type f | wc -l")
        return _parse_int(out)

    def total_bytes(self) -> int:
        out = self._sh(f"du -sb {shlex.quote(self._root)} 2>/dev/null | cut -f1 || echo 0")
        return _parse_int(out)

    def list_files(self) -> List[str]:
        root = shlex.quote(self._root)
        out = self._sh(f"cd {root} && find . -type f | sed 's|^\\./||' | sort")
        return [line.strip() for line in out.splitlines() if line.strip()]

    # ------------------------------------------------------------------
    def copy_out(self, destination: Path) -> None:
        """Copy the attachment root into *destination* (a local directory)."""

        destination.mkdir(parents=True, exist_ok=True)
        self._runner.run("docker", ["cp", f"{self._container}:{self._root}", str(destination)])

    def copy_in(self, source: Path) -> None:
        """Copy local *source* so that it becomes the attachment root."""

        local = source.resolve().as_posix()
        self._runner.run("docker", ["cp", local, f"{self._container}:{self._root}"])

    def clear(self) -> None:
        """Remove the attachment root and recreate its parent directory."""

        parent = str(PurePosixPath(self._root).parent)
        self._runner.run("docker", ["exec", self._container, "rm", "-rf", self._root])
        self._runner.run("docker", ["exec", self._container, "mkdir", "-p", parent])


class HttpObjectStore:
    """Per-object uploads through the storage REST API."""

    def __init__(
        self,
        base_url: str,
        *,
        bucket: str,
        service_key: str,
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._bucket = bucket
        self._service_key = service_key
        self._timeout = float(timeout)
        self._session = session or requests.Session()

    def object_url(self, key: str) -> str:
        return f"{self._base_url}/storage/v1/object/{quote(self._bucket)}/{quote(key)}"

    def _headers(self, content_type: str) -> dict:
        return {
            "Authorization": f"Bearer {self._service_key}",
            "apikey": self._service_key,
            "Content-Type": content_type,
            "x-upsert": "true",
        }

    def upload(self, key: str, path: Path, *, content_type: str) -> None:
        try:
            with path.open("rb") as handle:
                response = self._session.put(
                    self.object_url(key),
                    data=handle,
                    headers=self._headers(content_type),
                    timeout=self._timeout,
                )
        except (OSError, requests.RequestException) as exc:
            raise StorageUploadError(key, str(exc)) from exc
        if response.status_code >= 400:
            detail = (response.text or "").strip()[:200]
            raise StorageUploadError(key, f"HTTP {response.status_code} {detail}".strip())

    def close(self) -> None:
        self._session.close()


def _parse_int(text: str) -> int:
    for token in (text or "").split():
        try:
            return int(token)
        except ValueError:
            continue
    return 0

