"""Thin wrapper around external commands used by backup and restore."""
from __future__ import annotations

import os
import subprocess
import tempfile
from dataclasses import dataclass
from typing import IO, Iterable, Mapping, Optional, Sequence, Union

__all__ = ["ProcessError", "ProcessResult", "ProcessRunner", "StdinPayload"]

StdinPayload = Union[str, bytes, Iterable[bytes]]


class ProcessError(RuntimeError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(self, command: Sequence[str], exit_code: int, stderr: str = "") -> None:
        self.command = list(command)
        self.exit_code = int(exit_code)
        self.stderr = stderr or ""
        summary = " ".join(self.command[:4])
        super().__init__(f"{summary} exited with status {self.exit_code}")


@dataclass(slots=True)
class ProcessResult:
    command: list[str]
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    return data.decode("utf-8", errors="replace")


def _close_quietly(stream: IO[bytes]) -> None:
    try:
        stream.close()
    except OSError:
        pass


class ProcessRunner:
    """Run commands with captured output and optional streamed stdin.

    ``input`` may be text, bytes or an iterable of byte chunks. Chunked input
    is written to the child while its output is spooled to temporary files,
    which keeps large SQL payloads out of memory without risking a pipe
    deadlock.
    """

    def run(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        input: Optional[StdinPayload] = None,
        env: Optional[Mapping[str, str]] = None,
        capture_output: bool = True,
        check: bool = True,
        cwd: Optional[str] = None,
    ) -> ProcessResult:
        argv = [command, *args]
        full_env = None
        if env:
            full_env = dict(os.environ)
            full_env.update(env)
        if input is None or isinstance(input, (str, bytes)):
            payload = input.encode("utf-8") if isinstance(input, str) else input
            completed = subprocess.run(
                argv,
                input=payload,
                stdout=subprocess.PIPE if capture_output else None,
                stderr=subprocess.PIPE if capture_output else None,
                env=full_env,
                cwd=cwd,
                check=False,
            )
            result = ProcessResult(
                command=argv,
                stdout=_decode(completed.stdout),
                stderr=_decode(completed.stderr),
                exit_code=completed.returncode,
            )
        else:
            result = self._run_streamed(argv, input, env=full_env, capture_output=capture_output, cwd=cwd)
        if check and result.exit_code != 0:
            raise ProcessError(argv, result.exit_code, result.stderr)
        return result

    def _run_streamed(
        self,
        argv: list[str],
        chunks: Iterable[bytes],
        *,
        env: Optional[Mapping[str, str]],
        capture_output: bool,
        cwd: Optional[str],
    ) -> ProcessResult:
        out_spool: Optional[IO[bytes]] = tempfile.TemporaryFile() if capture_output else None
        err_spool: Optional[IO[bytes]] = tempfile.TemporaryFile() if capture_output else None
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.PIPE,
                stdout=out_spool,
                stderr=err_spool,
                env=env,
                cwd=cwd,
            )
            stdin = proc.stdin
            if stdin is None:
                proc.kill()
                proc.wait()
                raise ProcessError(argv, -1, "stdin pipe was not opened")
            try:
                for chunk in chunks:
                    if chunk:
                        stdin.write(chunk)
            except BrokenPipeError:
                # The child exited early; its exit code and stderr explain why.
                pass
            except BaseException:
                # Kill first; closing stdin would end the input cleanly.
                proc.kill()
                proc.wait()
                _close_quietly(stdin)
                raise
            _close_quietly(stdin)
            exit_code = proc.wait()
            stdout = stderr = ""
            if out_spool is not None and err_spool is not None:
                out_spool.seek(0)
                err_spool.seek(0)
                stdout = _decode(out_spool.read())
                stderr = _decode(err_spool.read())
            return ProcessResult(command=argv, stdout=stdout, stderr=stderr, exit_code=exit_code)
        finally:
            if out_spool is not None:
                out_spool.close()
            if err_spool is not None:
                err_spool.close()
