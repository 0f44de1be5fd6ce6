"""Access to the platform database through its CLI and an admin psql session."""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .process import ProcessResult, ProcessRunner, StdinPayload

__all__ = [
    "DEFAULT_PSQL_PORT",
    "DatabaseTools",
    "quote_ident",
    "quote_literal",
    "sql_chunks",
]

DEFAULT_PSQL_PORT = 5432
_CHUNK_BYTES = 1024 * 1024
_FIELD_SEPARATOR = "\t"


def quote_ident(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def sql_chunks(parts: Iterable[object]) -> Iterable[bytes]:
    """Yield byte chunks for a sequence of files and inline SQL strings.

    ``Path`` parts are streamed from disk; ``str`` parts are encoded as-is.
    Every part is followed by a blank line so statements never run together.
    """

    for part in parts:
        if isinstance(part, Path):
            with part.open("rb") as handle:
                for chunk in iter(lambda: handle.read(_CHUNK_BYTES), b""):
                    yield chunk
        else:
            yield str(part).encode("utf-8")
        yield b"\n\n"


class DatabaseTools:
    """Dump tool and administrative SQL channel for one local database.

    Dumps go through the platform CLI (``supabase db dump --local``); every
    other statement is piped over stdin into ``psql`` running inside the
    database container.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        *,
        container: str,
        cli: Sequence[str] = ("npx", "supabase"),
        host: str = "localhost",
        port: int = DEFAULT_PSQL_PORT,
        user: str = "postgres",
        dbname: str = "postgres",
        password: Optional[str] = "postgres",
    ) -> None:
        if not cli:
            raise ValueError("cli must name at least one executable")
        self._runner = runner
        self._container = container
        self._cli = list(cli)
        self._host = host
        self._port = int(port)
        self._user = user
        self._dbname = dbname
        self._password = password

    @property
    def container(self) -> str:
        return self._container

    # ------------------------------------------------------------------
    def _cli_run(self, args: Sequence[str], *, check: bool = True) -> ProcessResult:
        return self._runner.run(self._cli[0], [*self._cli[1:], *args], check=check)

    def status(self) -> ProcessResult:
        """Run the status probe; the exit code is returned, never raised."""

        return self._cli_run(["status"], check=False)

    def dump(
        self,
        target: Path,
        *,
        role_only: bool = False,
        data_only: bool = False,
        use_copy: bool = False,
    ) -> ProcessResult:
        args = ["db", "dump", "--local", "--file", str(target)]
        if role_only:
            args.append("--role-only")
        if data_only:
            args.append("--data-only")
        if use_copy:
            args.append("--use-copy")
        return self._cli_run(args)

    # ------------------------------------------------------------------
    def _psql_args(self, *, single_transaction: bool, tuples_only: bool) -> List[str]:
        args = ["exec", "-i", self._container, "psql"]
        if single_transaction:
            args.append("--single-transaction")
        args.extend(["--variable", "ON_ERROR_STOP=1"])
        if tuples_only:
            args.extend(["--no-align", "--tuples-only", f"--field-separator={_FIELD_SEPARATOR}"])
        args.extend(
            [
                f"--host={self._host}",
                f"--port={self._port}",
                f"--username={self._user}",
                f"--dbname={self._dbname}",
            ]
        )
        return args

    def _env(self) -> Optional[dict]:
        if self._password is None:
            return None
        return {"PGPASSWORD": self._password}

    def execute(self, sql: StdinPayload, *, single_transaction: bool = False) -> ProcessResult:
        """Pipe *sql* into an admin session, stopping at the first error."""

        return self._runner.run(
            "docker",
            self._psql_args(single_transaction=single_transaction, tuples_only=False),
            input=sql,
            env=self._env(),
        )

    def query(self, sql: str) -> List[List[str]]:
        """Run a read query and return its rows as lists of text fields."""

        result = self._runner.run(
            "docker",
            self._psql_args(single_transaction=False, tuples_only=True),
            input=sql,
            env=self._env(),
        )
        rows: List[List[str]] = []
        for line in result.stdout.splitlines():
            if not line.strip():
                continue
            rows.append(line.split(_FIELD_SEPARATOR))
        return rows
