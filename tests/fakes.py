"""Hand-written fakes shared by the backup tests."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from core.process import ProcessError, ProcessResult

Matcher = Union[str, Callable[[List[str], str], bool]]


@dataclass
class Call:
    argv: List[str]
    input: str
    env: Optional[dict]

    @property
    def text(self) -> str:
        return " ".join(self.argv)


@dataclass
class _Rule:
    match: Matcher
    stdout: Any = ""
    stderr: str = ""
    exit_code: int = 0
    effect: Optional[Callable[[List[str], str], None]] = None
    raises: Optional[BaseException] = None

    def matches(self, argv: List[str], payload: str) -> bool:
        if callable(self.match):
            return bool(self.match(argv, payload))
        return self.match in " ".join(argv) or (bool(payload) and self.match in payload)


def _materialize(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    if isinstance(payload, bytes):
        return payload.decode("utf-8")
    return b"".join(payload).decode("utf-8")


@dataclass
class FakeRunner:
    """Scripted stand-in for ``ProcessRunner``; the last matching rule wins."""

    calls: List[Call] = field(default_factory=list)
    rules: List[_Rule] = field(default_factory=list)

    def on(self, match: Matcher, **kwargs: Any) -> "FakeRunner":
        self.rules.append(_Rule(match=match, **kwargs))
        return self

    def run(self, command, args=(), *, input=None, env=None, capture_output=True, check=True, cwd=None):
        argv = [command, *args]
        payload = _materialize(input)
        self.calls.append(Call(argv=argv, input=payload, env=dict(env) if env else None))
        for rule in reversed(self.rules):
            if not rule.matches(argv, payload):
                continue
            if rule.raises is not None:
                raise rule.raises
            if rule.effect is not None:
                rule.effect(argv, payload)
            stdout = rule.stdout(argv, payload) if callable(rule.stdout) else rule.stdout
            result = ProcessResult(command=argv, stdout=stdout, stderr=rule.stderr, exit_code=rule.exit_code)
            break
        else:
            result = ProcessResult(command=argv, stdout="", stderr="", exit_code=0)
        if check and result.exit_code != 0:
            raise ProcessError(argv, result.exit_code, result.stderr)
        return result

    def find(self, needle: str) -> List[Call]:
        return [call for call in self.calls if needle in call.text or needle in call.input]


def write_dump(content: str) -> Callable[[List[str], str], None]:
    """Effect writing *content* to the ``--file`` target of a dump command."""

    def _effect(argv: List[str], _payload: str) -> None:
        target = Path(argv[argv.index("--file") + 1])
        target.write_text(content, encoding="utf-8")

    return _effect


class StubLogger:
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def info(self, event: str, **extra):
        self.events.append(("info", event, extra))

    def warning(self, event: str, **extra):
        self.events.append(("warning", event, extra))

    def error(self, event: str, **extra):
        self.events.append(("error", event, extra))

    def event(self, *, event: str, phase: str, ok: bool, **extra):
        self.events.append(("event", event, dict(extra, phase=phase, ok=ok)))

    def names(self, level: Optional[str] = None) -> List[str]:
        return [entry[1] for entry in self.events if level is None or entry[0] == level]


DATA_DUMP = """\
SET statement_timeout = 0;

COPY "auth"."users" ("id", "email") FROM stdin;
u1\tada@example.com
\\.

COPY "auth"."schema_migrations" ("version") FROM stdin;
20210101
20210202
\\.

COPY "public"."contacts" ("id", "first_name") FROM stdin;
1\tAda
2\tGrace
\\.

COPY "vault"."secrets" ("id", "secret") FROM stdin;
s1\thunter2
\\.

SELECT pg_catalog.setval('"public"."contacts_id_seq"', 2, true);
"""
