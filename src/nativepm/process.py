"""Blocking external process execution with cancellation support."""

from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from nativepm.errors import BuildCancelledError

DIAGNOSTIC_LIMIT = 2000


@dataclass(frozen=True, slots=True)
class CommandSpec:
    argv: tuple[str, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    cwd: Path | None = None

    def display(self) -> str:
        return " ".join(self.argv)


@dataclass(frozen=True, slots=True)
class ProcessResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def diagnostics(self, limit: int = DIAGNOSTIC_LIMIT) -> str:
        """Return the tail of captured output, stderr first."""
        text = self.stderr.strip() or self.stdout.strip()
        return text[-limit:]


class ProcessRunner(Protocol):
    def run(
        self,
        command: str,
        arguments: Sequence[str] = (),
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessResult:
        """Run *command* to completion and capture its output."""


class CancelToken:
    """Run-wide abort flag shared by the executor and process runners."""

    __slots__ = ("_event",)

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(slots=True)
class SubprocessRunner:
    cancel: CancelToken | None = None
    poll_interval: float = 0.1

    def run(
        self,
        command: str,
        arguments: Sequence[str] = (),
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessResult:
        argv = [command, *arguments]
        full_env = None if env is None else {**os.environ, **env}
        proc = subprocess.Popen(
            argv,
            cwd=str(cwd) if cwd is not None else None,
            env=full_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        try:
            stdout, stderr = self._communicate(proc, argv)
        finally:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
        return ProcessResult(exit_code=proc.returncode, stdout=stdout, stderr=stderr)

    def _communicate(self, proc: subprocess.Popen[str], argv: list[str]) -> tuple[str, str]:
        if self.cancel is None:
            return proc.communicate()
        while True:
            if self.cancel.cancelled:
                proc.kill()
                proc.communicate()
                raise BuildCancelledError(
                    "External process was cancelled.",
                    context={"operation": "run", "command": " ".join(argv)},
                )
            try:
                return proc.communicate(timeout=self.poll_interval)
            except subprocess.TimeoutExpired:
                continue


def run_command(runner: ProcessRunner, spec: CommandSpec) -> ProcessResult:
    command, *arguments = spec.argv
    return runner.run(command, arguments, cwd=spec.cwd, env=dict(spec.env) or None)


@contextmanager
def scoped_build_dir(root: Path, *, prefix: str) -> Iterator[Path]:
    """Yield a fresh directory under *root* that is removed on every exit path."""
    root.mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=str(root)))
    try:
        yield path
    finally:
        shutil.rmtree(path, ignore_errors=True)


__all__ = [
    "CancelToken",
    "CommandSpec",
    "ProcessResult",
    "ProcessRunner",
    "SubprocessRunner",
    "run_command",
    "scoped_build_dir",
]
