"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import pytest

from nativepm.cache import MemoryArtifactCache
from nativepm.observability import StructuredLogger
from nativepm.process import ProcessResult
from nativepm.settings import Settings
from nativepm.toolchain import CompilerFamily, TargetDescriptor, ToolchainIdentity


@dataclass(frozen=True)
class RecordedCall:
    command: str
    arguments: tuple[str, ...]
    cwd: Path | None
    env: dict[str, str] | None

    @property
    def display(self) -> str:
        return " ".join((self.command, *self.arguments))


class FakeRunner:
    """Process runner that records every call and replays scripted results.

    ``scripted`` maps a substring of the command line to either a
    :class:`ProcessResult` or an exception to raise. The first matching
    marker wins; unmatched commands get ``default``.
    """

    def __init__(
        self,
        scripted: Mapping[str, ProcessResult | BaseException] | None = None,
        *,
        default: ProcessResult | None = None,
        on_run: Callable[[RecordedCall], None] | None = None,
    ) -> None:
        self.scripted = dict(scripted or {})
        self.default = default or ProcessResult(exit_code=0, stdout="", stderr="")
        self.on_run = on_run
        self.calls: list[RecordedCall] = []
        self._lock = threading.Lock()

    def run(
        self,
        command: str,
        arguments: Sequence[str] = (),
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessResult:
        call = RecordedCall(
            command=command,
            arguments=tuple(arguments),
            cwd=cwd,
            env=dict(env) if env is not None else None,
        )
        with self._lock:
            self.calls.append(call)
        if self.on_run is not None:
            self.on_run(call)
        for marker, outcome in self.scripted.items():
            if marker in call.display:
                if isinstance(outcome, BaseException):
                    raise outcome
                return outcome
        return self.default

    def calls_matching(self, marker: str) -> list[RecordedCall]:
        with self._lock:
            return [call for call in self.calls if marker in call.display]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def gcc_toolchain() -> ToolchainIdentity:
    return ToolchainIdentity(
        family=CompilerFamily.GCC,
        version="13.2.0",
        path="/usr/bin/g++",
        stdlib="libstdc++",
    )


@pytest.fixture
def linux_target() -> TargetDescriptor:
    return TargetDescriptor(cpu_arch="x86_64", os="linux")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        jobs=2,
        build_parallelism=2,
        work_root=tmp_path / "work",
        cache_root=tmp_path / "cache",
        poll_interval=0.01,
    )


@pytest.fixture
def memory_cache(tmp_path: Path) -> MemoryArtifactCache:
    return MemoryArtifactCache(artifact_root=tmp_path / "artifacts")


@pytest.fixture
def logger() -> StructuredLogger:
    return StructuredLogger()
