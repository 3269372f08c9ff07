"""Host toolchain detection and target description."""

from __future__ import annotations

import platform
import re
import shutil
import sys
import warnings
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import assert_never

from nativepm.errors import DetectionUnavailableError, ValidationError
from nativepm.observability import StructuredLogger
from nativepm.process import ProcessRunner

VERSION_PATTERN = re.compile(r"(\d+)\.(\d+)(?:\.(\d+))?")


class CompilerFamily(StrEnum):
    GCC = "gcc"
    CLANG = "clang"
    MSVC = "msvc"
    UNKNOWN = "unknown"


class ToolchainUnavailableWarning(UserWarning):
    """Warning raised when no compiler responds on the host."""


@dataclass(frozen=True, slots=True)
class ToolchainIdentity:
    family: CompilerFamily
    version: str
    path: str
    stdlib: str

    @property
    def known(self) -> bool:
        return self.family is not CompilerFamily.UNKNOWN

    def to_record(self) -> dict[str, str]:
        return {
            "compiler": self.family.value,
            "compiler_version": self.version,
            "path": self.path,
            "stdlib": self.stdlib,
        }


UNKNOWN_TOOLCHAIN = ToolchainIdentity(
    family=CompilerFamily.UNKNOWN,
    version="unknown",
    path="",
    stdlib="unknown",
)


@dataclass(frozen=True, slots=True)
class CompilerProbe:
    family: CompilerFamily
    executable: str
    version_args: tuple[str, ...]
    stdlib: str


DEFAULT_PROBES: tuple[CompilerProbe, ...] = (
    CompilerProbe(CompilerFamily.GCC, "g++", ("--version",), "libstdc++"),
    CompilerProbe(CompilerFamily.CLANG, "clang++", ("--version",), "libc++"),
    CompilerProbe(CompilerFamily.MSVC, "cl.exe", ("/?",), "msvc_stl"),
)


@dataclass(slots=True)
class ToolchainDetector:
    """Probe host compilers in priority order and report the first that responds."""

    runner: ProcessRunner
    which: Callable[[str], str | None] = shutil.which
    probes: tuple[CompilerProbe, ...] = DEFAULT_PROBES
    logger: StructuredLogger = field(default_factory=StructuredLogger)

    def detect(self) -> ToolchainIdentity:
        for probe in self.probes:
            identity = self._try_probe(probe)
            if identity is not None:
                self.logger.log(
                    operation="detect",
                    message=f"Detected {describe_toolchain(identity)}.",
                    extra=identity.to_record(),
                )
                return identity

        warnings.warn(
            "No C++ compiler responded on this host; continuing with an unknown toolchain.",
            ToolchainUnavailableWarning,
            stacklevel=2,
        )
        self.logger.log(
            operation="detect",
            message="No compiler responded to a version query.",
            level="warning",
            extra={"probed": [probe.executable for probe in self.probes]},
        )
        return UNKNOWN_TOOLCHAIN

    def _try_probe(self, probe: CompilerProbe) -> ToolchainIdentity | None:
        path = self.which(probe.executable)
        if path is None:
            return None
        try:
            result = self.runner.run(path, probe.version_args)
        except OSError:
            return None
        if not result.ok:
            return None
        return ToolchainIdentity(
            family=probe.family,
            version=parse_compiler_version(result.stdout + "\n" + result.stderr),
            path=path,
            stdlib=probe.stdlib,
        )


def parse_compiler_version(output: str) -> str:
    match = VERSION_PATTERN.search(output)
    if match is None:
        return "unknown"
    return ".".join(part for part in match.groups() if part is not None)


def require_toolchain(identity: ToolchainIdentity) -> ToolchainIdentity:
    if not identity.known:
        raise DetectionUnavailableError(
            "No usable C++ toolchain was detected.",
            hint="Install g++, clang++ or MSVC and ensure it is on PATH.",
            context={"operation": "detect"},
        )
    return identity


def describe_toolchain(identity: ToolchainIdentity) -> str:
    match identity.family:
        case CompilerFamily.GCC:
            name = "GNU g++"
        case CompilerFamily.CLANG:
            name = "LLVM clang++"
        case CompilerFamily.MSVC:
            name = "Microsoft Visual C++"
        case CompilerFamily.UNKNOWN:
            return "unknown toolchain"
        case _:
            assert_never(identity.family)
    return f"{name} {identity.version} ({identity.stdlib}) at {identity.path}"


# ── Target description ──────────────────────────────────────────────

_ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
    "armv7l": "arm",
    "arm": "arm",
}

_OS_ALIASES = {
    "linux": "linux",
    "darwin": "macos",
    "apple": "macos",
    "macos": "macos",
    "win32": "windows",
    "windows": "windows",
}


@dataclass(frozen=True, slots=True)
class TargetDescriptor:
    cpu_arch: str
    os: str

    @property
    def triple(self) -> str:
        vendor = "apple" if self.os == "macos" else "pc" if self.os == "windows" else "unknown"
        return f"{self.cpu_arch}-{vendor}-{self.os}"

    @classmethod
    def from_triple(cls, triple: str) -> TargetDescriptor:
        parts = [part for part in triple.strip().lower().split("-") if part]
        if len(parts) < 2:
            raise ValidationError(
                f"Target triple `{triple}` must have at least an architecture and a system.",
                context={"operation": "target", "triple": triple},
            )
        arch = normalize_arch(parts[0])
        os_name = "unknown"
        for part in parts[1:]:
            if part in _OS_ALIASES:
                os_name = _OS_ALIASES[part]
                break
        return cls(cpu_arch=arch, os=os_name)


def normalize_arch(machine: str) -> str:
    return _ARCH_ALIASES.get(machine.lower(), "unknown")


def normalize_os(system: str) -> str:
    lowered = system.lower()
    for prefix, name in _OS_ALIASES.items():
        if lowered.startswith(prefix):
            return name
    return "unknown"


def host_target() -> TargetDescriptor:
    return TargetDescriptor(cpu_arch=normalize_arch(platform.machine()), os=normalize_os(sys.platform))


__all__ = [
    "DEFAULT_PROBES",
    "UNKNOWN_TOOLCHAIN",
    "CompilerFamily",
    "CompilerProbe",
    "TargetDescriptor",
    "ToolchainDetector",
    "ToolchainIdentity",
    "ToolchainUnavailableWarning",
    "describe_toolchain",
    "host_target",
    "normalize_arch",
    "normalize_os",
    "parse_compiler_version",
    "require_toolchain",
]
