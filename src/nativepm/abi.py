"""ABI fingerprints and the artifact compatibility relation.

A fingerprint captures every build property that decides whether two
compiled artifacts can be linked together. :func:`is_compatible` is the one
place that relation is defined; the resolver and the artifact cache both
consult it.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import IntEnum, StrEnum
from typing import Any

from nativepm.errors import ValidationError
from nativepm.toolchain import CompilerFamily, TargetDescriptor, ToolchainIdentity


class BuildMode(StrEnum):
    DEBUG = "Debug"
    RELEASE = "Release"

    @classmethod
    def from_build_type(cls, build_type: str) -> BuildMode:
        """Map a free-form build type (``RelWithDebInfo``, ...) onto its ABI mode."""
        return cls.DEBUG if build_type.strip().lower() == "debug" else cls.RELEASE


class CxxStandard(IntEnum):
    """Language standard levels, valued by year so numeric order is chronological."""

    CXX98 = 1998
    CXX11 = 2011
    CXX14 = 2014
    CXX17 = 2017
    CXX20 = 2020
    CXX23 = 2023

    @property
    def label(self) -> str:
        return f"c++{self.value % 100:02d}"

    @classmethod
    def parse(cls, value: str | int | CxxStandard) -> CxxStandard:
        if isinstance(value, CxxStandard):
            return value
        text = str(value).strip().lower()
        for prefix in ("c++", "gnu++", "cxx"):
            if text.startswith(prefix):
                text = text[len(prefix) :]
                break
        for member in cls:
            if text in (f"{member.value % 100:02d}", str(member.value)):
                return member
        raise ValidationError(
            f"Unsupported C++ standard `{value}`.",
            hint="Use one of 98, 11, 14, 17, 20, 23.",
            context={"operation": "parse_standard", "value": str(value)},
        )


@dataclass(frozen=True, slots=True, order=True)
class ABIFingerprint:
    compiler: CompilerFamily
    compiler_version: str
    stdlib: str
    cpu_arch: str
    os: str
    mode: BuildMode
    cxx_standard: CxxStandard

    def to_record(self) -> dict[str, Any]:
        return {
            "compiler": self.compiler.value,
            "compiler_version": self.compiler_version,
            "stdlib": self.stdlib,
            "cpu_arch": self.cpu_arch,
            "os": self.os,
            "debug_mode": self.mode is BuildMode.DEBUG,
            "cxx_standard": self.cxx_standard.label,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> ABIFingerprint:
        try:
            return cls(
                compiler=CompilerFamily(record["compiler"]),
                compiler_version=str(record["compiler_version"]),
                stdlib=str(record["stdlib"]),
                cpu_arch=str(record["cpu_arch"]),
                os=str(record["os"]),
                mode=BuildMode.DEBUG if record["debug_mode"] else BuildMode.RELEASE,
                cxx_standard=CxxStandard.parse(record["cxx_standard"]),
            )
        except (KeyError, ValueError) as exc:
            raise ValidationError(
                "Invalid ABI fingerprint record.",
                hint=str(exc),
                context={"operation": "fingerprint_from_record"},
            ) from exc

    def canonical(self) -> str:
        return json.dumps(self.to_record(), sort_keys=True, separators=(",", ":"))

    def with_standard(self, standard: CxxStandard) -> ABIFingerprint:
        return ABIFingerprint(
            compiler=self.compiler,
            compiler_version=self.compiler_version,
            stdlib=self.stdlib,
            cpu_arch=self.cpu_arch,
            os=self.os,
            mode=self.mode,
            cxx_standard=standard,
        )


def fingerprint(
    toolchain: ToolchainIdentity,
    target: TargetDescriptor,
    mode: BuildMode,
    std_level: CxxStandard,
) -> ABIFingerprint:
    return ABIFingerprint(
        compiler=toolchain.family,
        compiler_version=major_minor(toolchain.version),
        stdlib=toolchain.stdlib or "unknown",
        cpu_arch=target.cpu_arch,
        os=target.os,
        mode=mode,
        cxx_standard=std_level,
    )


def major_minor(version: str) -> str:
    """Truncate ``13.2.1`` to ``13.2``; opaque versions pass through."""
    parts = version.split(".")
    if len(parts) >= 2 and parts[0].isdigit() and parts[1].isdigit():
        return f"{parts[0]}.{parts[1]}"
    return version


def is_compatible(required: ABIFingerprint, candidate: ABIFingerprint) -> bool:
    """Return whether an artifact built as *candidate* may satisfy *required*.

    Everything but the standard level must match exactly. An artifact built
    against a newer standard satisfies an older-standard consumer, never the
    other way around.
    """
    return (
        required.compiler == candidate.compiler
        and required.stdlib == candidate.stdlib
        and required.cpu_arch == candidate.cpu_arch
        and required.os == candidate.os
        and required.mode == candidate.mode
        and required.cxx_standard <= candidate.cxx_standard
    )


__all__ = [
    "ABIFingerprint",
    "BuildMode",
    "CxxStandard",
    "fingerprint",
    "is_compatible",
    "major_minor",
]
