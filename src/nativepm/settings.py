"""Run-wide settings and global build defaults."""

from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from nativepm.abi import CxxStandard
from nativepm.config import BuildConfiguration
from nativepm.errors import ValidationError


def _default_jobs() -> int:
    return max(1, os.cpu_count() or 1)


@dataclass(frozen=True, slots=True)
class Settings:
    build_type: str = "Release"
    install_prefix: str = "/usr/local"
    cxx_standard: CxxStandard = CxxStandard.CXX17
    jobs: int = field(default_factory=_default_jobs)
    build_parallelism: int = field(default_factory=_default_jobs)
    work_root: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "nativepm_build"
    )
    cache_root: Path = field(default_factory=lambda: Path.home() / ".nativepm" / "cache")
    report_dir: Path | None = None
    require_toolchain: bool = False
    max_resolution_passes: int = 32
    poll_interval: float = 0.1

    def global_defaults(self) -> BuildConfiguration:
        return BuildConfiguration(
            build_type=self.build_type,
            install_prefix=self.install_prefix,
        )

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> Settings:
        """Build settings from an already-parsed configuration mapping."""
        known = {item.name for item in fields(cls)}
        unknown = sorted(set(payload) - known)
        if unknown:
            raise ValidationError(
                "Unknown settings keys.",
                hint=f"Supported keys: {', '.join(sorted(known))}.",
                context={"operation": "settings", "keys": ", ".join(unknown)},
            )

        values: dict[str, Any] = {}
        if "build_type" in payload:
            values["build_type"] = _required_str(payload, "build_type")
        if "install_prefix" in payload:
            values["install_prefix"] = _required_str(payload, "install_prefix")
        if "cxx_standard" in payload:
            values["cxx_standard"] = CxxStandard.parse(payload["cxx_standard"])
        for key in ("jobs", "build_parallelism", "max_resolution_passes"):
            if key in payload:
                values[key] = _positive_int(payload, key)
        for key in ("work_root", "cache_root"):
            if key in payload:
                values[key] = Path(_required_str(payload, key)).expanduser()
        if payload.get("report_dir") is not None:
            values["report_dir"] = Path(_required_str(payload, "report_dir")).expanduser()
        if "require_toolchain" in payload:
            flag = payload["require_toolchain"]
            if not isinstance(flag, bool):
                raise ValidationError(
                    "Invalid settings `require_toolchain` value.",
                    context={"operation": "settings", "key": "require_toolchain"},
                )
            values["require_toolchain"] = flag
        if "poll_interval" in payload:
            interval = payload["poll_interval"]
            if isinstance(interval, bool) or not isinstance(interval, int | float) or interval <= 0:
                raise ValidationError(
                    "Invalid settings `poll_interval` value.",
                    context={"operation": "settings", "key": "poll_interval"},
                )
            values["poll_interval"] = float(interval)
        return cls(**values)


def _required_str(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise ValidationError(
            f"Invalid settings `{key}` value.",
            context={"operation": "settings", "key": key},
        )
    return value


def _positive_int(payload: Mapping[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ValidationError(
            f"Invalid settings `{key}` value.",
            hint="Expected a positive integer.",
            context={"operation": "settings", "key": key},
        )
    return value
