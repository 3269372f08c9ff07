"""Typed interfaces for external build systems."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Protocol

from nativepm.abi import ABIFingerprint
from nativepm.config import BuildConfiguration
from nativepm.errors import ValidationError
from nativepm.models import PackageManifest
from nativepm.process import CommandSpec
from nativepm.toolchain import ToolchainIdentity


@dataclass(frozen=True, slots=True)
class BuildContext:
    manifest: PackageManifest
    configuration: BuildConfiguration
    fingerprint: ABIFingerprint
    toolchain: ToolchainIdentity
    build_dir: Path
    stage_dir: Path
    parallelism: int = 1

    @property
    def name(self) -> str:
        return self.manifest.name

    @property
    def staged_prefix(self) -> Path:
        """Install prefix re-rooted under the staging directory."""
        prefix = PurePath(self.configuration.install_prefix)
        relative = prefix.relative_to(prefix.anchor) if prefix.anchor else prefix
        return self.stage_dir / relative

    def require_source(self) -> Path:
        source = self.manifest.source
        if source is None or not source.exists():
            raise ValidationError(
                f"Source tree for `{self.manifest.package}` is not available.",
                hint="Fetch the package sources before building.",
                context={
                    "operation": "build",
                    "package": self.name,
                    "source": str(source) if source is not None else "",
                },
            )
        return source


class BuildSystem(Protocol):
    name: str

    def configure(self, ctx: BuildContext) -> CommandSpec | None:
        """Return the configure command, or None when there is nothing to configure."""

    def build(self, ctx: BuildContext) -> CommandSpec | None:
        """Return the compile command, or None when there is nothing to compile."""

    def install(self, ctx: BuildContext) -> CommandSpec | None:
        """Return the command that installs into ``ctx.stage_dir``."""
