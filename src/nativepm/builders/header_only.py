"""Header-only packages: nothing to compile, headers are copied into the prefix."""

from __future__ import annotations

from dataclasses import dataclass

from nativepm.builders.base import BuildContext
from nativepm.process import CommandSpec


@dataclass(slots=True)
class HeaderOnlyBuildSystem:
    name: str = "header_only"
    tool: str = "cmake"
    include_dir: str = "include"

    def configure(self, ctx: BuildContext) -> None:
        return None

    def build(self, ctx: BuildContext) -> None:
        return None

    def install(self, ctx: BuildContext) -> CommandSpec:
        source = ctx.require_source() / self.include_dir
        return CommandSpec(
            argv=(
                self.tool,
                "-E",
                "copy_directory",
                str(source),
                str(ctx.staged_prefix / "include"),
            )
        )
