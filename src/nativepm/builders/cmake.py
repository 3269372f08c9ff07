"""CMake build system."""

from __future__ import annotations

import re
from dataclasses import dataclass

from nativepm.builders.base import BuildContext
from nativepm.process import CommandSpec

_FEATURE_CHARS = re.compile(r"[^A-Za-z0-9]+")


@dataclass(slots=True)
class CMakeBuildSystem:
    name: str = "cmake"
    tool: str = "cmake"

    def configure(self, ctx: BuildContext) -> CommandSpec:
        config = ctx.configuration
        argv = [
            self.tool,
            "-S",
            str(ctx.require_source()),
            "-B",
            str(ctx.build_dir),
            f"-DCMAKE_BUILD_TYPE={config.build_type}",
            f"-DCMAKE_INSTALL_PREFIX={config.install_prefix}",
            f"-DCMAKE_CXX_STANDARD={ctx.fingerprint.cxx_standard.value % 100:02d}",
            "-DCMAKE_CXX_STANDARD_REQUIRED=ON",
        ]
        if ctx.toolchain.known and ctx.toolchain.path:
            argv.append(f"-DCMAKE_CXX_COMPILER={ctx.toolchain.path}")
        for feature in sorted(config.features):
            argv.append(f"-DWITH_{feature_flag(feature)}=ON")
        if config.verbose:
            argv.append("-DCMAKE_VERBOSE_MAKEFILE=ON")
        argv.extend(config.extra_args)
        return CommandSpec(argv=tuple(argv))

    def build(self, ctx: BuildContext) -> CommandSpec:
        argv = [self.tool, "--build", str(ctx.build_dir), "--parallel", str(ctx.parallelism)]
        if ctx.configuration.verbose:
            argv.append("--verbose")
        return CommandSpec(argv=tuple(argv))

    def install(self, ctx: BuildContext) -> CommandSpec:
        return CommandSpec(
            argv=(self.tool, "--install", str(ctx.build_dir)),
            env={"DESTDIR": str(ctx.stage_dir)},
        )


def feature_flag(feature: str) -> str:
    return _FEATURE_CHARS.sub("_", feature).strip("_").upper()
