"""Custom build-script packages."""

from __future__ import annotations

from dataclasses import dataclass

from nativepm.builders.base import BuildContext
from nativepm.errors import ValidationError
from nativepm.process import CommandSpec


@dataclass(slots=True)
class ScriptBuildSystem:
    """Run the manifest's script once, as the build step.

    The script installs into ``$DESTDIR$NATIVEPM_PREFIX`` itself.
    """

    name: str = "script"
    shell: str = "sh"

    def configure(self, ctx: BuildContext) -> None:
        return None

    def build(self, ctx: BuildContext) -> CommandSpec:
        script = ctx.manifest.script
        if not script:
            raise ValidationError(
                f"Package `{ctx.manifest.package}` declares a script build without a script.",
                context={"operation": "build", "package": ctx.name},
            )
        source = ctx.manifest.source
        return CommandSpec(
            argv=(self.shell, "-c", script),
            env=script_environment(ctx),
            cwd=source if source is not None and source.exists() else ctx.build_dir,
        )

    def install(self, ctx: BuildContext) -> None:
        return None


def script_environment(ctx: BuildContext) -> dict[str, str]:
    config = ctx.configuration
    env = {
        "NATIVEPM_PACKAGE": ctx.name,
        "NATIVEPM_VERSION": ctx.manifest.version,
        "NATIVEPM_BUILD_TYPE": config.build_type,
        "NATIVEPM_PREFIX": config.install_prefix,
        "NATIVEPM_CXX_STANDARD": ctx.fingerprint.cxx_standard.label,
        "NATIVEPM_FEATURES": ",".join(sorted(config.features)),
        "NATIVEPM_BUILD_DIR": str(ctx.build_dir),
        "NATIVEPM_JOBS": str(ctx.parallelism),
        "DESTDIR": str(ctx.stage_dir),
    }
    if ctx.toolchain.known and ctx.toolchain.path:
        env["CXX"] = ctx.toolchain.path
    return env
