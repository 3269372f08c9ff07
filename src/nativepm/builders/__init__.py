"""External build system integrations."""

from nativepm.models import BuildKind

from .base import BuildContext, BuildSystem
from .cmake import CMakeBuildSystem
from .header_only import HeaderOnlyBuildSystem
from .script import ScriptBuildSystem


def default_build_systems() -> dict[BuildKind, BuildSystem]:
    return {
        BuildKind.CMAKE: CMakeBuildSystem(),
        BuildKind.HEADER_ONLY: HeaderOnlyBuildSystem(),
        BuildKind.SCRIPT: ScriptBuildSystem(),
    }


__all__ = [
    "BuildContext",
    "BuildSystem",
    "CMakeBuildSystem",
    "HeaderOnlyBuildSystem",
    "ScriptBuildSystem",
    "default_build_systems",
]
