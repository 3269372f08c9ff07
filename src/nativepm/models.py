"""Core typed dataclasses for packages, requests and build state."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from nativepm.abi import CxxStandard
from nativepm.config import EMPTY_LAYER, ConfigLayer
from nativepm.errors import ValidationError


class BuildKind(StrEnum):
    CMAKE = "cmake"
    HEADER_ONLY = "header_only"
    SCRIPT = "script"


class BuildState(StrEnum):
    PENDING = "Pending"
    RESOLVING = "Resolving"
    CONFIGURE_PENDING = "ConfigurePending"
    CONFIGURING = "Configuring"
    BUILDING = "Building"
    INSTALLING = "Installing"
    CACHED = "Cached"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (BuildState.CACHED, BuildState.FAILED)


_FORWARD: dict[BuildState, frozenset[BuildState]] = {
    BuildState.PENDING: frozenset({BuildState.RESOLVING, BuildState.CACHED}),
    BuildState.RESOLVING: frozenset({BuildState.CONFIGURE_PENDING, BuildState.CACHED}),
    BuildState.CONFIGURE_PENDING: frozenset({BuildState.CONFIGURING}),
    BuildState.CONFIGURING: frozenset({BuildState.BUILDING}),
    BuildState.BUILDING: frozenset({BuildState.INSTALLING}),
    BuildState.INSTALLING: frozenset({BuildState.CACHED}),
}


def check_transition(current: BuildState, new: BuildState) -> None:
    """Raise unless ``current -> new`` is an edge of the build state machine."""
    if current.is_terminal:
        allowed: frozenset[BuildState] = frozenset()
    elif new is BuildState.FAILED:
        return
    else:
        allowed = _FORWARD[current]
    if new not in allowed:
        raise ValidationError(
            f"Illegal build state transition {current} -> {new}.",
            context={"operation": "transition", "from": current.value, "to": new.value},
        )


@dataclass(frozen=True, slots=True, order=True)
class PackageId:
    name: str
    version: str

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass(frozen=True, slots=True)
class DependencySpec:
    name: str
    constraint: str = ""
    forward_features: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True, slots=True)
class PackageManifest:
    """Declared metadata of one package version."""

    package: PackageId
    dependencies: tuple[DependencySpec, ...] = ()
    defaults: ConfigLayer = EMPTY_LAYER
    cxx_standard: CxxStandard | None = None
    max_cxx_standard: CxxStandard | None = None
    build_kind: BuildKind = BuildKind.CMAKE
    source: Path | None = None
    script: str | None = None

    @property
    def name(self) -> str:
        return self.package.name

    @property
    def version(self) -> str:
        return self.package.version

    def dependency(self, name: str) -> DependencySpec | None:
        for spec in self.dependencies:
            if spec.name == name:
                return spec
        return None

    def forwarded_features(self, dependency: str) -> frozenset[str]:
        spec = self.dependency(dependency)
        return spec.forward_features if spec is not None else frozenset()

    def built_standard(self, required: CxxStandard) -> CxxStandard:
        """Standard this package is built at when consumers need *required*."""
        if self.cxx_standard is not None and self.cxx_standard > required:
            required = self.cxx_standard
        if self.max_cxx_standard is not None and self.max_cxx_standard < required:
            return self.max_cxx_standard
        return required


@dataclass(frozen=True, slots=True)
class PackageRequest:
    name: str
    constraint: str = ""
    cxx_standard: CxxStandard | None = None
    features: frozenset[str] = field(default_factory=frozenset)


__all__ = [
    "BuildKind",
    "BuildState",
    "DependencySpec",
    "PackageId",
    "PackageManifest",
    "PackageRequest",
    "check_transition",
]
